"""Command line entrypoint.

    markflow render [--machine NAME]
    markflow deploy
    markflow run --scripts-key KEY --standard-answer-key KEY [--dry-run]
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from markflow.config.settings import Settings
from markflow.core.exceptions import MarkflowError
from markflow.definitions.pipeline import Pipeline, build_pipeline
from markflow.execution.clock import ManualClock, SystemClock
from markflow.execution.executor import StateMachineExecutor
from markflow.utils.logging import configure_logging, get_logger


logger = get_logger(__name__)

DRY_RUN_BUCKET = "dry-run-bucket"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="markflow", description="Assignment marking pipeline")
    parser.add_argument("--source-bucket", help="Override PDF_SOURCE_BUCKET")
    parser.add_argument("--destination-bucket", help="Override PDF_DESTINATION_BUCKET")
    sub = parser.add_subparsers(dest="command", required=True)

    render = sub.add_parser("render", help="Print state machine definitions as ASL JSON")
    render.add_argument("--machine", help="Only this machine (deployed or base name)")

    sub.add_parser("deploy", help="Create or update the state machines in Step Functions")

    run = sub.add_parser("run", help="Run the orchestrator in-process")
    run.add_argument("--scripts-key", required=True)
    run.add_argument("--standard-answer-key", required=True)
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Use in-memory services and virtual time instead of AWS",
    )
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings()
    overrides = {}
    if args.source_bucket:
        overrides["pdf_source_bucket"] = args.source_bucket
    if args.destination_bucket:
        overrides["pdf_destination_bucket"] = args.destination_bucket
    if getattr(args, "dry_run", False) or args.command == "render":
        # Definitions need bucket names even when nothing touches S3
        overrides.setdefault("pdf_source_bucket", settings.pdf_source_bucket or DRY_RUN_BUCKET)
        overrides.setdefault(
            "pdf_destination_bucket", settings.pdf_destination_bucket or DRY_RUN_BUCKET
        )
    return settings.model_copy(update=overrides) if overrides else settings


def cmd_render(pipeline: Pipeline, machine: Optional[str]) -> int:
    if machine:
        document = pipeline.get(machine).to_asl()
    else:
        document = {d.name: d.to_asl() for d in pipeline.definitions}
    print(json.dumps(document, indent=2))
    return 0


def cmd_deploy(pipeline: Pipeline, settings: Settings) -> int:
    from markflow.services.aws import AwsClients, StateMachineDeployer

    clients = AwsClients(settings)
    arns = StateMachineDeployer(clients.client("stepfunctions"), settings).deploy(pipeline)
    print(json.dumps(arns, indent=2))
    return 0


def cmd_run(pipeline: Pipeline, settings: Settings, args: argparse.Namespace) -> int:
    if args.dry_run:
        from markflow.services.local import build_local_registry

        executor = StateMachineExecutor(build_local_registry(pipeline), clock=ManualClock())
    else:
        from markflow.services.aws import AwsClients, build_aws_registry

        registry = build_aws_registry(pipeline, AwsClients(settings))
        executor = StateMachineExecutor(registry, clock=SystemClock())

    result = executor.execute(
        pipeline.assignments,
        {"scriptsKey": args.scripts_key, "standardAnswerKey": args.standard_answer_key},
    )
    print(
        json.dumps(
            {
                "name": result.name,
                "status": result.status.value,
                "output": result.output,
                "error": result.error,
                "cause": result.cause,
            },
            indent=2,
            default=str,
        )
    )
    return 0 if result.success else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
        configure_logging(level=settings.log_level, json_logs=settings.json_logs)
        pipeline = build_pipeline(settings)

        if args.command == "render":
            return cmd_render(pipeline, args.machine)
        if args.command == "deploy":
            return cmd_deploy(pipeline, settings)
        return cmd_run(pipeline, settings, args)
    except MarkflowError as e:
        logger.error("%s", e)
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
