"""markflow - Assignment marking pipeline as declarative state machines."""

from typing import TYPE_CHECKING

__all__ = ["Settings", "build_pipeline", "StateMachineExecutor"]

if TYPE_CHECKING:
    from .config.settings import Settings
    from .definitions.pipeline import build_pipeline
    from .execution.executor import StateMachineExecutor


def __getattr__(name: str):
    if name == "Settings":
        from .config.settings import Settings

        return Settings
    if name == "build_pipeline":
        from .definitions.pipeline import build_pipeline

        return build_pipeline
    if name == "StateMachineExecutor":
        from .execution.executor import StateMachineExecutor

        return StateMachineExecutor
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
