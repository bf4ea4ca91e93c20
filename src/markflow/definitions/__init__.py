"""State machine definitions for the assignment marking pipeline."""

from markflow.definitions.pipeline import Pipeline, build_pipeline

__all__ = ["Pipeline", "build_pipeline"]
