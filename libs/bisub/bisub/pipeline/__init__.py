"""Pipeline orchestration.

This package is imported by stages for context typing. Keep imports lazy to
avoid circular-import issues between `bisub.pipeline` and `bisub.stages`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from bisub.pipeline.batch import BatchOperationExecutor
    from bisub.pipeline.executor import execute_pipeline
    from bisub.pipeline.orchestrator import GenerationOrchestrator
    from bisub.pipeline.quality_control import run_quality_control

__all__ = ["BatchOperationExecutor", "GenerationOrchestrator", "execute_pipeline", "run_quality_control"]


def __getattr__(name: str) -> Any:
    if name == "BatchOperationExecutor":
        from bisub.pipeline.batch import BatchOperationExecutor

        return BatchOperationExecutor
    if name == "GenerationOrchestrator":
        from bisub.pipeline.orchestrator import GenerationOrchestrator

        return GenerationOrchestrator
    if name == "execute_pipeline":
        from bisub.pipeline.executor import execute_pipeline

        return execute_pipeline
    if name == "run_quality_control":
        from bisub.pipeline.quality_control import run_quality_control

        return run_quality_control
    raise AttributeError(name)
