"""Iterate-until-accept pipeline executor."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

from bisub.exceptions import PipelineCancelledError, StageExecutionError
from bisub.pipeline.context import CancelCheck, IterationDecision, PipelineContext, StageProgressCallback
from bisub.stages.base import Stage

logger = logging.getLogger(__name__)

T = TypeVar("T")

TerminationReason = Literal["completed", "max_iterations", "user_accepted", "user_cancelled", "error"]

ShouldContinue = Callable[[T, int], bool]
IterationHook = Callable[[int, T], Awaitable[IterationDecision]]


@dataclass
class StageRecord:
    name: str
    success: bool
    duration_s: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IterationHistory:
    iteration: int
    stages: list[StageRecord] = field(default_factory=list)
    output: Any = None


@dataclass
class PipelineResult(Generic[T]):
    output: T
    iterations: int
    success: bool
    termination_reason: TerminationReason
    history: list[IterationHistory] = field(default_factory=list)
    error: str | None = None


@dataclass
class PipelineConfig(Generic[T]):
    """流水线配置：阶段顺序、迭代上限与继续条件"""

    name: str
    stages: Sequence[Stage[Any, Any]]
    max_iterations: int = 1
    should_continue: ShouldContinue[T] | None = None
    on_iteration_complete: IterationHook[T] | None = None
    on_progress: StageProgressCallback | None = None
    cancel_check: CancelCheck | None = None


async def execute_pipeline(config: PipelineConfig[T], initial: T, context: PipelineContext[Any]) -> PipelineResult[T]:
    """顺序执行所有阶段，按迭代重复直到满足终止条件

    Each stage's output feeds the next stage; the last stage's output is the
    next iteration's input. After every iteration `should_continue` is asked
    first (False ends the run as completed), then the optional hook decides
    between another round, acceptance and cancellation. Any stage failure
    ends the run with reason "error".
    """
    max_iterations = max(1, int(config.max_iterations))
    context.max_iterations = max_iterations
    history: list[IterationHistory] = []
    output: T = initial

    def _result(success: bool, reason: TerminationReason, iterations: int, error: str | None = None) -> PipelineResult[T]:
        return PipelineResult(
            output=output,
            iterations=iterations,
            success=success,
            termination_reason=reason,
            history=history,
            error=error,
        )

    for iteration in range(1, max_iterations + 1):
        context.iteration = iteration
        record = IterationHistory(iteration=iteration)
        iteration_started = time.monotonic()
        stage_input: Any = output

        for index, stage in enumerate(config.stages):
            if config.cancel_check is not None and config.cancel_check():
                history.append(record)
                logger.info("pipeline cancelled (name=%s, iteration=%d, stage=%s)", config.name, iteration, stage.name)
                return _result(False, "user_cancelled", iteration, "cancelled")
            if config.on_progress is not None:
                config.on_progress(stage.name, index * 100.0 / len(config.stages), f"Iteration {iteration}")

            started = time.monotonic()
            try:
                if not stage.validate_input(stage_input, context):
                    raise StageExecutionError(stage.name, "input validation failed")
                result = await stage.execute(stage_input, context)
            except PipelineCancelledError as exc:
                record.stages.append(StageRecord(stage.name, False, time.monotonic() - started, {"error": str(exc)}))
                history.append(record)
                return _result(False, "user_cancelled", iteration, str(exc))
            except Exception as exc:
                record.stages.append(StageRecord(stage.name, False, time.monotonic() - started, {"error": str(exc)}))
                history.append(record)
                logger.error(
                    "pipeline stage failed (name=%s, iteration=%d, stage=%s): %s",
                    config.name,
                    iteration,
                    stage.name,
                    exc,
                )
                return _result(False, "error", iteration, str(exc))

            duration = time.monotonic() - started
            record.stages.append(StageRecord(stage.name, True, duration, dict(result.metadata)))
            logger.info(
                "pipeline stage done (name=%s, iteration=%d, stage=%s, elapsed_s=%.2f)",
                config.name,
                iteration,
                stage.name,
                duration,
            )
            stage_input = result.output

        output = stage_input
        record.output = output
        history.append(record)
        if config.on_progress is not None:
            config.on_progress(
                f"Iteration {iteration}", 100.0, f"completed in {time.monotonic() - iteration_started:.1f}s"
            )

        if config.should_continue is not None and not config.should_continue(output, iteration):
            return _result(True, "completed", iteration)

        if config.on_iteration_complete is not None:
            decision = await config.on_iteration_complete(iteration, output)
            if decision == "accept":
                return _result(True, "user_accepted", iteration)
            if decision == "cancel":
                return _result(False, "user_cancelled", iteration, "cancelled by user")

    return _result(True, "max_iterations", max_iterations)
