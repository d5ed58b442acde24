from __future__ import annotations

from typing import Any

import pytest

from bisub.pipeline.context import PipelineContext
from bisub.pipeline.executor import PipelineConfig, execute_pipeline
from bisub.stages.base import Stage, StageResult


class _AddStage(Stage[int, int]):
    def __init__(self, name: str, delta: int) -> None:
        self.name = name
        self.delta = delta

    async def execute(self, data: int, context: PipelineContext[Any]) -> StageResult[int]:
        return StageResult(output=data + self.delta, metadata={"iteration": context.iteration})


class _FailingStage(Stage[int, int]):
    name = "boom"

    async def execute(self, data: int, context: PipelineContext[Any]) -> StageResult[int]:
        raise RuntimeError("stage exploded")


class _RejectingStage(_AddStage):
    def validate_input(self, data: int, context: PipelineContext[Any]) -> bool:
        return data < 3


def _context() -> PipelineContext[None]:
    return PipelineContext(data=None)


@pytest.mark.asyncio
async def test_stages_chain_and_iterations_feed_forward() -> None:
    config = PipelineConfig(name="t", stages=[_AddStage("a", 1), _AddStage("b", 10)], max_iterations=3)
    result = await execute_pipeline(config, 0, _context())
    assert result.output == 33
    assert result.iterations == 3
    assert result.success is True
    assert result.termination_reason == "max_iterations"
    assert [h.output for h in result.history] == [11, 22, 33]
    assert result.history[1].stages[0].metadata == {"iteration": 2}


@pytest.mark.asyncio
async def test_should_continue_false_completes() -> None:
    config = PipelineConfig(
        name="t",
        stages=[_AddStage("a", 1)],
        max_iterations=5,
        should_continue=lambda output, iteration: output < 2,
    )
    result = await execute_pipeline(config, 0, _context())
    assert result.output == 2
    assert result.termination_reason == "completed"
    assert result.success is True


@pytest.mark.asyncio
async def test_hook_decisions() -> None:
    async def _cancel(iteration: int, output: int) -> str:
        return "cancel"

    async def _accept(iteration: int, output: int) -> str:
        return "accept" if iteration == 2 else "continue"

    stages = [_AddStage("a", 1)]
    cancelled = await execute_pipeline(
        PipelineConfig(name="t", stages=stages, max_iterations=3, on_iteration_complete=_cancel), 0, _context()
    )
    assert cancelled.termination_reason == "user_cancelled"
    assert cancelled.success is False
    assert cancelled.iterations == 1

    accepted = await execute_pipeline(
        PipelineConfig(name="t", stages=stages, max_iterations=3, on_iteration_complete=_accept), 0, _context()
    )
    assert accepted.termination_reason == "user_accepted"
    assert accepted.output == 2


@pytest.mark.asyncio
async def test_stage_error_ends_with_error() -> None:
    result = await execute_pipeline(
        PipelineConfig(name="t", stages=[_AddStage("a", 1), _FailingStage()], max_iterations=2), 0, _context()
    )
    assert result.termination_reason == "error"
    assert result.success is False
    assert result.error == "stage exploded"
    assert result.output == 0
    assert [s.success for s in result.history[0].stages] == [True, False]


@pytest.mark.asyncio
async def test_input_validation_failure_is_an_error() -> None:
    result = await execute_pipeline(
        PipelineConfig(name="t", stages=[_RejectingStage("r", 2)], max_iterations=3), 0, _context()
    )
    assert result.termination_reason == "error"
    assert result.iterations == 3
    assert result.output == 4
    assert "input validation failed" in (result.error or "")


@pytest.mark.asyncio
async def test_cancel_check_stops_before_next_stage() -> None:
    progress: list[str] = []
    result = await execute_pipeline(
        PipelineConfig(
            name="t",
            stages=[_AddStage("a", 1)],
            max_iterations=2,
            cancel_check=lambda: True,
            on_progress=lambda stage, pct, msg: progress.append(stage),
        ),
        0,
        _context(),
    )
    assert result.termination_reason == "user_cancelled"
    assert progress == []
