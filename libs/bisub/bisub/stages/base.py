"""Stage abstractions for pipeline execution."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from bisub.pipeline.context import PipelineContext

I = TypeVar("I")
O = TypeVar("O")


@dataclass
class StageResult(Generic[O]):
    output: O
    metadata: dict[str, Any] = field(default_factory=dict)


class Stage(ABC, Generic[I, O]):
    """流水线阶段抽象基类"""

    name: str

    @abstractmethod
    async def execute(self, data: I, context: PipelineContext[Any]) -> StageResult[O]:
        """执行阶段逻辑，返回阶段输出"""

    def validate_input(self, data: I, context: PipelineContext[Any]) -> bool:
        """校验输入是否满足要求"""
        return True
