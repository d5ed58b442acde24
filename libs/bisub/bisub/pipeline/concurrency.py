from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Literal, TypeVar

from bisub.config import Settings

ServiceType = Literal["asr", "llm_fast", "llm_power"]

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class ConcurrencyState:
    active: int
    max: int


class ConcurrencyTracker:
    """Per-service in-flight caps shared by every worker of one job."""

    def __init__(self, *, maxima: dict[ServiceType, int]) -> None:
        self._max: dict[ServiceType, int] = {k: max(1, int(v)) for k, v in maxima.items()}
        self._active: dict[ServiceType, int] = {k: 0 for k in self._max}
        self._peak: dict[ServiceType, int] = {k: 0 for k in self._max}
        self._semaphores: dict[ServiceType, asyncio.Semaphore] = {
            k: asyncio.Semaphore(v) for k, v in self._max.items()
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConcurrencyTracker":
        return cls(
            maxima={
                "asr": int(settings.concurrency.asr),
                "llm_fast": int(settings.concurrency.llm_fast),
                "llm_power": int(settings.concurrency.llm_power),
            }
        )

    def snapshot(self, service: ServiceType) -> ConcurrencyState:
        return ConcurrencyState(active=int(self._active.get(service, 0)), max=int(self._max.get(service, 1)))

    def peak(self, service: ServiceType) -> int:
        return int(self._peak.get(service, 0))

    def _semaphore(self, service: ServiceType) -> asyncio.Semaphore:
        sem = self._semaphores.get(service)
        if sem is None:
            self._max.setdefault(service, 1)
            sem = self._semaphores[service] = asyncio.Semaphore(self._max[service])
        return sem

    @asynccontextmanager
    async def acquire(self, service: ServiceType) -> AsyncIterator[ConcurrencyState]:
        async with self._semaphore(service):
            self._active[service] = int(self._active.get(service, 0)) + 1
            self._peak[service] = max(int(self._peak.get(service, 0)), self._active[service])
            try:
                yield self.snapshot(service)
            finally:
                self._active[service] = max(0, int(self._active[service]) - 1)


async def map_in_parallel(
    items: Sequence[T],
    concurrency: int,
    worker: Callable[[T, int], Awaitable[R]],
    *,
    cancel_on_error: bool = False,
) -> list[R]:
    """Run `worker(item, index)` with at most `concurrency` in flight.

    Results keep input order regardless of completion order. A failing item
    does not stop its siblings; the first error (by completion) is re-raised
    once observed. With `cancel_on_error`, pending siblings are cancelled
    before the error propagates.
    """
    if not items:
        return []
    semaphore = asyncio.Semaphore(max(1, int(concurrency)))

    async def _run(item: T, index: int) -> R:
        async with semaphore:
            return await worker(item, index)

    tasks = [asyncio.create_task(_run(item, i)) for i, item in enumerate(items)]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        if cancel_on_error:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        raise
