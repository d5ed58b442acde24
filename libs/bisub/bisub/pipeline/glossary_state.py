"""Resolve-once glossary shared by every chunk worker of a job."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from bisub.models.subtitle import GlossaryItem

logger = logging.getLogger(__name__)

GlossaryProducer = Callable[[], Awaitable[list[GlossaryItem]]]


class GlossaryState:
    """Memoized future over one glossary producer.

    The producer runs at most once, no matter how many workers call `get()`.
    A failing producer resolves to an empty glossary so waiting workers are
    never left hanging.
    """

    def __init__(self, producer: GlossaryProducer | None = None) -> None:
        self._producer = producer
        self._task: asyncio.Task[list[GlossaryItem]] | None = None
        self._value: list[GlossaryItem] | None = None if producer is not None else []

    @classmethod
    def resolved(cls, items: list[GlossaryItem] | None = None) -> "GlossaryState":
        state = cls()
        state._value = list(items or [])
        return state

    @property
    def is_ready(self) -> bool:
        return self._value is not None

    def start(self) -> None:
        """Kick off the producer without waiting for it."""
        if self._value is not None or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="glossary-producer")

    async def _run(self) -> list[GlossaryItem]:
        assert self._producer is not None
        try:
            items = list(await self._producer())
        except Exception as exc:
            logger.error("glossary producer failed, continuing without glossary: %s", exc)
            items = []
        self._value = items
        return items

    async def get(self) -> list[GlossaryItem]:
        if self._value is not None:
            return self._value
        self.start()
        assert self._task is not None
        # Shield so one cancelled waiter does not cancel the shared producer.
        return await asyncio.shield(self._task)

    async def aclose(self) -> None:
        """Cancel a producer nobody is waiting for any more."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
