"""Multi-tap grouping.

The glasses report every tap separately. Taps that follow each other within
``threshold`` seconds are grouped into one ``MultiTap``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from framelink.common.events import Event, EventBus
from framelink.common.logging import get_logger


@dataclass(frozen=True)
class MultiTap:
    count: int
    received_at: float = field(default_factory=time.monotonic)


MultiTapHandler = Callable[[MultiTap], Awaitable[None]]


class TapGrouper:
    """Collects taps and emits a ``MultiTap`` once the taps stop."""

    def __init__(self, threshold: float = 0.3, handler: MultiTapHandler | None = None) -> None:
        self.threshold = threshold
        self._handler = handler
        self._count = 0
        self._timer: asyncio.TimerHandle | None = None
        self._groups: asyncio.Queue[MultiTap] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None
        self.logger = get_logger("taps")

    @property
    def pending(self) -> int:
        return self._count

    def tap(self) -> None:
        self._count += 1
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.threshold, self._flush)

    def _flush(self) -> None:
        self._timer = None
        if self._count == 0:
            return
        group = MultiTap(count=self._count)
        self._count = 0
        self.logger.debug("multi_tap", count=group.count)
        self._groups.put_nowait(group)
        if self._handler is not None:
            # Handlers may run long operations; never block the tap stream.
            task = asyncio.create_task(self._handler(group))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def get(self, timeout: float | None = None) -> MultiTap:
        if timeout is None:
            return await self._groups.get()
        return await asyncio.wait_for(self._groups.get(), timeout=timeout)

    def attach(self, event_bus: EventBus) -> None:
        """Group taps published by a session on ``rx.tap``."""

        async def _on_tap(event: Event) -> None:
            self.tap()

        self._unsubscribe = event_bus.subscribe("rx.tap", _on_tap)

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._count = 0
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
