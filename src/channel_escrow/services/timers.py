"""Per-deal background tasks.

Every long-running piece of a deal (absolute and inactivity timers, the
deposit poll loop and window, the active input collector, the idle close and
the delayed teardown) is an ``asyncio.Task`` registered here under a slot
name. Tasks log with only the deal id bound. Starting a slot cancels
whatever ran in it before, and ``cancel_all`` is safe to call any number of
times, including from inside one of the tasks it cancels.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from channel_escrow.logging_config import deal_task_context, get_logger

if TYPE_CHECKING:
    from collections.abc import Coroutine

logger = get_logger(__name__)

ABSOLUTE = "absolute"
INACTIVITY = "inactivity"
POLL = "poll"
COLLECTOR = "collector"
TEARDOWN = "teardown"
DEPOSIT_WINDOW = "deposit_window"
IDLE_CLOSE = "idle_close"


class DealTimers:
    """Named task slots for one deal."""

    def __init__(self, deal_id: str) -> None:
        self.deal_id = deal_id
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def start(self, slot: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run ``coro`` in ``slot``, cancelling the slot's previous task."""
        self.cancel(slot)
        task = asyncio.create_task(
            coro, name=f"{self.deal_id}:{slot}", context=deal_task_context(self.deal_id)
        )
        self._tasks[slot] = task
        task.add_done_callback(self._on_done)
        return task

    def get(self, slot: str) -> asyncio.Task[Any] | None:
        return self._tasks.get(slot)

    def is_running(self, slot: str) -> bool:
        task = self._tasks.get(slot)
        return task is not None and not task.done()

    def cancel(self, slot: str) -> None:
        """Cancel the task in ``slot`` unless it is the caller itself."""
        task = self._tasks.get(slot)
        if task is None or task is asyncio.current_task():
            return
        self._tasks.pop(slot, None)
        if not task.done():
            task.cancel()

    def cancel_all(self, *, keep: tuple[str, ...] = ()) -> None:
        for slot in list(self._tasks):
            if slot not in keep:
                self.cancel(slot)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        for slot, current in list(self._tasks.items()):
            if current is task:
                del self._tasks[slot]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "deal.task_failed",
                deal_id=self.deal_id,
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )
