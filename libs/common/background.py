"""
Background task primitives for fire-and-forget side effects.

Two abstractions over ``asyncio.create_task``:

- ``BackgroundTaskGroup`` keeps strong references to spawned tasks, logs
  their failures and can be drained (used for topic extraction).
- ``LatestValueWriter`` serialises idempotent full-replace writes per key:
  submissions never block, only the newest pending value is written, and
  ``flush()`` waits for in-flight writes before writing synchronously.
  Delivery is at-least-once and the last write wins.
"""

import asyncio
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class BackgroundTaskGroup:
    """Tracks fire-and-forget tasks so they are neither garbage collected nor silently lost."""

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.name}:{label}")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, label))
        return task

    def _on_done(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Background task cancelled", group=self.name, task=label)
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "Background task failed",
                group=self.name,
                task=label,
                error=str(error),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class LatestValueWriter:
    """
    Non-blocking writer for idempotent full-replace values.

    Features:
    - ``submit()`` returns immediately; at most one write per key is in flight
    - Pending values are coalesced, only the newest one is written next
    - ``flush()`` drains in-flight writes, then writes the final value inline

    Usage:
        writer = LatestValueWriter(store.persist_answer)
        writer.submit(turn_id, partial_answer)
        await writer.flush(turn_id, full_answer)
    """

    def __init__(self, write: Callable[[str, str], Awaitable[bool]]):
        self._write = write
        self._pending: Dict[str, str] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self.writes_attempted = 0

    def submit(self, key: str, value: str) -> None:
        self._pending[key] = value
        worker = self._workers.get(key)
        if worker is None or worker.done():
            self._workers[key] = asyncio.create_task(self._run(key))

    async def _run(self, key: str) -> None:
        while key in self._pending:
            value = self._pending.pop(key)
            await self._safe_write(key, value)

    async def _safe_write(self, key: str, value: str) -> bool:
        self.writes_attempted += 1
        try:
            ok = await self._write(key, value)
        except Exception as e:
            logger.warning("Background write failed", key=key, error=str(e))
            return False
        if not ok:
            logger.warning("Background write rejected", key=key)
        return bool(ok)

    async def drain(self, key: str) -> None:
        worker: Optional[asyncio.Task] = self._workers.get(key)
        if worker is not None:
            await asyncio.gather(worker, return_exceptions=True)
            self._workers.pop(key, None)

    async def flush(self, key: str, value: str) -> bool:
        """Wait for queued writes of ``key`` and write ``value`` synchronously."""
        self._pending.pop(key, None)
        await self.drain(key)
        return await self._safe_write(key, value)
