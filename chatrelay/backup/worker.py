"""Background publisher: one publish in flight, later requests coalesce."""

from __future__ import annotations

import asyncio
from typing import Optional

from chatrelay.backup.synchronizer import (
    PUBLISH_FAILED,
    BackupSynchronizer,
    PublishOutcome,
)
from chatrelay.memory.episodic_memory import ERROR, EpisodicMemoryStore

DEFAULT_PUBLISH_TIMEOUT_SECONDS = 180.0


class PublishQueue:
    def __init__(
        self,
        synchronizer: BackupSynchronizer,
        events: EpisodicMemoryStore,
        *,
        timeout_seconds: float = DEFAULT_PUBLISH_TIMEOUT_SECONDS,
    ) -> None:
        self._synchronizer = synchronizer
        self._events = events
        self._timeout_seconds = timeout_seconds
        self._pending = False
        self._reasons: list[str] = []
        self._task: Optional[asyncio.Task[None]] = None
        self.runs = 0

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def request(self, reason: str) -> None:
        """Schedule a publish; returns immediately. Must be called on the event loop."""
        self._pending = True
        self._reasons.append(reason)
        if not self.busy:
            self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending:
            self._pending = False
            reasons, self._reasons = self._reasons, []
            self.runs += 1
            await self._run_once(reasons)

    async def _run_once(self, reasons: list[str]) -> PublishOutcome | None:
        try:
            outcome = await asyncio.wait_for(self._synchronizer.publish(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            self._events.record(
                "backup_publish",
                {"status": PUBLISH_FAILED, "detail": f"timed out after {self._timeout_seconds}s", "reasons": reasons},
                level=ERROR,
            )
            return None
        return outcome

    async def flush(self) -> None:
        """Wait until no publish is running or pending."""
        while self.busy:
            assert self._task is not None
            await asyncio.shield(self._task)

    async def stop(self) -> None:
        task = self._task
        self._pending = False
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
