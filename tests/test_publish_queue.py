from __future__ import annotations

import asyncio
import unittest

from chatrelay.backup.synchronizer import PUBLISH_PUSHED, PublishOutcome
from chatrelay.backup.worker import PublishQueue
from support import event_types, new_event_log


class _GatedSynchronizer:
    def __init__(self) -> None:
        self.calls = 0
        self.gate = asyncio.Event()
        self.hang = False

    async def publish(self) -> PublishOutcome:
        self.calls += 1
        if self.hang:
            await asyncio.sleep(10)
        await self.gate.wait()
        return PublishOutcome(PUBLISH_PUSHED, label="x")


class PublishQueueTests(unittest.IsolatedAsyncioTestCase):
    async def test_requests_during_run_coalesce_into_one_follow_up(self) -> None:
        sync = _GatedSynchronizer()
        queue = PublishQueue(sync, new_event_log())  # type: ignore[arg-type]

        queue.request("first")
        await asyncio.sleep(0)
        self.assertTrue(queue.busy)
        for idx in range(5):
            queue.request(f"again {idx}")
        self.assertEqual(sync.calls, 1)

        sync.gate.set()
        await queue.flush()
        self.assertEqual(sync.calls, 2)
        self.assertEqual(queue.runs, 2)
        self.assertFalse(queue.busy)

    async def test_idle_queue_runs_again_on_new_request(self) -> None:
        sync = _GatedSynchronizer()
        sync.gate.set()
        queue = PublishQueue(sync, new_event_log())  # type: ignore[arg-type]
        queue.request("a")
        await queue.flush()
        queue.request("b")
        await queue.flush()
        self.assertEqual(sync.calls, 2)

    async def test_run_timeout_is_recorded(self) -> None:
        sync = _GatedSynchronizer()
        sync.hang = True
        events = new_event_log()
        queue = PublishQueue(sync, events, timeout_seconds=0.05)  # type: ignore[arg-type]
        queue.request("slow")
        await queue.flush()
        self.assertIn("backup_publish", event_types(events))
        self.assertEqual(events.latest(1)[0]["level"], "error")

    async def test_stop_cancels_running_publish(self) -> None:
        sync = _GatedSynchronizer()
        queue = PublishQueue(sync, new_event_log())  # type: ignore[arg-type]
        queue.request("a")
        await asyncio.sleep(0)
        await queue.stop()
        self.assertFalse(queue.busy)


if __name__ == "__main__":
    unittest.main()
