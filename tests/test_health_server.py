from __future__ import annotations

import asyncio
import json
import unittest
from typing import Any
from urllib import error, request

from chatrelay.backup_status import BackupStatusProvider
from chatrelay.health.server import OWNER_KEY_HEADER, HealthServer, threadsafe_toggle
from support import new_event_log


class HealthServerTests(unittest.TestCase):
    def _server(self, owner_api_key: str | None = "owner-key") -> HealthServer:
        events = new_event_log()
        self.toggles: list[bool] = []
        server = HealthServer(
            host="127.0.0.1",
            port=0,
            profile_name="example",
            episodic_memory=events,
            status_provider=lambda: {"connection": "open", "ai_active": False},
            backup_status=BackupStatusProvider(events, enabled=False),
            toggle_ai=self.toggles.append,
            owner_api_key=owner_api_key,
        )
        server.start()
        self.addCleanup(server.stop)
        return server

    def _call(
        self,
        server: HealthServer,
        path: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
    ) -> tuple[int, dict[str, Any]]:
        req = request.Request(
            f"http://127.0.0.1:{server.port}{path}",
            method=method,
            headers=headers or {},
            data=b"" if method == "POST" else None,
        )
        try:
            with request.urlopen(req, timeout=5) as response:  # noqa: S310
                return response.status, json.loads(response.read().decode("utf-8"))
        except error.HTTPError as exc:
            return exc.code, json.loads(exc.read().decode("utf-8"))

    def test_health_and_status(self) -> None:
        server = self._server()
        status, body = self._call(server, "/health")
        self.assertEqual(status, 200)
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["profile"], "example")

        status, body = self._call(server, "/status")
        self.assertEqual(status, 200)
        self.assertEqual(body["connection"], "open")

        status, body = self._call(server, "/backup/status")
        self.assertEqual(status, 200)
        self.assertEqual(body["last_publish"]["status"], "missing")

        status, _ = self._call(server, "/nope")
        self.assertEqual(status, 404)

    def test_toggle_requires_owner_key(self) -> None:
        server = self._server()
        status, _ = self._call(server, "/ai/activate", method="POST")
        self.assertEqual(status, 401)
        status, _ = self._call(server, "/ai/activate", method="POST", headers={OWNER_KEY_HEADER: "wrong"})
        self.assertEqual(status, 401)
        self.assertEqual(self.toggles, [])

        status, body = self._call(server, "/ai/activate", method="POST", headers={OWNER_KEY_HEADER: "owner-key"})
        self.assertEqual(status, 202)
        self.assertTrue(body["ai_active"])
        status, _ = self._call(server, "/ai/deactivate", method="POST", headers={OWNER_KEY_HEADER: "owner-key"})
        self.assertEqual(status, 202)
        self.assertEqual(self.toggles, [True, False])

    def test_toggle_disabled_without_key(self) -> None:
        server = self._server(owner_api_key=None)
        status, _ = self._call(server, "/ai/activate", method="POST", headers={OWNER_KEY_HEADER: ""})
        self.assertEqual(status, 403)
        self.assertEqual(self.toggles, [])


class ThreadsafeToggleTests(unittest.IsolatedAsyncioTestCase):
    async def test_toggle_runs_on_loop(self) -> None:
        calls: list[tuple[bool, str]] = []

        def set_ai_active(active: bool, *, source: str) -> bool:
            calls.append((active, source))
            return True

        toggle = threadsafe_toggle(asyncio.get_running_loop(), set_ai_active)
        await asyncio.to_thread(toggle, True)
        await asyncio.sleep(0)
        self.assertEqual(calls, [(True, "http")])


if __name__ == "__main__":
    unittest.main()
