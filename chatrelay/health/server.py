"""HTTP health, status and owner control server."""

from __future__ import annotations

import asyncio
import hmac
import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional

from chatrelay.backup_status import BackupStatusProvider
from chatrelay.memory.episodic_memory import WARNING, EpisodicMemoryStore

OWNER_KEY_HEADER = "X-Owner-Key"

StatusProvider = Callable[[], dict[str, Any]]
ToggleCallback = Callable[[bool], None]


class HealthServer:
    """
    Runs on its own thread. ``toggle_ai`` is invoked from that thread, so the
    caller supplies a thread-safe callback (the runtime hops onto the loop).
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        profile_name: str,
        episodic_memory: EpisodicMemoryStore,
        status_provider: StatusProvider,
        backup_status: BackupStatusProvider,
        toggle_ai: ToggleCallback,
        owner_api_key: Optional[str] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._profile_name = profile_name
        self._episodic_memory = episodic_memory
        self._status_provider = status_provider
        self._backup_status = backup_status
        self._toggle_ai = toggle_ai
        self._owner_api_key = owner_api_key or None
        self._started_at = time.time()
        self._thread: threading.Thread | None = None
        self._httpd: ThreadingHTTPServer | None = None

    @property
    def port(self) -> int:
        if self._httpd is not None:
            return int(self._httpd.server_address[1])
        return self._port

    def start(self) -> None:
        handler_cls = self._build_handler()
        self._httpd = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2)
        self._httpd = None
        self._thread = None

    def _build_handler(self) -> type[BaseHTTPRequestHandler]:
        profile_name = self._profile_name
        episodic_memory = self._episodic_memory
        status_provider = self._status_provider
        backup_status = self._backup_status
        toggle_ai = self._toggle_ai
        owner_api_key = self._owner_api_key
        started_at = self._started_at

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                path = self.path.split("?")[0]
                if path == "/health":
                    self._write_json(
                        200,
                        {
                            "status": "ok",
                            "profile": profile_name,
                            "uptime": int(time.time() - started_at),
                        },
                    )
                    return

                if path == "/status":
                    payload = {"profile": profile_name}
                    payload.update(status_provider())
                    payload["recent_events"] = len(episodic_memory.latest(limit=10))
                    self._write_json(200, payload)
                    return

                if path == "/backup/status":
                    self._write_json(200, backup_status.summary())
                    return

                self._write_json(404, {"error": "Not found"})

            def do_POST(self) -> None:  # noqa: N802
                path = self.path.split("?")[0]
                if path not in ("/ai/activate", "/ai/deactivate"):
                    self._write_json(404, {"error": "Not found"})
                    return
                if owner_api_key is None:
                    self._write_json(403, {"error": "Owner control disabled"})
                    return
                supplied = self.headers.get(OWNER_KEY_HEADER, "")
                if not hmac.compare_digest(supplied.encode("utf-8"), owner_api_key.encode("utf-8")):
                    episodic_memory.record("owner_control_denied", {"path": path}, level=WARNING)
                    self._write_json(401, {"error": "Invalid owner key"})
                    return
                active = path == "/ai/activate"
                toggle_ai(active)
                self._write_json(202, {"ai_active": active})

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
                # Keep console output quiet; events are tracked in the event log.
                _ = (format, args)
                return

            def _write_json(self, status_code: int, payload: dict[str, Any]) -> None:
                encoded = json.dumps(payload, ensure_ascii=True, default=str).encode("utf-8")
                self.send_response(status_code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(encoded)))
                self.end_headers()
                self.wfile.write(encoded)

        return Handler


def threadsafe_toggle(
    loop: asyncio.AbstractEventLoop,
    set_ai_active: Callable[..., Any],
) -> ToggleCallback:
    """Wrap the command dispatcher's toggle so HTTP threads run it on ``loop``."""

    def toggle(active: bool) -> None:
        loop.call_soon_threadsafe(lambda: set_ai_active(active, source="http"))

    return toggle
