"""Connection lifecycle state machine with a single reconnect timer."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable

from chatrelay.credentials import CredentialError, CredentialStore
from chatrelay.memory.episodic_memory import ERROR, WARNING, EpisodicMemoryStore
from chatrelay.transport.base import (
    CloseReason,
    ConnectionStatus,
    ConnectionUpdate,
    MessagingTransport,
    TransportError,
    is_terminal,
)

DEFAULT_RECONNECT_DELAY_SECONDS = 5.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 30.0


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    TERMINATED = "terminated"


_ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.OPEN, ConnectionState.CLOSED, ConnectionState.TERMINATED}
    ),
    ConnectionState.OPEN: frozenset({ConnectionState.CLOSED, ConnectionState.TERMINATED}),
    ConnectionState.CLOSED: frozenset({ConnectionState.CONNECTING, ConnectionState.TERMINATED}),
    ConnectionState.TERMINATED: frozenset(),
}

OpenCallback = Callable[[], Awaitable[None]]
CredentialsProvider = Callable[[], "dict[str, Any] | None"]


class ConnectionLifecycle:
    """Drives the transport session: idle -> connecting -> open -> closed -> ...

    Recoverable closes arm exactly one reconnect timer; further closes while it
    is pending are ignored, and a connecting/open event cancels it. Terminal
    closes move to ``terminated``, which nothing leaves.
    """

    def __init__(
        self,
        transport: MessagingTransport,
        credentials: CredentialStore,
        events: EpisodicMemoryStore,
        *,
        credentials_provider: CredentialsProvider | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        backoff_factor: float = 1.0,
        max_reconnect_delay: float = 60.0,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        discard_credentials_on_terminal: bool = False,
        on_open: OpenCallback | None = None,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._events = events
        self._credentials_provider = credentials_provider or credentials.load
        self._reconnect_delay = reconnect_delay
        self._backoff_factor = max(1.0, backoff_factor)
        self._max_reconnect_delay = max(reconnect_delay, max_reconnect_delay)
        self._connect_timeout = connect_timeout
        self._discard_on_terminal = discard_credentials_on_terminal
        self._on_open = on_open

        self._state = ConnectionState.IDLE
        self._close_reason: CloseReason | None = None
        self._attempt = 0
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._on_open_task: asyncio.Task[None] | None = None
        self._terminated = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def close_reason(self) -> CloseReason | None:
        return self._close_reason

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._attempt

    def set_on_open(self, callback: OpenCallback | None) -> None:
        self._on_open = callback

    def next_delay(self) -> float:
        return min(self._max_reconnect_delay, self._reconnect_delay * self._backoff_factor**self._attempt)

    def _transition(self, new_state: ConnectionState) -> bool:
        if new_state == self._state:
            return False
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            self._events.record(
                "connection_transition_ignored",
                {"from": self._state.value, "to": new_state.value},
                level=WARNING,
            )
            return False
        self._events.record(
            "connection_state_changed",
            {
                "from": self._state.value,
                "to": new_state.value,
                "reason": self._close_reason.value if self._close_reason else None,
            },
        )
        self._state = new_state
        return True

    def start(self) -> asyncio.Task[None]:
        """Begin the first connect attempt; the returned task finishes when it settles."""
        if self._state is not ConnectionState.IDLE:
            raise RuntimeError(f"Cannot start connection from state {self._state.value}")
        self._reconnect_task = asyncio.get_running_loop().create_task(self._connect())
        return self._reconnect_task

    async def _connect(self) -> None:
        if not self._transition(ConnectionState.CONNECTING):
            return
        try:
            creds = self._credentials_provider()
        except CredentialError as exc:
            self.handle_close(CloseReason.BAD_SESSION, f"credentials unreadable: {exc}")
            return
        if creds is None:
            self.handle_close(CloseReason.BAD_SESSION, "no credentials available")
            return
        try:
            await asyncio.wait_for(self._transport.connect(creds), timeout=self._connect_timeout)
        except TransportError as exc:
            self.handle_close(exc.reason, exc.detail)
        except asyncio.TimeoutError:
            self.handle_close(CloseReason.TIMED_OUT, f"connect exceeded {self._connect_timeout}s")
        except Exception as exc:
            self.handle_close(CloseReason.UNKNOWN, f"{type(exc).__name__}: {exc}")

    def handle_update(self, update: ConnectionUpdate) -> None:
        if update.status is ConnectionStatus.OPEN:
            self.handle_open()
        elif update.status is ConnectionStatus.CONNECTING:
            if self._state is ConnectionState.CLOSED:
                self._cancel_reconnect()
            self._transition(ConnectionState.CONNECTING)
        else:
            self.handle_close(update.reason or CloseReason.UNKNOWN, update.detail)

    def handle_open(self) -> None:
        if self._state is ConnectionState.TERMINATED:
            return
        self._cancel_reconnect()
        if not self._transition(ConnectionState.OPEN):
            return
        self._attempt = 0
        self._close_reason = None
        self._persist_session()
        if self._on_open is not None:
            self._on_open_task = asyncio.get_running_loop().create_task(self._run_on_open())

    def _persist_session(self) -> None:
        blob = self._transport.current_credentials()
        if blob is None:
            return
        try:
            written = self._credentials.save(blob)
        except CredentialError as exc:
            self._events.record("credentials_persist_failed", {"error": str(exc)}, level=ERROR)
            return
        if written:
            self._events.record("credentials_persisted", {"path": str(self._credentials.path)})

    async def _run_on_open(self) -> None:
        assert self._on_open is not None
        try:
            await self._on_open()
        except Exception as exc:
            self._events.record("connection_on_open_failed", {"error": str(exc)}, level=ERROR)

    def handle_close(self, reason: CloseReason, detail: str = "") -> None:
        if self._state is ConnectionState.TERMINATED:
            return
        if is_terminal(reason):
            self._terminate(reason, detail)
            return
        if self._reconnect_handle is not None:
            self._events.record(
                "connection_close_ignored",
                {"reason": reason.value, "detail": detail, "cause": "reconnect already scheduled"},
            )
            return
        self._close_reason = reason
        if not self._transition(ConnectionState.CLOSED):
            return
        delay = self.next_delay()
        self._attempt += 1
        self._reconnect_handle = asyncio.get_running_loop().call_later(delay, self._fire_reconnect)
        self._events.record(
            "connection_reconnect_scheduled",
            {"reason": reason.value, "detail": detail, "delay_seconds": delay, "attempt": self._attempt},
            level=WARNING,
        )

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._state is not ConnectionState.CLOSED:
            return
        previous = self._reconnect_task
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect(previous))

    async def _reconnect(self, previous: asyncio.Task[None] | None) -> None:
        # At most one connect attempt in flight: a stale one is abandoned first.
        if previous is not None and not previous.done():
            previous.cancel()
            try:
                await previous
            except asyncio.CancelledError:
                pass
        try:
            await self._transport.disconnect()
        except TransportError as exc:
            self._events.record("transport_disconnect_failed", {"error": str(exc)}, level=WARNING)
        await self._connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _terminate(self, reason: CloseReason, detail: str) -> None:
        self._cancel_reconnect()
        self._close_reason = reason
        if not self._transition(ConnectionState.TERMINATED):
            return
        self._events.record(
            "connection_terminated",
            {"reason": reason.value, "detail": detail, "discard_credentials": self._discard_on_terminal},
            level=ERROR,
        )
        if self._discard_on_terminal:
            try:
                self._credentials.discard()
            except CredentialError as exc:
                self._events.record("credentials_discard_failed", {"error": str(exc)}, level=ERROR)
        self._terminated.set()

    async def wait_terminated(self) -> CloseReason | None:
        await self._terminated.wait()
        return self._close_reason

    async def stop(self) -> None:
        """Cancel any pending reconnect and close the transport session."""
        self._cancel_reconnect()
        task = self._reconnect_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        try:
            await self._transport.disconnect()
        except TransportError as exc:
            self._events.record("transport_disconnect_failed", {"error": str(exc)}, level=WARNING)
