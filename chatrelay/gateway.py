"""Event-driven gateway: routes transport events to the lifecycle, commands and responder."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from chatrelay.backup.worker import PublishQueue
from chatrelay.commands import CommandDispatcher
from chatrelay.connection import ConnectionLifecycle
from chatrelay.conversation import ConversationContext
from chatrelay.credentials import CredentialError, CredentialStore
from chatrelay.memory.episodic_memory import ERROR, WARNING, EpisodicMemoryStore
from chatrelay.responder import ResponderOrchestrator
from chatrelay.settings import SettingsStore
from chatrelay.transport.base import (
    CloseReason,
    ConnectionUpdate,
    CredentialsUpdate,
    InboundMessage,
    MessagingTransport,
    TransportError,
    TransportEvent,
)

ONLINE_NOTICE = "Gateway online. AI replies are {state}."
DEFAULT_SHUTDOWN_PUBLISH_TIMEOUT_SECONDS = 30.0


@dataclass
class GatewayState:
    """Process-wide state shared by the gateway and the health server."""

    settings: SettingsStore
    started_at: float = field(default_factory=time.time)
    online_announced: bool = False
    last_open_at: Optional[float] = None

    def claim_online_notice(self) -> bool:
        """True exactly once per process: the caller owns the online notice."""
        if self.online_announced:
            return False
        self.online_announced = True
        return True


class Gateway:
    def __init__(
        self,
        *,
        transport: MessagingTransport,
        lifecycle: ConnectionLifecycle,
        credentials: CredentialStore,
        state: GatewayState,
        context: ConversationContext,
        commands: CommandDispatcher,
        responder: ResponderOrchestrator,
        events: EpisodicMemoryStore,
        owner_id: str,
        publisher: Optional[PublishQueue] = None,
        send_timeout_seconds: float = 30.0,
        shutdown_publish_timeout_seconds: float = DEFAULT_SHUTDOWN_PUBLISH_TIMEOUT_SECONDS,
    ) -> None:
        self._transport = transport
        self._lifecycle = lifecycle
        self._credentials = credentials
        self._state = state
        self._context = context
        self._commands = commands
        self._responder = responder
        self._events = events
        self._owner_id = owner_id
        self._publisher = publisher
        self._send_timeout_seconds = send_timeout_seconds
        self._shutdown_publish_timeout_seconds = shutdown_publish_timeout_seconds
        lifecycle.set_on_open(self.on_open)

        self._queue: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._stop_requested = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def lifecycle(self) -> ConnectionLifecycle:
        return self._lifecycle

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    def request_publish(self, reason: str) -> None:
        if self._publisher is not None:
            self._publisher.request(reason)

    def _enqueue(self, event: TransportEvent) -> None:
        self._queue.put_nowait(event)

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def on_open(self) -> None:
        """Connection-open hook: timestamp the session and announce once per process."""
        self._state.last_open_at = time.time()
        if not self._state.claim_online_notice():
            return
        notice = ONLINE_NOTICE.format(state="on" if self._state.settings.ai_active else "off")
        await self._send(self._owner_id, notice, event_type="online_notice")

    async def run(self) -> Optional[CloseReason]:
        """Serve until a terminal close (returned) or ``request_stop`` (returns None)."""
        self._loop = asyncio.get_running_loop()
        self._transport.set_event_sink(self._enqueue)
        consumer = self._loop.create_task(self._consume())
        self._events.record("gateway_started", {"transport": self._transport.name})
        self._lifecycle.start()

        terminated = self._loop.create_task(self._lifecycle.wait_terminated())
        stopped = self._loop.create_task(self._stop_requested.wait())
        try:
            await asyncio.wait({terminated, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (terminated, stopped):
                waiter.cancel()
            await self._shutdown(consumer)

        reason = self._lifecycle.close_reason if terminated.done() and not terminated.cancelled() else None
        self._events.record(
            "gateway_stopped",
            {"terminal_reason": reason.value if reason else None},
            level=ERROR if reason else WARNING,
        )
        return reason

    async def _shutdown(self, consumer: asyncio.Task[None]) -> None:
        await self._lifecycle.stop()
        consumer.cancel()
        try:
            await consumer
        except asyncio.CancelledError:
            pass
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._publisher is not None:
            try:
                await asyncio.wait_for(self._publisher.flush(), timeout=self._shutdown_publish_timeout_seconds)
            except asyncio.TimeoutError:
                self._events.record("backup_flush_timeout", {}, level=WARNING)
            await self._publisher.stop()

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.dispatch(event)
            except Exception as exc:
                self._events.record(
                    "gateway_dispatch_error",
                    {"event": type(event).__name__, "error": str(exc)},
                    level=ERROR,
                )
            finally:
                self._queue.task_done()

    def dispatch(self, event: TransportEvent) -> None:
        """Handle one transport event; message handling is spawned, never awaited here."""
        if isinstance(event, ConnectionUpdate):
            self._lifecycle.handle_update(event)
        elif isinstance(event, CredentialsUpdate):
            self._on_credentials(event.blob)
        elif isinstance(event, InboundMessage):
            self._on_message(event)

    def _on_credentials(self, blob: bytes) -> None:
        try:
            written = self._credentials.save(blob)
        except CredentialError as exc:
            self._events.record("credentials_persist_failed", {"error": str(exc)}, level=ERROR)
            return
        if written:
            self._events.record("credentials_persisted", {"path": str(self._credentials.path)})
            self.request_publish("credentials")

    def _on_message(self, message: InboundMessage) -> None:
        if self._commands.is_command(message.sender_id, message.text):
            effect = self._commands.handle(message.sender_id, message.text)
            if effect is not None:
                self._spawn(self._send(message.conversation_id, effect.ack_text, event_type="command_ack"))
            return
        if self._responder.should_respond(message):
            self._spawn(self._responder.respond(message))

    def _spawn(self, coro: Any) -> None:
        assert self._loop is not None
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, conversation_id: str, text: str, *, event_type: str) -> bool:
        try:
            await asyncio.wait_for(
                self._transport.send_text(conversation_id, text),
                timeout=self._send_timeout_seconds,
            )
        except (TransportError, asyncio.TimeoutError) as exc:
            self._events.record(
                f"{event_type}_failed",
                {"conversation_id": conversation_id, "error": str(exc) or type(exc).__name__},
                level=WARNING,
            )
            return False
        self._events.record(event_type, {"conversation_id": conversation_id})
        return True

    def status(self) -> dict[str, Any]:
        return {
            "connection": self._lifecycle.state.value,
            "close_reason": self._lifecycle.close_reason.value if self._lifecycle.close_reason else None,
            "reconnect_pending": self._lifecycle.reconnect_pending,
            "ai_active": self._state.settings.ai_active,
            "online_announced": self._state.online_announced,
            "uptime": int(time.time() - self._state.started_at),
            "last_open_at": self._state.last_open_at,
            "partners": len(self._context.partners()),
            "backup_busy": self._publisher.busy if self._publisher is not None else None,
        }
