"""
Messaging transport interface.

A transport owns the live session with the messaging network. It reports
everything that happens through events pushed into a sink:
- ConnectionUpdate: connecting / open / close (with a close reason)
- CredentialsUpdate: a new credential document issued by the network
- InboundMessage: a text message received on the session

and accepts outbound calls (send, presence, read receipts).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class CloseReason(str, Enum):
    CONNECTION_LOST = "connection_lost"
    TIMED_OUT = "timed_out"
    RESTART_REQUIRED = "restart_required"
    UNKNOWN = "unknown"
    BAD_SESSION = "bad_session"
    SESSION_REPLACED = "session_replaced"
    LOGGED_OUT = "logged_out"


TERMINAL_REASONS = frozenset(
    {CloseReason.BAD_SESSION, CloseReason.SESSION_REPLACED, CloseReason.LOGGED_OUT}
)


def is_terminal(reason: CloseReason) -> bool:
    """Terminal reasons can never be fixed by reconnecting with the same credentials."""
    return reason in TERMINAL_REASONS


class Presence(str, Enum):
    COMPOSING = "composing"
    PAUSED = "paused"


@dataclass(frozen=True)
class ConnectionUpdate:
    status: ConnectionStatus
    reason: Optional[CloseReason] = None
    detail: str = ""


@dataclass(frozen=True)
class CredentialsUpdate:
    blob: bytes


@dataclass(frozen=True)
class InboundMessage:
    message_id: str
    sender_id: str
    conversation_id: str
    text: str
    is_self: bool = False
    is_broadcast_status: bool = False
    is_direct: bool = True


TransportEvent = Union[ConnectionUpdate, CredentialsUpdate, InboundMessage]
EventSink = Callable[[TransportEvent], None]


class TransportError(RuntimeError):
    """Raised by transport calls; carries the close reason it maps to."""

    def __init__(self, reason: CloseReason, detail: str = "") -> None:
        super().__init__(detail or reason.value)
        self.reason = reason
        self.detail = detail

    @property
    def terminal(self) -> bool:
        return is_terminal(self.reason)


class MessagingTransport(ABC):
    """
    Base class for messaging transports.

    Subclasses implement network-specific logic for:
    - Opening and closing the session from a credential document
    - Turning network updates into TransportEvents
    - Sending text, presence and read receipts
    """

    def __init__(self) -> None:
        self._sink: Optional[EventSink] = None

    @property
    def name(self) -> str:
        return type(self).__name__

    def set_event_sink(self, sink: EventSink) -> None:
        self._sink = sink

    def _emit(self, event: TransportEvent) -> None:
        if self._sink is not None:
            self._sink(event)

    @abstractmethod
    async def connect(self, credentials: dict[str, Any]) -> None:
        """
        Open the session.

        Emits ConnectionUpdate events as the session progresses. Raises
        TransportError when the session cannot be opened.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the session; safe to call when already closed."""

    @abstractmethod
    async def send_text(self, conversation_id: str, text: str) -> None:
        """Send a text message; raises TransportError on failure."""

    async def set_presence(self, conversation_id: str, presence: Presence) -> None:
        """Signal typing state. Override if the network supports it."""

    async def mark_read(self, conversation_id: str, message_id: str) -> None:
        """Mark a message as read. Override if the network supports it."""

    def current_credentials(self) -> Optional[bytes]:
        """Credential document for resuming the open session, if known."""
        return None

    async def logout(self) -> None:
        """Invalidate the session on the network side and report a terminal close."""
        await self.disconnect()
        self._emit(ConnectionUpdate(ConnectionStatus.CLOSE, CloseReason.LOGGED_OUT, "logout requested"))
