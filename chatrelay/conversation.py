"""Bounded per-partner conversation context for AI-assisted replies."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum

from chatrelay.profile import DEFAULT_WINDOW_SIZE


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str


class ConversationContext:
    """In-process turn history, one FIFO window of ``window_size`` turns per partner.

    Appending to a full window evicts the oldest turn first. Conversations are
    created lazily and never deleted; memory is bounded by the window, not by
    expiry. Nothing here is durable.
    """

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE) -> None:
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self._window_size = window_size
        self._conversations: dict[str, deque[Turn]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def window_size(self) -> int:
        return self._window_size

    def _conversation(self, partner_id: str) -> deque[Turn]:
        if partner_id not in self._conversations:
            self._conversations[partner_id] = deque(maxlen=self._window_size)
        return self._conversations[partner_id]

    def append_user_turn(self, partner_id: str, text: str) -> None:
        self._conversation(partner_id).append(Turn(Role.USER, text))

    def append_assistant_turn(self, partner_id: str, text: str) -> None:
        self._conversation(partner_id).append(Turn(Role.ASSISTANT, text))

    def snapshot(self, partner_id: str) -> tuple[Turn, ...]:
        conv = self._conversations.get(partner_id)
        return tuple(conv) if conv is not None else ()

    def partners(self) -> list[str]:
        return list(self._conversations)

    def lock(self, partner_id: str) -> asyncio.Lock:
        """Lock serializing handlers that touch ``partner_id``'s turns."""
        if partner_id not in self._locks:
            self._locks[partner_id] = asyncio.Lock()
        return self._locks[partner_id]
