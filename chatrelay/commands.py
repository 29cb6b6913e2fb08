"""Owner-only control commands toggling automated replies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from chatrelay.memory.episodic_memory import EpisodicMemoryStore
from chatrelay.profile import (
    DEFAULT_ACTIVATE_KEYWORD,
    DEFAULT_CONTROL_PREFIX,
    DEFAULT_DEACTIVATE_KEYWORD,
)
from chatrelay.settings import SettingsStore

ACTIVATED_ACK = "AI assistant activated. I'll start replying to your chats."
DEACTIVATED_ACK = "AI assistant deactivated. I'm off duty."

PublishRequest = Callable[[str], None]


@dataclass(frozen=True)
class CommandEffect:
    command: str
    ai_active: bool
    ack_text: str


class CommandDispatcher:
    def __init__(
        self,
        *,
        owner_id: str,
        settings: SettingsStore,
        request_publish: PublishRequest,
        events: EpisodicMemoryStore,
        prefix: str = DEFAULT_CONTROL_PREFIX,
        activate_keyword: str = DEFAULT_ACTIVATE_KEYWORD,
        deactivate_keyword: str = DEFAULT_DEACTIVATE_KEYWORD,
    ) -> None:
        self._owner_id = owner_id
        self._settings = settings
        self._request_publish = request_publish
        self._events = events
        self._prefix = prefix
        self._commands = {
            activate_keyword.lower(): True,
            deactivate_keyword.lower(): False,
        }

    @property
    def prefix(self) -> str:
        return self._prefix

    def is_command(self, sender_id: str, text: str) -> bool:
        """Owner-authored text starting with the control prefix."""
        return sender_id == self._owner_id and text.strip().startswith(self._prefix)

    def handle(self, sender_id: str, text: str) -> CommandEffect | None:
        if not self.is_command(sender_id, text):
            return None
        keyword = text.strip()[len(self._prefix):].strip().lower()
        if keyword not in self._commands:
            self._events.record("command_ignored", {"keyword": keyword[:40]})
            return None
        active = self._commands[keyword]
        self.set_ai_active(active, source="chat")
        return CommandEffect(
            command=keyword,
            ai_active=active,
            ack_text=ACTIVATED_ACK if active else DEACTIVATED_ACK,
        )

    def set_ai_active(self, active: bool, *, source: str) -> bool:
        """Persist the toggle and queue a backup publish without waiting for it."""
        changed = self._settings.set_ai_active(active)
        self._events.record(
            "ai_mode_changed",
            {"ai_active": active, "changed": changed, "source": source},
        )
        self._request_publish(f"ai_active={'true' if active else 'false'}")
        return changed
