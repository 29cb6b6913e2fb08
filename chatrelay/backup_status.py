"""Backup status helpers for the health server."""

from __future__ import annotations

from typing import Any

from chatrelay.memory.episodic_memory import ERROR, EpisodicMemoryStore

PUBLISH_EVENTS = ("backup_publish",)
INIT_EVENTS = ("backup_initialized", "backup_init_failed")


def _entry_status(event: dict[str, Any] | None) -> str:
    if event is None:
        return "missing"
    if event["level"] == ERROR:
        return "error"
    return "ok"


def _entry(event: dict[str, Any] | None) -> dict[str, Any]:
    return {
        "status": _entry_status(event),
        "event_type": event["event_type"] if event else None,
        "recorded_at": event["created_at"] if event else None,
        "detail": event["payload"] if event else None,
    }


class BackupStatusProvider:
    def __init__(self, events: EpisodicMemoryStore, *, enabled: bool = True) -> None:
        self._events = events
        self._enabled = enabled

    def _latest(self, event_types: tuple[str, ...]) -> dict[str, Any] | None:
        rows = self._events.latest(1, event_types=event_types)
        return rows[0] if rows else None

    def summary(self) -> dict[str, Any]:
        return {
            "enabled": self._enabled,
            "mirror": _entry(self._latest(INIT_EVENTS)),
            "last_publish": _entry(self._latest(PUBLISH_EVENTS)),
        }
