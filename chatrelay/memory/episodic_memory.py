"""Episodic memory store: the gateway's durable event log."""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable

from chatrelay.memory.engine import MemoryEngine

INFO = "info"
WARNING = "warning"
ERROR = "error"


class EpisodicMemoryStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        # Shared by the event loop, worker threads and the health server thread.
        self._lock = threading.Lock()

    def record(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        level: str = INFO,
    ) -> int:
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO episodic_memory (event_type, level, payload)
                VALUES (?, ?, ?)
                """,
                (event_type, level, json.dumps(payload, ensure_ascii=True, default=str)),
            )
            self._conn.commit()
        return int(cursor.lastrowid)

    def latest(
        self,
        limit: int = 50,
        *,
        event_types: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        query = "SELECT id, event_type, level, payload, created_at FROM episodic_memory"
        params: list[Any] = []
        if event_types is not None:
            types = list(event_types)
            if not types:
                return []
            query += f" WHERE event_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()

        events: list[dict[str, Any]] = []
        for row in rows:
            event = dict(row)
            event["payload"] = json.loads(event["payload"])
            events.append(event)
        return events


def open_event_log(db_path: Path) -> tuple[MemoryEngine, EpisodicMemoryStore]:
    """Initialize the schema at ``db_path`` and return the engine plus its store."""
    engine = MemoryEngine(db_path)
    engine.initialize()
    return engine, EpisodicMemoryStore(engine.connect())
