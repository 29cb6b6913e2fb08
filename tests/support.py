from __future__ import annotations

import asyncio
import json
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from chatrelay.backup.store import NothingToCommit
from chatrelay.backup.synchronizer import MIRROR_CREDENTIALS_PATH, MIRROR_SETTINGS_PATH
from chatrelay.llm import CompletionTimeout
from chatrelay.memory.episodic_memory import EpisodicMemoryStore, open_event_log
from chatrelay.transport.base import (
    ConnectionStatus,
    ConnectionUpdate,
    CredentialsUpdate,
    InboundMessage,
    MessagingTransport,
    Presence,
    TransportError,
)

OWNER_ID = "1001"
PARTNER_ID = "2002"


def new_event_log() -> EpisodicMemoryStore:
    _engine, store = open_event_log(Path(":memory:"))
    return store


def event_types(events: EpisodicMemoryStore) -> list[str]:
    return [row["event_type"] for row in reversed(events.latest(limit=500))]


def creds_blob(token: str = "123:abc", bot_id: int = 42) -> bytes:
    return json.dumps(
        {"me": {"id": bot_id, "username": "relay_bot"}, "token": token},
        indent=2,
        sort_keys=True,
    ).encode("utf-8")


def direct_message(
    text: str,
    *,
    sender_id: str = PARTNER_ID,
    message_id: str = "1",
    is_self: bool = False,
    is_direct: bool = True,
    is_broadcast_status: bool = False,
) -> InboundMessage:
    return InboundMessage(
        message_id=message_id,
        sender_id=sender_id,
        conversation_id=sender_id,
        text=text,
        is_self=is_self,
        is_direct=is_direct,
        is_broadcast_status=is_broadcast_status,
    )


class FakeTransport(MessagingTransport):
    """In-memory transport; ``connect`` opens unless ``connect_error`` is set."""

    def __init__(self, *, blob: Optional[bytes] = None) -> None:
        super().__init__()
        self.blob = blob
        self.connect_error: Optional[TransportError] = None
        self.connect_calls: list[dict[str, Any]] = []
        self.disconnect_calls = 0
        self.sent: list[tuple[str, str]] = []
        self.presence: list[tuple[str, Presence]] = []
        self.read: list[tuple[str, str]] = []
        self.send_error: Optional[TransportError] = None

    async def connect(self, credentials: dict[str, Any]) -> None:
        self.connect_calls.append(credentials)
        if self.connect_error is not None:
            raise self.connect_error
        if self.blob is not None:
            self._emit(CredentialsUpdate(self.blob))
        self._emit(ConnectionUpdate(ConnectionStatus.OPEN))

    async def disconnect(self) -> None:
        self.disconnect_calls += 1

    async def send_text(self, conversation_id: str, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((conversation_id, text))

    async def set_presence(self, conversation_id: str, presence: Presence) -> None:
        self.presence.append((conversation_id, presence))

    async def mark_read(self, conversation_id: str, message_id: str) -> None:
        self.read.append((conversation_id, message_id))

    def current_credentials(self) -> Optional[bytes]:
        return self.blob

    def emit(self, event: Any) -> None:
        self._emit(event)


class FakeCompletion:
    """Completion service returning ``reply``, raising ``error`` or blocking until released."""

    def __init__(self, reply: str = "sure thing", *, error: Optional[Exception] = None) -> None:
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []
        self.release = threading.Event()
        self.block = False

    def complete(self, prompt: str, timeout_seconds: float) -> str:
        self.prompts.append(prompt)
        if self.block:
            if not self.release.wait(timeout=5):
                raise CompletionTimeout("fake completion never released")
        if self.error is not None:
            raise self.error
        return self.reply


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class FakePublisher:
    def __init__(self) -> None:
        self.reasons: list[str] = []
        self.flushed = False
        self.stopped = False
        self.busy = False

    def request(self, reason: str) -> None:
        self.reasons.append(reason)

    async def flush(self) -> None:
        self.flushed = True

    async def stop(self) -> None:
        self.stopped = True


TRACKED = (MIRROR_CREDENTIALS_PATH, MIRROR_SETTINGS_PATH)


class FakeStore:
    """Mirror double: a working tree directory plus an in-memory commit history."""

    def __init__(self, mirror_dir: Path, *, initialized: bool = True) -> None:
        self.mirror_dir = mirror_dir
        self.initialized = initialized
        self.head: dict[str, bytes] = {}
        self.index: dict[str, bytes] = {}
        self.commit_times: dict[str, int] = {}
        self.commits: list[str] = []
        self.pushes = 0
        self.pushed_head: dict[str, bytes] = {}
        self.remote_checks = 0
        self.clones = 0
        self.pulls = 0
        self.clone_error: Optional[Exception] = None
        self.push_error: Optional[Exception] = None
        self.force_staged = False
        if initialized:
            mirror_dir.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self.initialized

    def clone(self) -> None:
        if self.clone_error is not None:
            raise self.clone_error
        self.clones += 1
        self.mirror_dir.mkdir(parents=True, exist_ok=True)
        self.initialized = True

    def pull(self) -> None:
        self.pulls += 1

    def stage_all(self) -> None:
        self.index = {
            rel: (self.mirror_dir / rel).read_bytes()
            for rel in TRACKED
            if (self.mirror_dir / rel).is_file()
        }

    def has_staged_changes(self) -> bool:
        return self.force_staged or self.index != self.head

    def commit(self, label: str) -> None:
        if self.index == self.head:
            raise NothingToCommit("clean")
        now = int(time.time())
        for rel, data in self.index.items():
            if self.head.get(rel) != data:
                self.commit_times[rel] = now
        self.head = dict(self.index)
        self.commits.append(label)

    def push(self) -> None:
        if self.push_error is not None:
            raise self.push_error
        self.pushes += 1
        self.pushed_head = dict(self.head)

    def has_unpushed_commits(self) -> bool:
        self.remote_checks += 1
        return self.head != self.pushed_head

    def last_commit_time(self, relpath: str) -> Optional[int]:
        return self.commit_times.get(relpath)
