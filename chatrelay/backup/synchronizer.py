"""Keeps the git mirror and the local session/settings files in step."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from chatrelay.backup.store import BackupError, GitBackupStore, NothingToCommit
from chatrelay.credentials import CredentialError, CredentialStore
from chatrelay.fileutil import atomic_write
from chatrelay.llm import CompletionError, CompletionService
from chatrelay.memory.episodic_memory import ERROR, INFO, WARNING, EpisodicMemoryStore
from chatrelay.settings import SettingsError, SettingsStore

MIRROR_CREDENTIALS_PATH = "session/creds.json"
MIRROR_SETTINGS_PATH = "settings.json"

DEFAULT_COMMIT_LABEL = "Gateway backup update"
MAX_LABEL_LENGTH = 72
DEFAULT_LABEL_TIMEOUT_SECONDS = 10.0

PUBLISH_PUSHED = "pushed"
PUBLISH_UNCHANGED = "unchanged"
PUBLISH_FAILED = "failed"
PUBLISH_SKIPPED = "skipped"

LABEL_PROMPT = (
    "Write a single-line git commit message, at most 72 characters, for a backup "
    "of a chat gateway's state. Changed files: {files}. Reply with the message only."
)


@dataclass(frozen=True)
class PublishOutcome:
    status: str
    label: Optional[str] = None
    detail: str = ""
    finished_at: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.status in (PUBLISH_PUSHED, PUBLISH_UNCHANGED)


def normalize_label(raw: str | None) -> str:
    """First non-empty line, unquoted, capped at 72 chars; fallback when nothing usable."""
    if not raw:
        return DEFAULT_COMMIT_LABEL
    for line in raw.splitlines():
        label = line.strip().strip("`\"'").strip()
        if label:
            return label[:MAX_LABEL_LENGTH].rstrip()
    return DEFAULT_COMMIT_LABEL


@dataclass(frozen=True)
class _Artifact:
    relpath: str
    local_path: Path
    read_local: Callable[[], Optional[bytes]]
    restore: Callable[[bytes], None]


class BackupSynchronizer:
    """
    Mirror synchronization for credentials and settings.

    Startup: ``initialize_remote`` then ``restore_from_mirror``.
    Afterwards every local mutation is pushed through ``publish``; a publish
    with nothing staged never asks for a label or commits, and pushes only
    when an earlier commit has not reached the remote.
    """

    def __init__(
        self,
        store: GitBackupStore,
        credentials: CredentialStore,
        settings: SettingsStore,
        events: EpisodicMemoryStore,
        *,
        completion: Optional[CompletionService] = None,
        label_timeout_seconds: float = DEFAULT_LABEL_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._settings = settings
        self._events = events
        self._completion = completion
        self._label_timeout_seconds = label_timeout_seconds
        self._last_outcome: Optional[PublishOutcome] = None
        self._artifacts = (
            _Artifact(
                MIRROR_CREDENTIALS_PATH,
                credentials.path,
                credentials.read_bytes,
                credentials.restore_bytes,
            ),
            _Artifact(
                MIRROR_SETTINGS_PATH,
                settings.path,
                settings.read_bytes,
                settings.replace_from_bytes,
            ),
        )

    @property
    def last_outcome(self) -> Optional[PublishOutcome]:
        return self._last_outcome

    @property
    def store(self) -> GitBackupStore:
        return self._store

    def initialize_remote(self) -> bool:
        try:
            if self._store.exists():
                self._store.pull()
                action = "pull"
            else:
                self._store.clone()
                action = "clone"
        except BackupError as exc:
            self._events.record(
                "backup_init_failed",
                {"error": f"{type(exc).__name__}: {exc}"},
                level=ERROR,
            )
            return False
        self._events.record("backup_initialized", {"action": action})
        return True

    def restore_from_mirror(self) -> list[str]:
        """Restore mirror copies that are missing locally or newer than the local file."""
        restored: list[str] = []
        if not self._store.exists():
            return restored
        for artifact in self._artifacts:
            mirror_path = self._store.mirror_dir / artifact.relpath
            if not mirror_path.is_file():
                continue
            mirror_bytes = mirror_path.read_bytes()
            local_bytes = artifact.read_local()
            if local_bytes == mirror_bytes:
                continue
            if local_bytes is not None and not self._mirror_is_newer(artifact):
                continue
            try:
                artifact.restore(mirror_bytes)
            except (CredentialError, SettingsError, OSError) as exc:
                self._events.record(
                    "backup_restore_rejected",
                    {"path": artifact.relpath, "error": str(exc)},
                    level=WARNING,
                )
                continue
            restored.append(artifact.relpath)
        self._events.record("backup_restored", {"paths": restored})
        return restored

    def _mirror_is_newer(self, artifact: _Artifact) -> bool:
        try:
            committed_at = self._store.last_commit_time(artifact.relpath)
        except BackupError:
            return False
        if committed_at is None:
            return False
        return committed_at > artifact.local_path.stat().st_mtime

    def capture_local_state(self) -> bool:
        return bool(self._capture())

    def _capture(self) -> list[str]:
        changed: list[str] = []
        for artifact in self._artifacts:
            data = artifact.read_local()
            if data is None:
                continue
            target = self._store.mirror_dir / artifact.relpath
            if target.is_file() and target.read_bytes() == data:
                continue
            atomic_write(target, data)
            changed.append(artifact.relpath)
        return changed

    def _stage(self) -> tuple[list[str], bool]:
        changed = self._capture()
        self._store.stage_all()
        return changed, self._store.has_staged_changes()

    async def publish(self) -> PublishOutcome:
        if not self._store.exists():
            return self._finish(PublishOutcome(PUBLISH_SKIPPED, detail="mirror not initialized"))
        label: Optional[str] = None
        try:
            changed, staged = await asyncio.to_thread(self._stage)
            if staged:
                label = await self._request_label(changed)
                try:
                    await asyncio.to_thread(self._store.commit, label)
                except NothingToCommit:
                    staged = False
            # A commit left behind by an earlier failed push is pushed now.
            if not staged and not await asyncio.to_thread(self._store.has_unpushed_commits):
                return self._finish(PublishOutcome(PUBLISH_UNCHANGED, label=label))
            await asyncio.to_thread(self._store.push)
        except (BackupError, OSError) as exc:
            return self._finish(
                PublishOutcome(PUBLISH_FAILED, label=label, detail=f"{type(exc).__name__}: {exc}")
            )
        return self._finish(PublishOutcome(PUBLISH_PUSHED, label=label))

    async def _request_label(self, changed: list[str]) -> str:
        if self._completion is None:
            return DEFAULT_COMMIT_LABEL
        prompt = LABEL_PROMPT.format(files=", ".join(changed) or "unknown")
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._completion.complete, prompt, self._label_timeout_seconds),
                timeout=self._label_timeout_seconds,
            )
        except (CompletionError, asyncio.TimeoutError) as exc:
            self._events.record(
                "backup_label_fallback",
                {"error": str(exc) or type(exc).__name__},
                level=WARNING,
            )
            return DEFAULT_COMMIT_LABEL
        return normalize_label(raw)

    def _finish(self, outcome: PublishOutcome) -> PublishOutcome:
        self._last_outcome = outcome
        payload = {"status": outcome.status, "label": outcome.label, "detail": outcome.detail}
        level = ERROR if outcome.status == PUBLISH_FAILED else INFO
        self._events.record("backup_publish", payload, level=level)
        return outcome
