"""Git mirror of the gateway's durable state, driven through the git CLI."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

DEFAULT_GIT_TIMEOUT_SECONDS = 60


class BackupError(RuntimeError):
    """Base class for backup mirror failures."""


class CloneFailed(BackupError):
    pass


class PullFailed(BackupError):
    pass


class CommitFailed(BackupError):
    pass


class PushFailed(BackupError):
    pass


class NothingToCommit(BackupError):
    """Not a failure: the mirror already matches the last revision."""


class GitBackupStore:
    """Working tree at ``mirror_dir`` tracking ``remote_url``.

    The access token only ever appears in the arguments of commands that talk
    to the remote; the clone's configured remote is the plain URL and every
    error message is redacted.
    """

    def __init__(
        self,
        mirror_dir: Path,
        remote_url: str,
        *,
        token: Optional[str] = None,
        author_name: str = "chatrelay",
        author_email: str = "chatrelay@localhost",
        timeout_seconds: int = DEFAULT_GIT_TIMEOUT_SECONDS,
    ) -> None:
        self._mirror_dir = mirror_dir
        self._remote_url = remote_url
        self._token = token or None
        self._author_name = author_name
        self._author_email = author_email
        self._timeout_seconds = timeout_seconds

    @property
    def mirror_dir(self) -> Path:
        return self._mirror_dir

    @property
    def remote_url(self) -> str:
        return self._remote_url

    def exists(self) -> bool:
        return (self._mirror_dir / ".git").is_dir()

    def clone(self) -> None:
        self._mirror_dir.parent.mkdir(parents=True, exist_ok=True)
        self._run(
            ["git", "clone", "--quiet", self._authenticated_url(), str(self._mirror_dir)],
            CloneFailed,
            cwd=self._mirror_dir.parent,
        )
        self._run(["git", "remote", "set-url", "origin", self._remote_url], CloneFailed)

    def pull(self) -> None:
        self._run(["git", "pull", "--ff-only", "--quiet", self._authenticated_url()], PullFailed)

    def stage_all(self) -> None:
        self._run(["git", "add", "--all"], CommitFailed)

    def has_staged_changes(self) -> bool:
        result = self._run(["git", "diff", "--cached", "--quiet"], CommitFailed, check=False)
        if result.returncode not in (0, 1):
            raise CommitFailed(self._redact(result.stderr.strip() or "git diff --cached failed"))
        return result.returncode == 1

    def commit(self, label: str) -> None:
        if not self.has_staged_changes():
            raise NothingToCommit("mirror matches the last revision")
        commit_env = {
            "LC_ALL": "C",
            "GIT_AUTHOR_NAME": self._author_name,
            "GIT_AUTHOR_EMAIL": self._author_email,
            "GIT_COMMITTER_NAME": self._author_name,
            "GIT_COMMITTER_EMAIL": self._author_email,
        }
        result = self._run(
            ["git", "commit", "-m", label],
            CommitFailed,
            check=False,
            env=commit_env,
        )
        if result.returncode == 0:
            return
        output = f"{result.stdout}\n{result.stderr}"
        if "nothing to commit" in output or "nothing added to commit" in output:
            raise NothingToCommit("mirror matches the last revision")
        raise CommitFailed(self._redact(output.strip() or "git commit failed"))

    def push(self) -> None:
        self._run(["git", "push", "--quiet", self._authenticated_url(), "HEAD"], PushFailed)

    def has_unpushed_commits(self) -> bool:
        """True when the remote branch does not point at the local HEAD commit."""
        head = self._run(["git", "rev-parse", "--verify", "-q", "HEAD"], PushFailed, check=False)
        if head.returncode != 0:
            return False
        branch = self._run(["git", "symbolic-ref", "-q", "HEAD"], PushFailed, check=False)
        ref = branch.stdout.strip()
        if branch.returncode != 0 or not ref:
            return False
        listing = self._run(["git", "ls-remote", self._authenticated_url(), ref], PushFailed)
        for line in listing.stdout.splitlines():
            sha, _, name = line.partition("\t")
            if name.strip() == ref:
                return sha.strip() != head.stdout.strip()
        return True

    def last_commit_time(self, relpath: str) -> Optional[int]:
        """Unix time of the last commit touching ``relpath``, or None if there is none."""
        result = self._run(
            ["git", "log", "-1", "--format=%ct", "--", relpath],
            PullFailed,
            check=False,
        )
        value = result.stdout.strip()
        if result.returncode != 0 or not value.isdigit():
            return None
        return int(value)

    def _run(
        self,
        args: list[str],
        error_cls: type[BackupError],
        *,
        cwd: Optional[Path] = None,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                args,
                cwd=str(cwd or self._mirror_dir),
                capture_output=True,
                text=True,
                timeout=self._timeout_seconds,
                check=False,
                env={**os.environ, **env} if env else None,
            )
        except subprocess.TimeoutExpired as exc:
            raise error_cls(f"{args[1]} timed out after {self._timeout_seconds}s") from exc
        except OSError as exc:
            raise error_cls(self._redact(f"{args[1]} could not run: {exc}")) from exc
        if check and result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            raise error_cls(self._redact(f"git {args[1]}: {detail}"))
        return result

    def _authenticated_url(self) -> str:
        if not self._token:
            return self._remote_url
        parts = urlsplit(self._remote_url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            return self._remote_url
        netloc = f"x-access-token:{quote(self._token, safe='')}@{parts.hostname}"
        if parts.port:
            netloc += f":{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

    def _redact(self, text: str) -> str:
        if not self._token:
            return text
        return text.replace(quote(self._token, safe=""), "***").replace(self._token, "***")
