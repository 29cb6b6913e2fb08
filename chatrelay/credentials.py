"""Session credential persistence and restore."""

from __future__ import annotations

import base64
import binascii
import json
import shutil
from pathlib import Path
from typing import Any, Iterable

from chatrelay.fileutil import atomic_write

CREDENTIALS_FILENAME = "creds.json"
DEFAULT_REQUIRED_FIELDS = ("token", "me")


class CredentialError(RuntimeError):
    """Base class for credential persistence failures."""


class InvalidCredential(CredentialError):
    """Raised when a credential blob is not a usable credential document."""


class CredentialIOFailure(CredentialError):
    """Raised when the local credential copy cannot be read or written."""


def _parse_document(raw: bytes) -> dict[str, Any]:
    try:
        doc = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidCredential(f"Credential blob is not JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise InvalidCredential("Credential blob must be a JSON object")
    return doc


class CredentialStore:
    """Sole owner of the local credential copy.

    ``restore`` validates structure before touching disk, so a bad blob never
    replaces a working credential. ``save`` is the transport's update path and
    only writes when the bytes actually change.
    """

    def __init__(
        self,
        session_dir: Path,
        *,
        required_fields: Iterable[str] = DEFAULT_REQUIRED_FIELDS,
        filename: str = CREDENTIALS_FILENAME,
    ) -> None:
        self._session_dir = session_dir
        self._path = session_dir / filename
        self._required_fields = tuple(required_fields)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def session_dir(self) -> Path:
        return self._session_dir

    def exists(self) -> bool:
        return self._path.is_file()

    def restore(self, encoded_blob: str) -> None:
        """Decode a base64 credential blob, validate it and persist it."""
        try:
            raw = base64.b64decode("".join(encoded_blob.split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidCredential(f"Credential blob is not valid base64: {exc}") from exc
        self.restore_bytes(raw)

    def restore_bytes(self, raw: bytes) -> None:
        doc = _parse_document(raw)
        missing = [name for name in self._required_fields if name not in doc]
        if missing:
            raise InvalidCredential(f"Credential document missing fields: {', '.join(missing)}")
        self._write(raw)

    def save(self, blob: bytes) -> bool:
        """Persist a transport-issued credential update; return True if it was written."""
        _parse_document(blob)
        if self.read_bytes() == blob:
            return False
        self._write(blob)
        return True

    def read_bytes(self) -> bytes | None:
        if not self._path.exists():
            return None
        try:
            return self._path.read_bytes()
        except OSError as exc:
            raise CredentialIOFailure(f"Cannot read {self._path}: {exc}") from exc

    def load(self) -> dict[str, Any] | None:
        raw = self.read_bytes()
        if raw is None:
            return None
        return _parse_document(raw)

    def discard(self) -> None:
        """Invalidate the local session wholesale."""
        if not self._session_dir.exists():
            return
        try:
            shutil.rmtree(self._session_dir)
        except OSError as exc:
            raise CredentialIOFailure(f"Cannot discard {self._session_dir}: {exc}") from exc

    def _write(self, raw: bytes) -> None:
        try:
            atomic_write(self._path, raw)
        except OSError as exc:
            raise CredentialIOFailure(f"Cannot write {self._path}: {exc}") from exc
