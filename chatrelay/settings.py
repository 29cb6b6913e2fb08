"""Durable key/value settings backed by a JSON document."""

from __future__ import annotations

import json
import threading
from pathlib import Path

from chatrelay.fileutil import atomic_write

AI_ACTIVE_KEY = "aiActive"


class SettingsError(ValueError):
    """Raised when a settings document is malformed."""


def _encode(values: dict[str, str]) -> bytes:
    # Stable bytes for a given mapping so an unchanged file never shows up in the backup diff.
    return (json.dumps(values, indent=2, sort_keys=True, ensure_ascii=True) + "\n").encode("utf-8")


def _decode(raw: bytes) -> dict[str, str]:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SettingsError(f"Settings document is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SettingsError("Settings document must be a JSON object")
    return {str(key): str(value) for key, value in data.items()}


class SettingsStore:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._values: dict[str, str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _loaded(self) -> dict[str, str]:
        if self._values is None:
            if self._path.exists():
                self._values = _decode(self._path.read_bytes())
            else:
                self._values = {}
        return self._values

    def get(self, key: str, default: str | None = None) -> str | None:
        with self._lock:
            return self._loaded().get(key, default)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._loaded())

    def set(self, key: str, value: str) -> bool:
        """Write ``key`` durably; return True if the stored value changed."""
        with self._lock:
            values = dict(self._loaded())
            if values.get(key) == value and self._path.exists():
                return False
            values[key] = value
            atomic_write(self._path, _encode(values))
            self._values = values
            return True

    @property
    def ai_active(self) -> bool:
        return self.get(AI_ACTIVE_KEY, "false") == "true"

    def set_ai_active(self, active: bool) -> bool:
        return self.set(AI_ACTIVE_KEY, "true" if active else "false")

    def read_bytes(self) -> bytes | None:
        if not self._path.exists():
            return None
        return self._path.read_bytes()

    def replace_from_bytes(self, raw: bytes) -> None:
        """Replace the whole document, e.g. with a copy restored from backup."""
        values = _decode(raw)
        with self._lock:
            atomic_write(self._path, _encode(values))
            self._values = values
