"""Profile configuration loader and path resolver."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_WINDOW_SIZE = 10
DEFAULT_CONTROL_PREFIX = "."
DEFAULT_ACTIVATE_KEYWORD = "activateai"
DEFAULT_DEACTIVATE_KEYWORD = "deactivate"


@dataclass(frozen=True)
class ProfilePaths:
    base_data_dir: Path
    session_dir: Path
    settings_path: Path
    logs_dir: Path
    events_db_path: Path
    secrets_dir: Path
    mirror_dir: Path


@dataclass(frozen=True)
class BackupConfig:
    enabled: bool
    remote_url: str | None
    author_name: str
    author_email: str
    git_timeout_seconds: int
    label_timeout_seconds: int
    publish_timeout_seconds: int


@dataclass(frozen=True)
class GatewayProfile:
    name: str
    display_name: str
    owner_id: str
    control_prefix: str
    activate_keyword: str
    deactivate_keyword: str
    window_size: int
    ai_timeout_seconds: int
    send_timeout_seconds: int
    connect_timeout_seconds: int
    reconnect_delay_seconds: float
    reconnect_backoff_factor: float
    max_reconnect_delay_seconds: float
    discard_credentials_on_terminal: bool
    llm_default_model: str
    health_host: str
    health_port: int
    backup: BackupConfig
    paths: ProfilePaths


class ProfileError(ValueError):
    """Raised when profile configuration is invalid."""


def _validate_raw_profile(raw: dict[str, Any], expected_name: str) -> None:
    required = {"name", "display_name", "owner_id"}
    missing = required.difference(raw.keys())
    if missing:
        missing_joined = ", ".join(sorted(missing))
        raise ProfileError(f"Missing required profile keys: {missing_joined}")

    if raw["name"] != expected_name:
        raise ProfileError(
            f"Profile filename/name mismatch: expected '{expected_name}', got '{raw['name']}'"
        )

    if not str(raw["owner_id"]).strip():
        raise ProfileError("owner_id must not be empty")

    window = raw.get("window_size", DEFAULT_WINDOW_SIZE)
    if not isinstance(window, int) or window < 1:
        raise ProfileError("window_size must be a positive integer")

    prefix = raw.get("control_prefix", DEFAULT_CONTROL_PREFIX)
    if not isinstance(prefix, str) or not prefix:
        raise ProfileError("control_prefix must be a non-empty string")

    backup = raw.get("backup", {})
    if not isinstance(backup, dict):
        raise ProfileError("backup must be a mapping")
    if backup.get("enabled", False) and not backup.get("remote_url"):
        raise ProfileError("backup.remote_url is required when backup is enabled")


def _load_backup_config(raw: dict[str, Any]) -> BackupConfig:
    return BackupConfig(
        enabled=bool(raw.get("enabled", False)),
        remote_url=str(raw["remote_url"]).strip() if raw.get("remote_url") else None,
        author_name=str(raw.get("author_name", "chatrelay")),
        author_email=str(raw.get("author_email", "chatrelay@localhost")),
        git_timeout_seconds=int(raw.get("git_timeout_seconds", 60)),
        label_timeout_seconds=int(raw.get("label_timeout_seconds", 10)),
        publish_timeout_seconds=int(raw.get("publish_timeout_seconds", 180)),
    )


def build_paths(base_data_dir: Path) -> ProfilePaths:
    logs_dir = base_data_dir / "logs"
    return ProfilePaths(
        base_data_dir=base_data_dir,
        session_dir=base_data_dir / "session",
        settings_path=base_data_dir / "settings.json",
        logs_dir=logs_dir,
        events_db_path=logs_dir / "events.db",
        secrets_dir=base_data_dir / "secrets",
        mirror_dir=base_data_dir / "backup",
    )


def load_profile(
    profile_name: str,
    repo_root: Path | None = None,
    data_root: Path | None = None,
) -> GatewayProfile:
    """Load a profile from config and resolve data paths."""
    if repo_root is None:
        repo_root = Path(__file__).resolve().parent.parent
    if data_root is None:
        data_root = Path.home() / "chatrelay"

    profile_path = repo_root / "config" / "profiles" / f"{profile_name}.yaml"
    if not profile_path.exists():
        raise ProfileError(f"Profile not found: {profile_path}")

    with profile_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    if not isinstance(raw, dict):
        raise ProfileError(f"Profile file must contain a mapping: {profile_path}")

    _validate_raw_profile(raw, profile_name)

    return GatewayProfile(
        name=raw["name"],
        display_name=raw["display_name"],
        owner_id=str(raw["owner_id"]).strip(),
        control_prefix=raw.get("control_prefix", DEFAULT_CONTROL_PREFIX),
        activate_keyword=str(raw.get("activate_keyword", DEFAULT_ACTIVATE_KEYWORD)).lower(),
        deactivate_keyword=str(raw.get("deactivate_keyword", DEFAULT_DEACTIVATE_KEYWORD)).lower(),
        window_size=int(raw.get("window_size", DEFAULT_WINDOW_SIZE)),
        ai_timeout_seconds=max(5, min(120, int(raw.get("ai_timeout_seconds", 20)))),
        send_timeout_seconds=int(raw.get("send_timeout_seconds", 30)),
        connect_timeout_seconds=int(raw.get("connect_timeout_seconds", 30)),
        reconnect_delay_seconds=float(raw.get("reconnect_delay_seconds", 5.0)),
        reconnect_backoff_factor=float(raw.get("reconnect_backoff_factor", 1.0)),
        max_reconnect_delay_seconds=float(raw.get("max_reconnect_delay_seconds", 60.0)),
        discard_credentials_on_terminal=bool(raw.get("discard_credentials_on_terminal", False)),
        llm_default_model=str(raw.get("llm_default_model", "gpt-4o-mini")).strip() or "gpt-4o-mini",
        health_host=str(raw.get("health_host", "0.0.0.0")),
        health_port=int(raw.get("health_port", 8700)),
        backup=_load_backup_config(raw.get("backup", {}) or {}),
        paths=build_paths(data_root / profile_name),
    )


def ensure_profile_directories(profile: GatewayProfile) -> None:
    """Create profile directories without touching existing data."""
    profile.paths.base_data_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.session_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.logs_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.secrets_dir.mkdir(parents=True, exist_ok=True)


def read_secret(secrets_dir: Path, filename: str) -> str | None:
    """Read a secret file; return None if missing or empty."""
    path = secrets_dir / filename
    if not path.exists():
        return None
    raw = path.read_text(encoding="utf-8").strip()
    return raw if raw else None
