"""Chat relay gateway runtime entry point."""

from __future__ import annotations

import argparse
import asyncio
import signal
from pathlib import Path
from typing import Any

from chatrelay.backup.store import GitBackupStore
from chatrelay.backup.synchronizer import BackupSynchronizer
from chatrelay.backup.worker import PublishQueue
from chatrelay.backup_status import BackupStatusProvider
from chatrelay.commands import CommandDispatcher
from chatrelay.connection import ConnectionLifecycle
from chatrelay.conversation import ConversationContext
from chatrelay.credentials import CredentialError, CredentialStore
from chatrelay.gateway import Gateway, GatewayState
from chatrelay.health.server import HealthServer, threadsafe_toggle
from chatrelay.llm import CompletionClient
from chatrelay.memory.episodic_memory import ERROR, WARNING, EpisodicMemoryStore, open_event_log
from chatrelay.persona import get_persona
from chatrelay.profile import (
    GatewayProfile,
    ProfileError,
    ensure_profile_directories,
    load_profile,
    read_secret,
)
from chatrelay.responder import ResponderOrchestrator
from chatrelay.settings import SettingsStore
from chatrelay.transport.telegram import (
    TELEGRAM_REQUIRED_FIELDS,
    TelegramTransport,
    bootstrap_credentials,
)

EXIT_OK = 0
EXIT_TERMINAL = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the chat relay gateway")
    parser.add_argument("--profile", required=True, help="Profile name, e.g. example")
    parser.add_argument(
        "--repo-root",
        default=None,
        help="Optional repo root override for config loading",
    )
    parser.add_argument(
        "--data-root",
        default=None,
        help="Optional data root override (default: ~/chatrelay)",
    )
    return parser


def restore_session_blob(
    credentials: CredentialStore,
    secrets_dir: Path,
    episodic_memory: EpisodicMemoryStore,
) -> bool:
    """Materialize the credential blob provisioned as a secret on a host with none yet."""
    blob = read_secret(secrets_dir, "session_blob.txt")
    if blob is None:
        return False
    if credentials.exists():
        episodic_memory.record("session_blob_skipped", {"reason": "local credentials present"})
        return False
    try:
        credentials.restore(blob)
    except CredentialError as exc:
        episodic_memory.record("session_blob_rejected", {"error": str(exc)}, level=ERROR)
        return False
    episodic_memory.record("session_blob_restored", {"path": str(credentials.path)})
    return True


def restore_boot_state(
    credentials: CredentialStore,
    secrets_dir: Path,
    episodic_memory: EpisodicMemoryStore,
    synchronizer: BackupSynchronizer | None,
) -> None:
    """Pull the mirror and restore from it, then fall back to the session secret."""
    if synchronizer is not None:
        synchronizer.initialize_remote()
        synchronizer.restore_from_mirror()
    restore_session_blob(credentials, secrets_dir, episodic_memory)


def build_credentials_provider(
    credentials: CredentialStore,
    bot_token: str | None,
    episodic_memory: EpisodicMemoryStore,
):
    def provider() -> dict[str, Any] | None:
        try:
            doc = credentials.load()
        except CredentialError as exc:
            episodic_memory.record("credentials_unreadable", {"error": str(exc)}, level=WARNING)
            doc = None
        if doc is not None:
            return doc
        if bot_token:
            return bootstrap_credentials(bot_token)
        return None

    return provider


def build_completion_client(profile: GatewayProfile) -> CompletionClient | None:
    secrets_dir = profile.paths.secrets_dir
    api_key = read_secret(secrets_dir, "llm_api_key.txt")
    if api_key is None:
        return None
    return CompletionClient(
        api_key,
        base_url=read_secret(secrets_dir, "llm_base_url.txt"),
        model=read_secret(secrets_dir, "llm_model.txt") or profile.llm_default_model,
    )


def build_backup(
    profile: GatewayProfile,
    credentials: CredentialStore,
    settings: SettingsStore,
    episodic_memory: EpisodicMemoryStore,
    completion: CompletionClient | None,
) -> BackupSynchronizer | None:
    config = profile.backup
    if not config.enabled or not config.remote_url:
        return None
    store = GitBackupStore(
        profile.paths.mirror_dir,
        config.remote_url,
        token=read_secret(profile.paths.secrets_dir, "backup_token.txt"),
        author_name=config.author_name,
        author_email=config.author_email,
        timeout_seconds=config.git_timeout_seconds,
    )
    return BackupSynchronizer(
        store,
        credentials,
        settings,
        episodic_memory,
        completion=completion,
        label_timeout_seconds=config.label_timeout_seconds,
    )


async def serve(
    profile: GatewayProfile,
    *,
    repo_root: Path | None,
    episodic_memory: EpisodicMemoryStore,
    credentials: CredentialStore,
    settings: SettingsStore,
    synchronizer: BackupSynchronizer | None,
    completion: CompletionClient | None,
) -> int:
    loop = asyncio.get_running_loop()
    secrets_dir = profile.paths.secrets_dir

    publisher = None
    if synchronizer is not None:
        publisher = PublishQueue(
            synchronizer,
            episodic_memory,
            timeout_seconds=profile.backup.publish_timeout_seconds,
        )

    def request_publish(reason: str) -> None:
        if publisher is not None:
            publisher.request(reason)

    transport = TelegramTransport()
    context = ConversationContext(profile.window_size)
    commands = CommandDispatcher(
        owner_id=profile.owner_id,
        settings=settings,
        request_publish=request_publish,
        events=episodic_memory,
        prefix=profile.control_prefix,
        activate_keyword=profile.activate_keyword,
        deactivate_keyword=profile.deactivate_keyword,
    )
    responder = ResponderOrchestrator(
        context=context,
        settings=settings,
        transport=transport,
        completion=completion,
        events=episodic_memory,
        persona=get_persona(profile.name, repo_root=repo_root),
        timeout_seconds=profile.ai_timeout_seconds,
        send_timeout_seconds=profile.send_timeout_seconds,
    )
    lifecycle = ConnectionLifecycle(
        transport,
        credentials,
        episodic_memory,
        credentials_provider=build_credentials_provider(
            credentials,
            read_secret(secrets_dir, "telegram_bot_token.txt"),
            episodic_memory,
        ),
        reconnect_delay=profile.reconnect_delay_seconds,
        backoff_factor=profile.reconnect_backoff_factor,
        max_reconnect_delay=profile.max_reconnect_delay_seconds,
        connect_timeout=profile.connect_timeout_seconds,
        discard_credentials_on_terminal=profile.discard_credentials_on_terminal,
    )
    gateway = Gateway(
        transport=transport,
        lifecycle=lifecycle,
        credentials=credentials,
        state=GatewayState(settings=settings),
        context=context,
        commands=commands,
        responder=responder,
        events=episodic_memory,
        owner_id=profile.owner_id,
        publisher=publisher,
        send_timeout_seconds=profile.send_timeout_seconds,
    )

    health_server = HealthServer(
        host=profile.health_host,
        port=profile.health_port,
        profile_name=profile.name,
        episodic_memory=episodic_memory,
        status_provider=gateway.status,
        backup_status=BackupStatusProvider(episodic_memory, enabled=synchronizer is not None),
        toggle_ai=threadsafe_toggle(loop, commands.set_ai_active),
        owner_api_key=read_secret(secrets_dir, "owner_api_key.txt"),
    )
    health_server.start()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, gateway.request_stop)
    try:
        reason = await gateway.run()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        health_server.stop()

    if reason is not None:
        return EXIT_TERMINAL
    return EXIT_OK


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    repo_root = Path(args.repo_root).resolve() if args.repo_root else None
    data_root = Path(args.data_root).expanduser().resolve() if args.data_root else None
    try:
        profile = load_profile(args.profile, repo_root=repo_root, data_root=data_root)
    except ProfileError as exc:
        parser.error(str(exc))
    ensure_profile_directories(profile)

    memory_engine, episodic_memory = open_event_log(profile.paths.events_db_path)
    episodic_memory.record(
        "gateway_boot",
        {"profile": profile.name, "display_name": profile.display_name, "health_port": profile.health_port},
    )

    credentials = CredentialStore(profile.paths.session_dir, required_fields=TELEGRAM_REQUIRED_FIELDS)
    settings = SettingsStore(profile.paths.settings_path)

    completion = build_completion_client(profile)
    synchronizer = build_backup(profile, credentials, settings, episodic_memory, completion)
    restore_boot_state(credentials, profile.paths.secrets_dir, episodic_memory, synchronizer)

    try:
        exit_code = asyncio.run(
            serve(
                profile,
                repo_root=repo_root,
                episodic_memory=episodic_memory,
                credentials=credentials,
                settings=settings,
                synchronizer=synchronizer,
                completion=completion,
            )
        )
    finally:
        episodic_memory.record("gateway_shutdown", {"profile": profile.name})
        memory_engine.close()
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
