"""
Telegram transport.

Uses python-telegram-bot for:
- Long-polling updates from private chats, groups and channels
- Sending replies and typing indicators
- Mapping Telegram errors onto connection close reasons
"""

from __future__ import annotations

import json
from typing import Any, Optional, Union

from telegram import Update
from telegram.constants import ChatAction, ChatType
from telegram.error import Conflict, InvalidToken, NetworkError, TelegramError, TimedOut
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from chatrelay.transport.base import (
    CloseReason,
    ConnectionStatus,
    ConnectionUpdate,
    CredentialsUpdate,
    InboundMessage,
    MessagingTransport,
    Presence,
    TransportError,
)

MAX_TELEGRAM_MESSAGE_LEN = 4096
TELEGRAM_REQUIRED_FIELDS = ("token", "me")


def _truncate(text: str) -> str:
    if len(text) <= MAX_TELEGRAM_MESSAGE_LEN:
        return text
    return text[: MAX_TELEGRAM_MESSAGE_LEN - 3] + "..."


def _chat_id(conversation_id: str) -> Union[int, str]:
    if conversation_id.lstrip("-").isdigit():
        return int(conversation_id)
    return conversation_id


def classify_error(exc: TelegramError) -> CloseReason:
    if isinstance(exc, InvalidToken):
        return CloseReason.BAD_SESSION
    if isinstance(exc, Conflict):
        # Another process is polling with the same token.
        return CloseReason.SESSION_REPLACED
    if isinstance(exc, TimedOut):
        return CloseReason.TIMED_OUT
    if isinstance(exc, NetworkError):
        return CloseReason.CONNECTION_LOST
    return CloseReason.UNKNOWN


def bootstrap_credentials(token: str) -> dict[str, Any]:
    """Credential document for a token that has not opened a session yet."""
    return {"token": token}


class TelegramTransport(MessagingTransport):
    """Bot-API session driven by an Application with long polling."""

    def __init__(self) -> None:
        super().__init__()
        self._app: Optional[Application] = None
        self._credentials: Optional[bytes] = None
        self._close_reported = False

    async def connect(self, credentials: dict[str, Any]) -> None:
        token = str(credentials.get("token") or "").strip()
        if not token:
            raise TransportError(CloseReason.BAD_SESSION, "credential document has no token")

        app = Application.builder().token(token).build()
        app.add_handler(
            MessageHandler(
                (filters.TEXT | filters.CAPTION)
                & (filters.UpdateType.MESSAGE | filters.UpdateType.CHANNEL_POST),
                self._handle_message,
            )
        )
        self._close_reported = False
        try:
            await app.initialize()
            await app.start()
            await app.updater.start_polling(
                allowed_updates=Update.ALL_TYPES,
                drop_pending_updates=False,
                error_callback=self._polling_error,
            )
        except TelegramError as exc:
            await self._teardown(app)
            raise TransportError(classify_error(exc), str(exc)) from exc

        self._app = app
        me = app.bot
        self._credentials = json.dumps(
            {"token": token, "me": {"id": me.id, "username": me.username}},
            indent=2,
            sort_keys=True,
        ).encode("utf-8")
        self._emit(CredentialsUpdate(self._credentials))
        self._emit(ConnectionUpdate(ConnectionStatus.OPEN))

    async def disconnect(self) -> None:
        app = self._app
        self._app = None
        if app is None:
            return
        try:
            await self._teardown(app)
        except TelegramError as exc:
            raise TransportError(classify_error(exc), f"disconnect failed: {exc}") from exc

    async def _teardown(self, app: Application) -> None:
        if app.updater is not None and app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
        await app.shutdown()

    def _polling_error(self, exc: TelegramError) -> None:
        # Called by the updater for every failed getUpdates; report only the first per session.
        if self._close_reported:
            return
        self._close_reported = True
        self._emit(ConnectionUpdate(ConnectionStatus.CLOSE, classify_error(exc), str(exc)))

    async def send_text(self, conversation_id: str, text: str) -> None:
        if self._app is None:
            raise TransportError(CloseReason.CONNECTION_LOST, "not connected")
        try:
            await self._app.bot.send_message(chat_id=_chat_id(conversation_id), text=_truncate(text))
        except TelegramError as exc:
            raise TransportError(classify_error(exc), str(exc)) from exc

    async def set_presence(self, conversation_id: str, presence: Presence) -> None:
        # Telegram clears the typing action on its own once a message is sent.
        if self._app is None or presence is not Presence.COMPOSING:
            return
        try:
            await self._app.bot.send_chat_action(chat_id=_chat_id(conversation_id), action=ChatAction.TYPING)
        except TelegramError as exc:
            raise TransportError(classify_error(exc), str(exc)) from exc

    def current_credentials(self) -> Optional[bytes]:
        return self._credentials

    async def logout(self) -> None:
        if self._app is not None:
            try:
                await self._app.bot.log_out()
            except TelegramError as exc:
                raise TransportError(classify_error(exc), f"logout failed: {exc}") from exc
        await super().logout()

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        chat = update.effective_chat
        if message is None or chat is None:
            return
        text = (message.text or message.caption or "").strip()
        if not text:
            return
        user = update.effective_user
        bot_id = context.bot.id
        sender_id = str(user.id) if user else str(chat.id)
        self._emit(
            InboundMessage(
                message_id=str(message.message_id),
                sender_id=sender_id,
                conversation_id=str(chat.id),
                text=text,
                is_self=user is not None and user.id == bot_id,
                is_broadcast_status=chat.type == ChatType.CHANNEL,
                is_direct=chat.type == ChatType.PRIVATE,
            )
        )
