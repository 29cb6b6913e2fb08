"""Compose AI replies from conversation context with typing presence around the call."""

from __future__ import annotations

import asyncio
from typing import Optional

from chatrelay.conversation import ConversationContext, Role, Turn
from chatrelay.llm import CompletionError, CompletionMalformed, CompletionService
from chatrelay.memory.episodic_memory import ERROR, WARNING, EpisodicMemoryStore
from chatrelay.persona import DEFAULT_PERSONA
from chatrelay.settings import SettingsStore
from chatrelay.transport.base import InboundMessage, MessagingTransport, Presence, TransportError

FALLBACK_REPLY = "Sorry, brain jammed for a sec. Try again!"
DEFAULT_AI_TIMEOUT_SECONDS = 20.0
DEFAULT_SEND_TIMEOUT_SECONDS = 30.0


def build_prompt(persona: str, turns: tuple[Turn, ...]) -> str:
    lines = [f"{'Assistant' if turn.role is Role.ASSISTANT else 'User'}: {turn.text}" for turn in turns]
    return persona + "\n\n" + "\n".join(lines)


class ResponderOrchestrator:
    def __init__(
        self,
        *,
        context: ConversationContext,
        settings: SettingsStore,
        transport: MessagingTransport,
        completion: Optional[CompletionService],
        events: EpisodicMemoryStore,
        persona: str = DEFAULT_PERSONA,
        timeout_seconds: float = DEFAULT_AI_TIMEOUT_SECONDS,
        send_timeout_seconds: float = DEFAULT_SEND_TIMEOUT_SECONDS,
        fallback_reply: str = FALLBACK_REPLY,
    ) -> None:
        self._context = context
        self._settings = settings
        self._transport = transport
        self._completion = completion
        self._events = events
        self._persona = persona
        self._timeout_seconds = timeout_seconds
        self._send_timeout_seconds = send_timeout_seconds
        self._fallback_reply = fallback_reply

    def should_respond(self, message: InboundMessage) -> bool:
        return (
            self._settings.ai_active
            and not message.is_self
            and message.is_direct
            and not message.is_broadcast_status
        )

    async def maybe_respond(self, message: InboundMessage) -> str | None:
        """Return the reply for ``message`` (recorded in context), or None if not acting."""
        if not self.should_respond(message):
            return None
        async with self._context.lock(message.conversation_id):
            return await self._compose_reply(message.conversation_id, message.text)

    async def respond(self, message: InboundMessage) -> str | None:
        """Like ``maybe_respond`` but also delivers the reply before releasing the partner."""
        if not self.should_respond(message):
            return None
        partner_id = message.conversation_id
        async with self._context.lock(partner_id):
            await self._mark_read(message)
            reply = await self._compose_reply(partner_id, message.text)
            await self._deliver(partner_id, reply)
        return reply

    async def _compose_reply(self, partner_id: str, inbound_text: str) -> str:
        self._context.append_user_turn(partner_id, inbound_text)
        prompt = build_prompt(self._persona, self._context.snapshot(partner_id))
        await self._presence(partner_id, Presence.COMPOSING)
        try:
            reply = await self._complete(partner_id, prompt)
        finally:
            await self._presence(partner_id, Presence.PAUSED)
        self._context.append_assistant_turn(partner_id, reply)
        return reply

    async def _complete(self, partner_id: str, prompt: str) -> str:
        if self._completion is None:
            self._events.record("ai_reply_skipped", {"partner_id": partner_id, "reason": "no completion service"}, level=WARNING)
            return self._fallback_reply
        try:
            reply = await asyncio.wait_for(
                asyncio.to_thread(self._completion.complete, prompt, self._timeout_seconds),
                timeout=self._timeout_seconds,
            )
            if not isinstance(reply, str) or not reply.strip():
                raise CompletionMalformed("empty completion")
        except asyncio.TimeoutError:
            self._events.record(
                "ai_reply_failed",
                {"partner_id": partner_id, "error": f"timeout after {self._timeout_seconds}s"},
                level=ERROR,
            )
            return self._fallback_reply
        except CompletionError as exc:
            self._events.record(
                "ai_reply_failed",
                {"partner_id": partner_id, "error": f"{type(exc).__name__}: {exc}"},
                level=ERROR,
            )
            return self._fallback_reply
        self._events.record("ai_reply_generated", {"partner_id": partner_id, "chars": len(reply)})
        return reply.strip()

    async def _mark_read(self, message: InboundMessage) -> None:
        try:
            await asyncio.wait_for(
                self._transport.mark_read(message.conversation_id, message.message_id),
                timeout=self._send_timeout_seconds,
            )
        except (TransportError, asyncio.TimeoutError) as exc:
            self._events.record(
                "mark_read_failed",
                {"partner_id": message.conversation_id, "error": str(exc) or type(exc).__name__},
                level=WARNING,
            )

    async def _presence(self, partner_id: str, presence: Presence) -> None:
        try:
            await asyncio.wait_for(
                self._transport.set_presence(partner_id, presence),
                timeout=self._send_timeout_seconds,
            )
        except (TransportError, asyncio.TimeoutError) as exc:
            self._events.record(
                "presence_failed",
                {"partner_id": partner_id, "presence": presence.value, "error": str(exc)},
                level=WARNING,
            )

    async def _deliver(self, partner_id: str, text: str) -> None:
        try:
            await asyncio.wait_for(
                self._transport.send_text(partner_id, text),
                timeout=self._send_timeout_seconds,
            )
        except (TransportError, asyncio.TimeoutError) as exc:
            self._events.record(
                "reply_send_failed",
                {"partner_id": partner_id, "error": str(exc) or type(exc).__name__},
                level=ERROR,
            )
            return
        self._events.record("reply_sent", {"partner_id": partner_id})
