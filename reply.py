"""Reply pipeline — context window, AI call, length policy, serialized send.

All outbound text for a session goes through ReplyPipeline.send(), which
holds the session's send lock across the send and the post-send delay.
"""

from __future__ import annotations

import asyncio
import logging

from ai import AIService, AiServiceError
from persona import PersonaBuilder
from rooms import ChatEvent, HandleActionError
from session import SessionRecord
from vault import CredentialVault, CryptoError

log = logging.getLogger(__name__)

_ADVICE_MARKERS = ("advice", "help", "how do i", "what should i")

DEFAULT_ACKS = {
    "play_started": '🎵 Playing "{query}"...',
    "play_succeeded": "✅ Now playing: {query}",
    "play_failed": "❌ Sorry, couldn't play that song",
    "stop": "⏹️ Stopping music...",
    "suggest": "🎶 Songs like {topic}:\n{songs}",
}


def is_advice_request(text: str) -> bool:
    lower = text.lower()
    if any(marker in lower for marker in _ADVICE_MARKERS):
        return True
    return "?" in text and len(text) > 20


def apply_length_policy(reply: str, trigger_text: str, max_chars: int = 120) -> str:
    """Truncate casual replies to ``max_chars`` (ellipsis included)."""
    if is_advice_request(trigger_text) or len(reply) <= max_chars:
        return reply
    return reply[:max_chars - 3] + "..."


class ReplyPipeline:
    def __init__(
        self,
        ai: AIService,
        vault: CredentialVault,
        persona: PersonaBuilder,
        agent_name: str,
        context_size: int = 15,
        max_chars: int = 120,
        send_delay: float = 1.5,
        acks: dict[str, str] | None = None,
    ):
        self.ai = ai
        self.vault = vault
        self.persona = persona
        self.agent_name = agent_name
        self.context_size = context_size
        self.max_chars = max_chars
        self.send_delay = send_delay
        self.acks = {**DEFAULT_ACKS, **(acks or {})}

    async def respond(self, record: SessionRecord, event: ChatEvent) -> str | None:
        """Generate and send a reply to ``event``. Returns the sent text or None."""
        try:
            api_key = self.vault.open(record.encrypted_secret)
        except CryptoError as e:
            log.error("[%s] cannot open credential: %s", record.tenant_id, e)
            return None

        context = record.history.recent(self.context_size, exclude=event)
        try:
            reply = await self.ai.reply(
                api_key,
                self.persona.build(event.author),
                context,
                event.author,
                event.text,
                self.agent_name,
            )
        except AiServiceError as e:
            log.warning("[%s] no reply to %s: %s", record.tenant_id, event.author, e)
            return None
        finally:
            del api_key

        reply = apply_length_policy(reply, event.text, self.max_chars)
        if not await self.send(record, reply):
            return None
        record.history.record_outbound(self.agent_name, reply)
        log.info("[%s] replied to %s (%d chars)", record.tenant_id, event.author, len(reply))
        return reply

    async def suggest(self, record: SessionRecord, topic: str) -> str | None:
        """Send up to five songs similar to ``topic`` as one message."""
        try:
            api_key = self.vault.open(record.encrypted_secret)
            songs = await self.ai.suggest(api_key, topic)
        except (CryptoError, AiServiceError) as e:
            log.warning("[%s] no suggestions for %r: %s", record.tenant_id, topic, e)
            return None
        if not songs:
            return None
        lines = "\n".join(f"{i}. {s}" for i, s in enumerate(songs, 1))
        text = self.acks["suggest"].format(topic=topic, songs=lines)
        if not await self.send(record, text):
            return None
        record.history.record_outbound(self.agent_name, text)
        return text

    async def acknowledge(self, record: SessionRecord, template: str, **fields) -> bool:
        text = self.acks[template].format(**fields)
        return await self.send(record, text)

    async def send(self, record: SessionRecord, text: str) -> bool:
        """Send one message under the session's send lock.

        HandleLivenessError propagates; a failed UI action returns False.
        """
        async with record.send_lock:
            if record.closing:
                log.debug("[%s] send skipped, session closing", record.tenant_id)
                return False
            try:
                await record.handle.send(text)
            except HandleActionError as e:
                log.warning("[%s] send failed: %s", record.tenant_id, e)
                return False
            if self.send_delay > 0:
                await asyncio.sleep(self.send_delay)
        return True
