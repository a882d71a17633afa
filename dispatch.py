"""Command dispatcher — classify each chat event and route it to one handler."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass

from playback import MediaPlayback, PlaybackTimeouts
from reply import ReplyPipeline
from rooms import ChatEvent
from session import SessionRecord

log = logging.getLogger(__name__)

_PLAY_RE = re.compile(r"play\s+(.+)", re.IGNORECASE)
_STOP_RE = re.compile(r"stop|close youtube|exit", re.IGNORECASE)


class RouteKind(enum.Enum):
    IGNORE = "ignore"
    CONVERSE = "converse"
    PLAY = "play"
    STOP = "stop"
    SUGGEST = "suggest"


@dataclass(frozen=True)
class Route:
    kind: RouteKind
    argument: str = ""


IGNORE = Route(RouteKind.IGNORE)


class Dispatcher:
    def __init__(
        self,
        pipeline: ReplyPipeline,
        aliases: tuple[str, ...] = ("avatar", "spirit", "bot"),
        sigil: str = "!",
        action_keywords: tuple[str, ...] = ("play",),
        play_exclusions: tuple[str, ...] = ("game",),
        suggest_command: str = "suggest",
        playback_timeouts: PlaybackTimeouts | None = None,
    ):
        self.pipeline = pipeline
        self.playback_timeouts = playback_timeouts or PlaybackTimeouts()
        self.aliases = tuple(a.lower() for a in aliases)
        self.sigil = sigil
        self.action_keywords = tuple(k.lower() for k in action_keywords)
        self.play_exclusions = tuple(x.lower() for x in play_exclusions)
        self._suggest_re = re.compile(
            re.escape(sigil) + re.escape(suggest_command) + r"\s+(.+)",
            re.IGNORECASE | re.DOTALL,
        ) if suggest_command else None

    def should_respond(self, text: str) -> bool:
        lower = text.lower()
        return (
            any(alias in lower for alias in self.aliases)
            or "?" in text
            or (bool(self.sigil) and text.startswith(self.sigil))
            or any(kw in lower for kw in self.action_keywords)
        )

    def classify(self, event: ChatEvent) -> Route:
        if event.is_private and event.has_quote:
            return IGNORE
        text = event.text
        if not self.should_respond(text):
            return IGNORE

        if self._suggest_re is not None:
            m = self._suggest_re.match(text.strip())
            if m and m.group(1).strip():
                return Route(RouteKind.SUGGEST, m.group(1).strip())

        lower = text.lower()
        if "play" in lower and not any(x in lower for x in self.play_exclusions):
            m = _PLAY_RE.search(text)
            if m and m.group(1).strip():
                return Route(RouteKind.PLAY, m.group(1).strip())

        if _STOP_RE.search(text):
            return Route(RouteKind.STOP)
        return Route(RouteKind.CONVERSE)

    async def dispatch(self, record: SessionRecord, event: ChatEvent) -> Route:
        route = self.classify(event)
        log.debug("[%s] %s from %s", record.tenant_id, route.kind.value, event.author)

        if route.kind is RouteKind.CONVERSE:
            await self.pipeline.respond(record, event)
        elif route.kind is RouteKind.PLAY:
            await self._play(record, route.argument)
        elif route.kind is RouteKind.STOP:
            await self.pipeline.acknowledge(record, "stop")
            await self._playback(record).stop()
        elif route.kind is RouteKind.SUGGEST:
            await self.pipeline.suggest(record, route.argument)
        return route

    async def _play(self, record: SessionRecord, query: str) -> None:
        await self.pipeline.acknowledge(record, "play_started", query=query)
        outcome = await self._playback(record).play(query)
        if outcome.success:
            await self.pipeline.acknowledge(record, "play_succeeded", query=query)
        else:
            await self.pipeline.acknowledge(record, "play_failed", query=query)

    def _playback(self, record: SessionRecord) -> MediaPlayback:
        if record.playback is None:
            record.playback = MediaPlayback(record.handle, self.playback_timeouts)
        return record.playback
