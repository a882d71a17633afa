"""Ingestion loop — one polling task per session.

Polls the room handle on a fixed interval, filters the agent's own
messages and private quoted replies, deduplicates, appends to history, and
dispatches events strictly in arrival order. Liveness is re-checked after
every suspension point, so a deactivated session never appends or answers
anything.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from dispatch import Dispatcher
from rooms import HandleLivenessError, TransientIngestionError
from session import SessionRecord, SessionRegistry

log = logging.getLogger(__name__)

FatalCallback = Callable[[SessionRecord, str], Awaitable[None]]


class IngestionLoop:
    def __init__(
        self,
        record: SessionRecord,
        registry: SessionRegistry,
        dispatcher: Dispatcher,
        on_fatal: FatalCallback,
        interval: float = 2.0,
        failure_threshold: int = 5,
        self_names: tuple[str, ...] = (),
    ):
        self.record = record
        self.registry = registry
        self.dispatcher = dispatcher
        self.on_fatal = on_fatal
        self.interval = interval
        self.failure_threshold = failure_threshold
        self.self_names = frozenset(n.lower() for n in self_names if n)
        self.failures = 0

    def _live(self) -> bool:
        return not self.record.closing and self.registry.is_live(self.record)

    async def run(self) -> None:
        tenant = self.record.tenant_id
        log.info("[%s] ingestion started (room %s)", tenant, self.record.room_key)
        try:
            while True:
                await asyncio.sleep(self.interval)
                if not self._live():
                    break
                reason = await self._cycle()
                if reason:
                    log.warning("[%s] tearing down session: %s", tenant, reason)
                    await self.on_fatal(self.record, reason)
                    break
        except asyncio.CancelledError:
            log.debug("[%s] ingestion cancelled", tenant)
            raise
        log.info("[%s] ingestion stopped", tenant)

    async def _cycle(self) -> str | None:
        """One poll-and-dispatch pass. Returns a teardown reason or None."""
        handle = self.record.handle
        if handle.is_closed():
            return "room handle closed"

        try:
            events = await handle.poll()
        except HandleLivenessError as e:
            return f"room handle died: {e}"
        except TransientIngestionError as e:
            return self._count_failure(e)
        except Exception as e:
            log.exception("[%s] unexpected poll error", self.record.tenant_id)
            return self._count_failure(e)
        self.failures = 0

        for event in events:
            if not self._live():
                return None
            if event.author.lower() in self.self_names:
                continue
            # Private quoted replies never enter history or the AI context
            if event.is_private and event.has_quote:
                continue
            if not self.record.history.append(event):
                continue
            try:
                await self.dispatcher.dispatch(self.record, event)
            except HandleLivenessError as e:
                return f"room handle died: {e}"
            except Exception:
                log.exception("[%s] dispatch failed for event from %s",
                              self.record.tenant_id, event.author)
        return None

    def _count_failure(self, error: Exception) -> str | None:
        self.failures += 1
        log.warning("[%s] poll failed (%d/%d): %s", self.record.tenant_id,
                    self.failures, self.failure_threshold, error)
        if self.failures >= self.failure_threshold:
            return f"{self.failures} consecutive poll failures"
        return None
