"""Lifecycle supervisor — activate, deactivate and tear down tenant sessions.

Owns the only path that creates or destroys a SessionRecord. Activations
for one tenant are serialized by a per-tenant lock; different tenants never
wait on each other. Teardown is idempotent: the identity-checked registry
removal is synchronous, so exactly one caller goes on to release the handle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from dispatch import Dispatcher
from ingest import IngestionLoop
from playback import MediaPlayback, PlaybackTimeouts
from reply import ReplyPipeline
from rooms import HandleError, HandleOpenError, RoomHandle, RoomTarget
from session import SessionRecord, SessionRegistry
from vault import CredentialVault

log = logging.getLogger(__name__)

_ROOM_RE = re.compile(r"room/([a-zA-Z0-9-]+)")
_KEY_RE = re.compile(r"key=([0-9]+)")

MIN_TENANT_ID_LENGTH = 5

RoomOpener = Callable[[RoomTarget], Awaitable[RoomHandle]]


class ValidationError(Exception):
    """Activation input rejected before any side effect."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


class NotFoundError(Exception):
    """No session is registered for the tenant."""


@dataclass(frozen=True)
class Ack:
    message: str
    room_key: str = ""
    already_active: bool = False


def parse_room_link(link: str, base_url: str) -> RoomTarget:
    m = _ROOM_RE.search(link or "")
    if not m:
        raise ValidationError("Invalid room link")
    room_key = m.group(1)
    km = _KEY_RE.search(link)
    access_key = km.group(1) if km else None
    url = f"{base_url.rstrip('/')}/room/{room_key}"
    if access_key:
        url += f"?key={access_key}"
    return RoomTarget(room_key=room_key, url=url, access_key=access_key)


class Supervisor:
    def __init__(
        self,
        registry: SessionRegistry,
        vault: CredentialVault,
        open_room: RoomOpener,
        pipeline: ReplyPipeline,
        dispatcher: Dispatcher,
        base_url: str,
        intro_message: str = "",
        poll_interval: float = 2.0,
        failure_threshold: int = 5,
        self_names: tuple[str, ...] = (),
        playback_timeouts: PlaybackTimeouts | None = None,
    ):
        self.registry = registry
        self.vault = vault
        self.open_room = open_room
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.base_url = base_url
        self.intro_message = intro_message
        self.poll_interval = poll_interval
        self.failure_threshold = failure_threshold
        self.self_names = self_names
        self.playback_timeouts = playback_timeouts or PlaybackTimeouts()
        # tenant -> (lock, holders + waiters); dropped when the count hits zero
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._shutting_down = False

    # ─── Activation ──────────────────────────────────────────────

    async def activate(self, tenant_id: str, room_link: str, credential: str) -> Ack:
        if not tenant_id or not room_link or not credential:
            raise ValidationError("Missing required fields")
        if len(tenant_id) < MIN_TENANT_ID_LENGTH:
            raise ValidationError("Invalid subscription ID", status=401)
        target = parse_room_link(room_link, self.base_url)
        if self._shutting_down:
            raise HandleOpenError("daemon is shutting down")

        async with self._tenant_lock(tenant_id):
            existing = self.registry.get(tenant_id)
            if existing is not None:
                if existing.room_key == target.room_key:
                    log.info("[%s] already active in room %s", tenant_id, target.room_key)
                    return Ack("Bot already active", target.room_key, already_active=True)
                log.info("[%s] switching room %s → %s",
                         tenant_id, existing.room_key, target.room_key)
                await self._teardown(existing, "replaced by new activation")

            sealed = self.vault.seal(credential)
            try:
                handle = await self.open_room(target)
            except HandleOpenError:
                raise
            except Exception as e:
                raise HandleOpenError(f"could not open room {target.room_key}: {e}") from e

            if self._shutting_down:
                await self._close_handle(tenant_id, handle)
                raise HandleOpenError("daemon is shutting down")

            record = SessionRecord(
                tenant_id=tenant_id,
                room_key=target.room_key,
                handle=handle,
                encrypted_secret=sealed,
                room_url=target.url,
            )
            record.playback = MediaPlayback(handle, self.playback_timeouts)
            self.registry.add(record)

            if self.intro_message:
                try:
                    await self.pipeline.send(record, self.intro_message)
                except HandleError as e:
                    log.warning("[%s] intro message failed: %s", tenant_id, e)

            loop = IngestionLoop(
                record, self.registry, self.dispatcher, self._on_fatal,
                interval=self.poll_interval,
                failure_threshold=self.failure_threshold,
                self_names=self.self_names,
            )
            record.poll_task = asyncio.create_task(loop.run(), name=f"ingest:{tenant_id}")
            log.info("[%s] activated in room %s", tenant_id, target.room_key)
            return Ack("Bot activated successfully", target.room_key)

    async def deactivate(self, tenant_id: str) -> Ack:
        if not tenant_id:
            raise ValidationError("Missing tenantId")
        # Unknown and idle: answer without creating a lock
        if tenant_id not in self._locks and self.registry.get(tenant_id) is None:
            raise NotFoundError(f"No active bot for {tenant_id}")
        async with self._tenant_lock(tenant_id):
            record = self.registry.get(tenant_id)
            if record is None:
                raise NotFoundError(f"No active bot for {tenant_id}")
            await self._teardown(record, "deactivated")
        return Ack("Bot deactivated successfully", record.room_key)

    def list(self) -> list[dict]:
        return self.registry.summaries()

    @contextlib.asynccontextmanager
    async def _tenant_lock(self, tenant_id: str) -> AsyncIterator[None]:
        """Serialize lifecycle changes for one tenant.

        The lock lives only while someone holds or waits on it, so unknown
        or departed tenants leave nothing behind.
        """
        lock, users = self._locks.get(tenant_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[tenant_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[tenant_id]
            if users > 1:
                self._locks[tenant_id] = (lock, users - 1)
            else:
                del self._locks[tenant_id]

    # ─── Teardown ────────────────────────────────────────────────

    async def shutdown_all(self, timeout: float | None = None) -> None:
        """Tear down every session concurrently, bounded by ``timeout``."""
        self._shutting_down = True
        records = self.registry.snapshot()
        if not records:
            return
        log.info("Shutting down %d session(s)", len(records))
        teardowns = asyncio.gather(
            *(self._teardown(r, "shutdown") for r in records),
            return_exceptions=True,
        )
        try:
            await asyncio.wait_for(teardowns, timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Session shutdown timed out after %ss", timeout)

    async def _on_fatal(self, record: SessionRecord, reason: str) -> None:
        await self._teardown(record, reason)

    async def _teardown(self, record: SessionRecord, reason: str) -> bool:
        if self.registry.remove(record.tenant_id, record) is None:
            return False
        record.closing = True
        log.info("[%s] tearing down (%s)", record.tenant_id, reason)

        task = record.poll_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.wait({task})
        await self._close_handle(record.tenant_id, record.handle)
        return True

    @staticmethod
    async def _close_handle(tenant_id: str, handle: RoomHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            log.warning("[%s] error closing room handle: %s", tenant_id, e)
