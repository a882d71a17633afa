"""HTTP API server for the spiritd daemon.

Activation surface for tenants plus observability endpoints.

Endpoints:
    POST /api/activate    — Start (or switch) a tenant's agent in a room
    POST /api/deactivate  — Stop a tenant's agent
    GET  /api/bots        — List active sessions (no secrets)
    GET  /health          — Liveness + daemon stats
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import Any

from aiohttp import web

from rooms import HandleOpenError
from supervisor import NotFoundError, Supervisor, ValidationError
from vault import CryptoError

log = logging.getLogger(__name__)


class _RateLimiter:
    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        now = time.monotonic()
        # Periodic sweep: evict stale keys when dict grows large
        if len(self._hits) > 1000:
            stale = [k for k, v in self._hits.items()
                     if not v or now - v[-1] >= self.window]
            for k in stale:
                del self._hits[k]
        hits = self._hits[key]
        self._hits[key] = [t for t in hits if now - t < self.window]
        if len(self._hits[key]) >= self.max_requests:
            return False
        self._hits[key].append(now)
        return True


class HTTPApi:
    """HTTP API server that drives the lifecycle supervisor."""

    _AUTH_EXEMPT_PATHS = frozenset({"/health"})
    _READ_ONLY_PATHS = frozenset({"/health", "/api/bots"})

    def __init__(
        self,
        supervisor: Supervisor,
        host: str,
        port: int,
        auth_token: str = "",
        get_status: Any = None,
        max_body_bytes: int = 64 * 1024,
        rate_limit: int = 30,
        rate_window: int = 60,
        status_rate_limit: int = 60,
    ):
        self.supervisor = supervisor
        self.host = host
        self.port = port
        self.auth_token = auth_token
        self._get_status = get_status
        self._max_body_bytes = max_body_bytes
        self._runner: web.AppRunner | None = None
        self._rate_limiter = _RateLimiter(max_requests=rate_limit, window_seconds=rate_window)
        self._status_rate_limiter = _RateLimiter(max_requests=status_rate_limit, window_seconds=rate_window)

    # ─── Lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application(
            middlewares=[self._auth_middleware, self._rate_middleware],
            client_max_size=self._max_body_bytes,
        )
        app.router.add_post("/api/activate", self._handle_activate)
        app.router.add_post("/api/deactivate", self._handle_deactivate)
        app.router.add_get("/api/bots", self._handle_bots)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("HTTP API listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Graceful shutdown."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("HTTP API stopped")

    # ─── Auth Middleware ──────────────────────────────────────────

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        # No token configured = open API, as for a private network
        if not self.auth_token or request.path in self._AUTH_EXEMPT_PATHS:
            return await handler(request)

        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], self.auth_token):
            log.warning("HTTP API: auth failed from %s %s",
                        request.remote, request.path)
            return web.json_response(
                {"error": "unauthorized"}, status=401,
            )
        return await handler(request)

    # ─── Rate Limit Middleware ────────────────────────────────────

    @web.middleware
    async def _rate_middleware(self, request: web.Request, handler):
        client_ip = request.remote or "unknown"
        if request.path in self._READ_ONLY_PATHS:
            limiter = self._status_rate_limiter
        else:
            limiter = self._rate_limiter
        if not limiter.check(client_ip):
            return web.json_response(
                {"error": "rate limit exceeded"}, status=429,
            )
        return await handler(request)

    # ─── Endpoints ────────────────────────────────────────────────

    async def _read_body(self, request: web.Request) -> dict | None:
        try:
            body = await request.json()
        except web.HTTPException:
            raise
        except (json.JSONDecodeError, Exception):
            return None
        return body if isinstance(body, dict) else None

    async def _handle_activate(self, request: web.Request) -> web.Response:
        """POST /api/activate — body: tenantId, roomLink, credential."""
        body = await self._read_body(request)
        if body is None:
            return web.json_response({"error": "invalid JSON body"}, status=400)

        tenant_id = str(body.get("tenantId") or "").strip()
        room_link = str(body.get("roomLink") or "").strip()
        credential = str(body.get("credential") or "").strip()

        try:
            ack = await self.supervisor.activate(tenant_id, room_link, credential)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=e.status)
        except (HandleOpenError, CryptoError) as e:
            log.error("Activation failed for %s: %s", tenant_id, e)
            return web.json_response({"error": "Failed to activate bot"}, status=500)

        data = {"success": True, "message": ack.message, "roomKey": ack.room_key}
        if ack.already_active:
            data["status"] = "already-active"
        return web.json_response(data, status=200)

    async def _handle_deactivate(self, request: web.Request) -> web.Response:
        """POST /api/deactivate — body: tenantId."""
        body = await self._read_body(request)
        if body is None:
            return web.json_response({"error": "invalid JSON body"}, status=400)

        tenant_id = str(body.get("tenantId") or "").strip()
        try:
            ack = await self.supervisor.deactivate(tenant_id)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=e.status)
        except NotFoundError:
            return web.json_response({"error": "Bot not found"}, status=404)
        return web.json_response({"success": True, "message": ack.message}, status=200)

    async def _handle_bots(self, request: web.Request) -> web.Response:
        """GET /api/bots — active sessions, never secrets."""
        return web.json_response({"bots": self.supervisor.list()}, status=200)

    async def _handle_health(self, request: web.Request) -> web.Response:
        """GET /health — liveness + stats."""
        if self._get_status:
            status = self._get_status()
        else:
            status = {"status": "ok"}
        return web.json_response(status, status=200)
