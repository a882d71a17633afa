"""Tests for http_api.py — activation API, status codes, auth, rate limiting."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from http_api import HTTPApi, _RateLimiter
from rooms import HandleOpenError
from supervisor import Ack, NotFoundError, ValidationError
from vault import CryptoError

# ─── Fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def supervisor():
    sup = MagicMock()
    sup.activate = AsyncMock(return_value=Ack("Bot activated successfully", "abc123"))
    sup.deactivate = AsyncMock(return_value=Ack("Bot deactivated successfully", "abc123"))
    sup.list = MagicMock(return_value=[{
        "tenantId": "tenant-1", "roomKey": "abc123",
        "createdAt": "2026-01-01T00:00:00Z", "historyLength": 3,
    }])
    return sup


@pytest.fixture
def api(supervisor):
    return HTTPApi(
        supervisor,
        host="127.0.0.1",
        port=0,  # unused — we use aiohttp test client
        get_status=lambda: {
            "status": "ok", "activeSessions": 1, "uptime": 42, "memoryMb": 80, "pid": 1,
        },
    )


def _make_app(api_instance: HTTPApi) -> web.Application:
    return api_instance.build_app()


ACTIVATE_BODY = {
    "tenantId": "tenant-1",
    "roomLink": "https://www.free4talk.com/room/abc123",
    "credential": "sk-1",
}


# ─── Activate ─────────────────────────────────────────────────────


class TestActivate:
    @pytest.mark.asyncio
    async def test_success(self, api, supervisor):
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/activate", json=ACTIVATE_BODY)
            assert resp.status == 200
            body = await resp.json()
            assert body["success"] is True
            assert body["roomKey"] == "abc123"
            assert "status" not in body
        supervisor.activate.assert_awaited_once_with(
            "tenant-1", "https://www.free4talk.com/room/abc123", "sk-1")

    @pytest.mark.asyncio
    async def test_already_active(self, api, supervisor):
        supervisor.activate.return_value = Ack("Bot already active", "abc123", already_active=True)
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/activate", json=ACTIVATE_BODY)
            assert resp.status == 200
            body = await resp.json()
            assert body["status"] == "already-active"
            assert body["roomKey"] == "abc123"

    @pytest.mark.asyncio
    async def test_validation_status_passthrough(self, api, supervisor):
        supervisor.activate.side_effect = ValidationError("Invalid subscription ID", status=401)
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/activate", json={**ACTIVATE_BODY, "tenantId": "abc"})
            assert resp.status == 401
            assert (await resp.json())["error"] == "Invalid subscription ID"

    @pytest.mark.asyncio
    async def test_bad_room_link(self, api, supervisor):
        supervisor.activate.side_effect = ValidationError("Invalid room link")
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/activate", json={**ACTIVATE_BODY, "roomLink": "abc123"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_open_failure_500(self, api, supervisor):
        supervisor.activate.side_effect = HandleOpenError("navigation timeout at secret path")
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/activate", json=ACTIVATE_BODY)
            assert resp.status == 500
            body = await resp.json()
            assert "secret path" not in body["error"]

    @pytest.mark.asyncio
    async def test_crypto_failure_500(self, api, supervisor):
        supervisor.activate.side_effect = CryptoError("bad")
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/activate", json=ACTIVATE_BODY)
            assert resp.status == 500

    @pytest.mark.asyncio
    async def test_invalid_json(self, api):
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/activate", data="not json",
                                     headers={"Content-Type": "application/json"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_non_object_json(self, api):
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/activate", json=["a", "b"])
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_credential_never_echoed(self, api):
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/activate", json=ACTIVATE_BODY)
            assert "sk-1" not in await resp.text()


# ─── Deactivate ───────────────────────────────────────────────────


class TestDeactivate:
    @pytest.mark.asyncio
    async def test_success(self, api, supervisor):
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/deactivate", json={"tenantId": "tenant-1"})
            assert resp.status == 200
            assert (await resp.json())["success"] is True
        supervisor.deactivate.assert_awaited_once_with("tenant-1")

    @pytest.mark.asyncio
    async def test_not_found(self, api, supervisor):
        supervisor.deactivate.side_effect = NotFoundError("nope")
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/deactivate", json={"tenantId": "tenant-1"})
            assert resp.status == 404
            assert (await resp.json())["error"] == "Bot not found"

    @pytest.mark.asyncio
    async def test_missing_field(self, api, supervisor):
        supervisor.deactivate.side_effect = ValidationError("Missing tenantId")
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.post("/api/deactivate", json={})
            assert resp.status == 400


# ─── Observability ────────────────────────────────────────────────


class TestObservability:
    @pytest.mark.asyncio
    async def test_bots(self, api):
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.get("/api/bots")
            assert resp.status == 200
            body = await resp.json()
            assert body["bots"][0]["tenantId"] == "tenant-1"

    @pytest.mark.asyncio
    async def test_health(self, api):
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()
            assert body["status"] == "ok"
            assert body["activeSessions"] == 1

    @pytest.mark.asyncio
    async def test_health_default(self, supervisor):
        api = HTTPApi(supervisor, host="127.0.0.1", port=0)
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.get("/health")
            assert (await resp.json()) == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_unknown_route(self, api):
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.get("/api/nope")
            assert resp.status == 404


# ─── Auth ─────────────────────────────────────────────────────────


class TestAuth:
    @pytest.fixture
    def secured(self, supervisor):
        return HTTPApi(supervisor, host="127.0.0.1", port=0, auth_token="test-token-123")

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, secured):
        async with TestClient(TestServer(_make_app(secured))) as client:
            resp = await client.post("/api/activate", json=ACTIVATE_BODY)
            assert resp.status == 401
            assert (await resp.json())["error"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_valid_token_accepted(self, secured):
        async with TestClient(TestServer(_make_app(secured))) as client:
            resp = await client.post("/api/activate", json=ACTIVATE_BODY,
                                     headers={"Authorization": "Bearer test-token-123"})
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_health_exempt(self, secured):
        async with TestClient(TestServer(_make_app(secured))) as client:
            resp = await client.get("/health")
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_no_token_is_open(self, api):
        async with TestClient(TestServer(_make_app(api))) as client:
            resp = await client.get("/api/bots")
            assert resp.status == 200


# ─── Rate limiting ────────────────────────────────────────────────


class TestRateLimiting:
    def test_limiter_blocks_after_max(self):
        rl = _RateLimiter(max_requests=2, window_seconds=60)
        assert rl.check("ip")
        assert rl.check("ip")
        assert not rl.check("ip")
        assert rl.check("other")

    @pytest.mark.asyncio
    async def test_429_when_exceeded(self, supervisor):
        api = HTTPApi(supervisor, host="127.0.0.1", port=0, rate_limit=2)
        async with TestClient(TestServer(_make_app(api))) as client:
            for _ in range(2):
                resp = await client.post("/api/deactivate", json={"tenantId": "tenant-1"})
                assert resp.status == 200
            resp = await client.post("/api/deactivate", json={"tenantId": "tenant-1"})
            assert resp.status == 429

    @pytest.mark.asyncio
    async def test_status_has_own_budget(self, supervisor):
        api = HTTPApi(supervisor, host="127.0.0.1", port=0, rate_limit=1)
        async with TestClient(TestServer(_make_app(api))) as client:
            await client.post("/api/deactivate", json={"tenantId": "tenant-1"})
            resp = await client.get("/health")
            assert resp.status == 200


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, api):
        await api.start()
        assert api._runner is not None
        await api.stop()
        assert api._runner is None
