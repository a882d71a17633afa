"""Shared fixtures for the spiritd test suite.

All tests use temporary directories and fake room handles.
Nothing touches ~/.spiritd/, a real browser, or the network.
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from rooms import ChatEvent  # noqa: E402


class FakeRoomHandle:
    """In-memory RoomHandle.

    ``batches`` is consumed one item per poll: a list of ChatEvents, or an
    exception instance to raise. ``media_errors`` maps a media method name
    to an exception it raises; ``media_delays`` to seconds it sleeps first.
    """

    def __init__(self, batches=None):
        self.batches = list(batches or [])
        self.sent: list[str] = []
        self.polls = 0
        self.closed = False
        self.close_calls = 0
        self.send_error: Exception | None = None
        self.media_calls: list[tuple] = []
        self.media_errors: dict[str, Exception] = {}
        self.media_delays: dict[str, float] = {}

    async def poll(self):
        self.polls += 1
        if self.batches:
            item = self.batches.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return []

    async def send(self, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(text)

    def is_closed(self):
        return self.closed

    async def close(self):
        self.close_calls += 1
        self.closed = True

    async def _media(self, name, *args):
        self.media_calls.append((name, *args))
        if name in self.media_delays:
            await asyncio.sleep(self.media_delays[name])
        if name in self.media_errors:
            raise self.media_errors[name]

    async def reveal_media_control(self, timeout):
        await self._media("reveal_media_control")

    async def open_media_control(self, timeout):
        await self._media("open_media_control")

    async def submit_media_search(self, query, timeout):
        await self._media("submit_media_search", query)

    async def wait_media_results(self, timeout):
        await self._media("wait_media_results")

    async def play_first_media_result(self, timeout):
        await self._media("play_first_media_result")

    async def stop_media(self, timeout):
        await self._media("stop_media")


def event(author="Alice", text="hello", **kw) -> ChatEvent:
    return ChatEvent(author=author, text=text, **kw)


@pytest.fixture
def fake_handle():
    return FakeRoomHandle()


@pytest.fixture(scope="session")
def vault():
    from vault import CredentialVault
    return CredentialVault("test-secret")


@pytest.fixture
def make_record(vault):
    """Factory for SessionRecords backed by a FakeRoomHandle."""
    from session import SessionRecord

    def _make(tenant_id="tenant-1", room_key="abc123", handle=None, credential="sk-test"):
        return SessionRecord(
            tenant_id=tenant_id,
            room_key=room_key,
            handle=handle or FakeRoomHandle(),
            encrypted_secret=vault.seal(credential),
        )
    return _make


@pytest.fixture
def mock_ai():
    ai = MagicMock()
    ai.reply = AsyncMock(return_value="hi there")
    ai.suggest = AsyncMock(return_value=["Song A - Artist", "Song B - Artist"])
    return ai


@pytest.fixture
def mock_persona():
    persona = MagicMock()
    persona.build.return_value = [{"text": "You are Spirit.", "tier": "stable"}]
    return persona


@pytest.fixture
def pipeline(mock_ai, vault, mock_persona):
    from reply import ReplyPipeline
    return ReplyPipeline(mock_ai, vault, mock_persona, "Spirit", send_delay=0)


@pytest.fixture
def tmp_workspace(tmp_path):
    """Temp workspace with a persona file."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    (ws / "persona.md").write_text("# Persona\nYou are Avatar Spirit.")
    (ws / "style.md").write_text("Speak casually.")
    return ws


@pytest.fixture
def minimal_toml_data():
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "agent": {
            "name": "Avatar Spirit",
            "self_names": ["Avatar Spirit", "AvatarSpiritBot"],
        },
        "vault": {
            "secret": "test-vault-secret",
        },
        "models": {
            "primary": {
                "provider": "openai-compat",
                "model": "gemini-2.0-flash-lite",
                "base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
                "max_tokens": 256,
            },
            "suggest": {
                "provider": "openai-compat",
                "model": "gemini-2.0-flash-exp",
            },
        },
        "paths": {
            "state_dir": "/tmp/test-spiritd",
            "log_file": "/tmp/test-spiritd/spiritd.log",
            "pid_file": "/tmp/test-spiritd/spiritd.pid",
        },
    }
