"""Room handle interface and shared types.

Defines the contract between the orchestrator and the automation backend
that sits inside a remote chat room. Each backend implements observe/send
and the media-control affordances for its transport.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Protocol


class HandleError(Exception):
    """Base class for room handle failures."""


class HandleOpenError(HandleError):
    """Could not establish an isolated session in the room."""


class HandleLivenessError(HandleError):
    """The session died (page or context closed). Fatal for that session."""


class TransientIngestionError(HandleError):
    """A single poll failed. Retried on the next interval."""


class HandleActionError(HandleError):
    """A single UI interaction failed or timed out. Recoverable."""


@dataclass(frozen=True)
class ChatEvent:
    author: str
    text: str
    observed_at: float = field(default_factory=time.time)
    is_private: bool = False
    has_quote: bool = False
    message_id: str | None = None   # Remote id when the page exposes one
    outbound: bool = False          # True only for the agent's own recorded replies


@dataclass(frozen=True)
class RoomTarget:
    room_key: str
    url: str
    access_key: str | None = None


class RoomHandle(Protocol):
    async def poll(self) -> list[ChatEvent]: ...
    async def send(self, text: str) -> None: ...
    def is_closed(self) -> bool: ...
    async def close(self) -> None: ...
    async def reveal_media_control(self, timeout: float) -> None: ...
    async def open_media_control(self, timeout: float) -> None: ...
    async def submit_media_search(self, query: str, timeout: float) -> None: ...
    async def wait_media_results(self, timeout: float) -> None: ...
    async def play_first_media_result(self, timeout: float) -> None: ...
    async def stop_media(self, timeout: float) -> None: ...
