"""Media playback state machine.

One instance per session. Each transition is exactly one handle
interaction with its own timeout. A failed step aborts the attempt and
resets to IDLE; nothing is retried.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass

from rooms import HandleActionError, RoomHandle

log = logging.getLogger(__name__)


class PlaybackState(enum.Enum):
    IDLE = "idle"
    LOCATING_CONTROL = "locating_control"
    CONTROL_OPEN = "control_open"
    SEARCHING = "searching"
    RESULTS_READY = "results_ready"
    PLAYING = "playing"
    STOPPED = "stopped"


@dataclass(frozen=True)
class PlaybackTimeouts:
    reveal: float = 2.0
    open: float = 2.0
    search: float = 2.0
    results: float = 5.0
    play: float = 2.0
    stop: float = 2.0


@dataclass(frozen=True)
class PlaybackOutcome:
    success: bool
    state: PlaybackState
    failed_state: PlaybackState | None = None
    error: str = ""


class MediaPlayback:
    def __init__(self, handle: RoomHandle, timeouts: PlaybackTimeouts | None = None):
        self.handle = handle
        self.timeouts = timeouts or PlaybackTimeouts()
        self.state = PlaybackState.IDLE
        self.query: str | None = None

    async def play(self, query: str) -> PlaybackOutcome:
        """Drive IDLE → PLAYING for ``query``."""
        t = self.timeouts
        steps = [
            (PlaybackState.LOCATING_CONTROL, self.handle.reveal_media_control, (), t.reveal),
            (PlaybackState.CONTROL_OPEN, self.handle.open_media_control, (), t.open),
            (PlaybackState.SEARCHING, self.handle.submit_media_search, (query,), t.search),
            (PlaybackState.RESULTS_READY, self.handle.wait_media_results, (), t.results),
            (PlaybackState.PLAYING, self.handle.play_first_media_result, (), t.play),
        ]
        # A new request replaces whatever was playing
        self.state = PlaybackState.IDLE
        for target, action, args, timeout in steps:
            try:
                await self._step(action, args, timeout)
            except (HandleActionError, asyncio.TimeoutError) as e:
                reason = str(e) or type(e).__name__
                self.state = PlaybackState.IDLE
                self.query = None
                log.warning("Playback of %r failed entering %s: %s",
                            query, target.value, reason)
                return PlaybackOutcome(False, self.state, target, reason)
            self.state = target
        self.query = query
        log.info("Playback started: %r", query)
        return PlaybackOutcome(True, self.state)

    async def stop(self) -> PlaybackOutcome:
        """Drive * → STOPPED → IDLE."""
        self.state = PlaybackState.STOPPED
        try:
            await self._step(self.handle.stop_media, (), self.timeouts.stop)
        except (HandleActionError, asyncio.TimeoutError) as e:
            reason = str(e) or type(e).__name__
            self.state = PlaybackState.IDLE
            self.query = None
            log.warning("Stop failed: %s", reason)
            return PlaybackOutcome(False, self.state, PlaybackState.STOPPED, reason)
        self.state = PlaybackState.IDLE
        self.query = None
        return PlaybackOutcome(True, self.state)

    async def _step(self, action, args: tuple, timeout: float) -> None:
        # Outer bound in case the handle ignores its own timeout
        await asyncio.wait_for(action(*args, timeout=timeout), timeout=timeout + 1.0)
