"""
Client Playback Queue — back-to-back playback of agent audio fragments.

One fragment audible at a time. Fragments play in arrival order (the server
already releases them in ordinal order), separated by a short gap to avoid
clicks. hard_stop() clears everything synchronously and is safe to call at
any time, including from the barge-in detector's frame callback.

Player callbacks carry a generation token; a callback from a player that was
stopped (or replaced) is ignored, so a late "ended" never advances a queue
that has since been cleared.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from collections import deque
from typing import Callable, Optional

from models.schemas import AudioFragment

logger = structlog.get_logger()

GREETING_ORDINAL = 0

EndCallback = Callable[[Optional[Exception]], None]


class AudioPlayer(abc.ABC):
    """Plays one audio payload at a time.

    ``play`` must return promptly and later invoke ``on_end`` exactly once on
    the event loop thread: with None when playback finished, or with the
    exception that stopped it. ``stop`` halts playback; ``on_end`` is not
    required to fire afterwards.
    """

    @abc.abstractmethod
    def play(self, audio: bytes, on_end: EndCallback) -> None:
        ...

    @abc.abstractmethod
    def stop(self) -> None:
        ...


class PlaybackQueue:
    """Pending fragments plus a single now-playing slot."""

    def __init__(
        self,
        player: AudioPlayer,
        on_drained: Optional[Callable[[], None]] = None,
        on_fragment_start: Optional[Callable[[AudioFragment], None]] = None,
        gap_s: float = 0.05,
        retry_delay_s: float = 0.1,
    ):
        self.player = player
        self.on_drained = on_drained
        self.on_fragment_start = on_fragment_start
        self.gap_s = gap_s
        self.retry_delay_s = retry_delay_s

        self._pending: deque[AudioFragment] = deque()
        self._now_playing: Optional[AudioFragment] = None
        self._token = 0
        self._advance_handle: Optional[asyncio.TimerHandle] = None

    # ── State access ──────────────────────────────────────────

    @property
    def now_playing(self) -> Optional[AudioFragment]:
        return self._now_playing

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def is_active(self) -> bool:
        """True while agent audio is playing or about to play."""
        return (
            self._now_playing is not None
            or bool(self._pending)
            or self._advance_handle is not None
        )

    # ── Operations ────────────────────────────────────────────

    def enqueue(self, fragment: AudioFragment) -> None:
        if not fragment.audio:
            logger.warning("playback_empty_fragment", ordinal=fragment.ordinal)
            return
        self._pending.append(fragment)
        if self._now_playing is None and self._advance_handle is None:
            self._play_next()

    def on_fragment_end(self, token: int, error: Optional[Exception] = None) -> None:
        if token != self._token or self._now_playing is None:
            return
        finished = self._now_playing
        self._now_playing = None
        if error is not None:
            logger.warning("playback_fragment_failed", ordinal=finished.ordinal, error=str(error))
            delay = self.retry_delay_s
        else:
            delay = self.gap_s
        self._advance_handle = asyncio.get_running_loop().call_later(delay, self._advance)

    def hard_stop(self) -> None:
        """Clear the queue and halt the player. Idempotent."""
        self._token += 1
        dropped = len(self._pending)
        self._pending.clear()
        if self._advance_handle is not None:
            self._advance_handle.cancel()
            self._advance_handle = None
        if self._now_playing is not None:
            self._now_playing = None
            try:
                self.player.stop()
            except Exception as e:
                logger.warning("playback_stop_failed", error=str(e))
        if dropped:
            logger.info("playback_hard_stop", dropped=dropped)

    # ── internals ─────────────────────────────────────────────

    def _advance(self) -> None:
        self._advance_handle = None
        self._play_next()

    def _play_next(self) -> None:
        if not self._pending:
            self._now_playing = None
            if self.on_drained:
                self.on_drained()
            return

        fragment = self._pending.popleft()
        self._now_playing = fragment
        self._token += 1
        token = self._token
        if self.on_fragment_start:
            self.on_fragment_start(fragment)
        try:
            self.player.play(fragment.audio, lambda error=None: self.on_fragment_end(token, error))
        except Exception as e:
            self.on_fragment_end(token, e)
