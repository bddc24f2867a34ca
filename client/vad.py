"""
Client Barge-in Detector — amplitude VAD that interrupts local playback.

Only armed while agent audio is playing and a grace period has passed since
the current fragment started, so echo cancellation can settle first. While
armed, a frame above the speech threshold is either:
- an echo artifact: a sudden spike (> spike_ratio × trailing average) inside
  the first second of the fragment, ignored
- user speech: playback is hard-stopped locally and the server is told

The greeting plays with a higher speech threshold; there is no earlier agent
audio to calibrate echo cancellation against.
"""
from __future__ import annotations

import time
import numpy as np
import structlog
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from client.playback import PlaybackQueue
from models.schemas import Capabilities

logger = structlog.get_logger()


@dataclass
class BargeInConfig:
    speech_threshold: float = 0.04
    greeting_speech_threshold: float = 0.08
    silence_threshold: float = 0.008
    trailing_frames: int = 10
    spike_ratio: float = 3.0
    echo_window_s: float = 1.0
    grace_period_s: float = 0.3

    def __post_init__(self):
        if self.silence_threshold >= self.speech_threshold:
            raise ValueError("silence_threshold must be below speech_threshold")
        if self.silence_threshold >= self.greeting_speech_threshold:
            raise ValueError("silence_threshold must be below greeting_speech_threshold")
        if self.trailing_frames < 1:
            raise ValueError("trailing_frames must be positive")

    @classmethod
    def for_capabilities(cls, capabilities: Capabilities, **overrides) -> "BargeInConfig":
        """Mobile echo cancellation settles more slowly; give it a longer grace period."""
        overrides.setdefault("grace_period_s", 1.0 if capabilities.is_mobile else 0.3)
        return cls(**overrides)


def frame_level(samples: np.ndarray) -> float:
    """Mean absolute amplitude of a float frame in [-1, 1]."""
    if samples.size == 0:
        return 0.0
    return float(np.mean(np.abs(samples)))


class BargeInDetector:
    """Feeds on microphone frames; calls ``on_interrupt`` on genuine user speech during playback."""

    def __init__(
        self,
        config: BargeInConfig,
        playback: PlaybackQueue,
        on_interrupt: Callable[[], None],
        on_user_finished: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.playback = playback
        self.on_interrupt = on_interrupt
        self.on_user_finished = on_user_finished
        self._clock = clock

        self._levels: deque[float] = deque(maxlen=config.trailing_frames)
        self._fragment_started: Optional[float] = None
        self._greeting = False
        self.speaking_locally = False
        self.muted = False
        self._spoke_this_turn = False
        self.interruptions = 0
        self.echo_rejections = 0

    # ── Playback events ───────────────────────────────────────

    def on_fragment_start(self, is_greeting: bool = False) -> None:
        self._fragment_started = self._clock()
        self._greeting = is_greeting
        self._levels.clear()

    def on_playback_stopped(self) -> None:
        self._fragment_started = None
        self._greeting = False
        self._levels.clear()

    # ── State access ──────────────────────────────────────────

    @property
    def speech_threshold(self) -> float:
        return self.config.greeting_speech_threshold if self._greeting else self.config.speech_threshold

    @property
    def armed(self) -> bool:
        if not self.playback.is_active or self._fragment_started is None:
            return False
        return self._clock() - self._fragment_started >= self.config.grace_period_s

    # ── Frames ────────────────────────────────────────────────

    def process_frame(self, samples: np.ndarray) -> float:
        level = frame_level(samples)
        if self.muted:
            return level
        self._levels.append(level)

        if not self.armed:
            if level > self.config.speech_threshold and not self.playback.is_active:
                self._spoke_this_turn = True
            if self.speaking_locally and level < self.config.silence_threshold:
                self.speaking_locally = False
            return level

        if not self.speaking_locally and level > self.speech_threshold:
            if self._is_echo(level):
                self.echo_rejections += 1
                logger.debug("vad_echo_ignored", level=round(level, 4))
                return level
            self.speaking_locally = True
            self._spoke_this_turn = True
            self.interruptions += 1
            logger.info("vad_barge_in", level=round(level, 4), greeting=self._greeting)
            self.playback.hard_stop()
            self.on_playback_stopped()
            self.on_interrupt()
        elif self.speaking_locally and level < self.config.silence_threshold:
            self.speaking_locally = False
        return level

    def _is_echo(self, level: float) -> bool:
        average = sum(self._levels) / len(self._levels)
        sudden_spike = level > average * self.config.spike_ratio
        early = self._clock() - self._fragment_started < self.config.echo_window_s
        return sudden_spike and early

    # ── Mute ──────────────────────────────────────────────────

    def mute(self) -> None:
        """Stop listening without ending the turn. Signals turn completion if the user spoke."""
        if self.muted:
            return
        self.muted = True
        self.speaking_locally = False
        if self._spoke_this_turn and self.on_user_finished:
            self.on_user_finished()
        self._spoke_this_turn = False

    def unmute(self) -> None:
        self.muted = False
        self._levels.clear()
