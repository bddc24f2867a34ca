"""
Turn-Taking State Machine — who holds the floor, and which response is live.

States:
    IDLE → GREETING → LISTENING → PROCESSING → SPEAKING
    PROCESSING | SPEAKING → INTERRUPTED → LISTENING      (barge-in)

The generation epoch is the single source of truth for "is this response
still wanted". A new epoch is minted for every pipeline run and on every
barge-in; anything produced under an older epoch is discarded by its
producer. Advancing the epoch is synchronous and never waits on the
network, so an interruption takes effect before any further fragment can be
released.
"""
from __future__ import annotations

import time
import structlog
from typing import Any

from models.schemas import TurnState
from voice.errors import InvalidTransition

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  TRANSITION TABLE
# ══════════════════════════════════════════════════════════════

TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.GREETING}),
    TurnState.GREETING: frozenset({TurnState.LISTENING, TurnState.IDLE}),
    TurnState.LISTENING: frozenset({TurnState.PROCESSING, TurnState.IDLE}),
    TurnState.PROCESSING: frozenset({
        TurnState.SPEAKING, TurnState.LISTENING, TurnState.INTERRUPTED, TurnState.IDLE,
    }),
    TurnState.SPEAKING: frozenset({
        TurnState.LISTENING, TurnState.INTERRUPTED, TurnState.IDLE,
    }),
    TurnState.INTERRUPTED: frozenset({TurnState.LISTENING, TurnState.IDLE}),
}

INTERRUPTIBLE = frozenset({TurnState.PROCESSING, TurnState.SPEAKING})


class TurnStateMachine:
    """Explicit turn state plus the monotonically increasing generation epoch."""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._state = TurnState.IDLE
        self._epoch = 0
        self._changed_at = time.monotonic()
        self.interruptions = 0

    # ── State access ──────────────────────────────────────────

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    def is_current(self, epoch: int) -> bool:
        return epoch == self._epoch

    def can_transition(self, to_state: TurnState) -> bool:
        return to_state == self._state or to_state in TRANSITIONS[self._state]

    def transition(self, to_state: TurnState) -> None:
        if to_state == self._state:
            return
        if to_state not in TRANSITIONS[self._state]:
            raise InvalidTransition(self._state.value, to_state.value)
        logger.debug("turn_state_changed", session_id=self.session_id,
                     from_state=self._state.value, to_state=to_state.value, epoch=self._epoch)
        self._state = to_state
        self._changed_at = time.monotonic()

    # ── Epoch ─────────────────────────────────────────────────

    def advance_epoch(self) -> int:
        self._epoch += 1
        return self._epoch

    def begin_turn(self) -> int:
        """LISTENING → PROCESSING with a freshly minted epoch."""
        self.transition(TurnState.PROCESSING)
        return self.advance_epoch()

    def interrupt(self) -> bool:
        """
        Barge-in. Only meaningful while the agent holds the floor.
        Returns True when the live response was invalidated.
        """
        if self._state not in INTERRUPTIBLE:
            return False
        self.advance_epoch()
        self.interruptions += 1
        self.transition(TurnState.INTERRUPTED)
        self.transition(TurnState.LISTENING)
        logger.info("turn_interrupted", session_id=self.session_id, epoch=self._epoch)
        return True

    def reset(self) -> None:
        """Back to IDLE from anywhere; the epoch advances so nothing in flight survives."""
        self.advance_epoch()
        if self._state != TurnState.IDLE:
            self.transition(TurnState.IDLE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "epoch": self._epoch,
            "interruptions": self.interruptions,
            "state_age_s": round(time.monotonic() - self._changed_at, 1),
        }
