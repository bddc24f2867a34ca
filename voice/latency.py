"""
Latency Tracker — per-turn stage timing for the response pipeline.

Measures, per session turn:
- generation time to first token
- per-fragment synthesis time
- accepted transcript → first released fragment (what the user perceives)
- whole turn (transcript → pipeline finished)

Session trackers feed an aggregate tracker that keeps rolling percentiles
for the health endpoint.
"""
from __future__ import annotations

import time
import structlog
from collections import deque
from typing import Any, Optional
from dataclasses import dataclass
from enum import Enum

logger = structlog.get_logger()


class TurnStage(str, Enum):
    """Stages of one turn, measured independently."""
    GENERATION_TTFB = "generation_ttfb"    # turn start → first token
    SYNTHESIS = "synthesis"                # one fragment's synthesis call
    FIRST_AUDIO = "first_audio"            # turn start → first fragment released
    TURN_TOTAL = "turn_total"              # turn start → pipeline finished


@dataclass
class LatencyBudget:
    """Per-stage budget. Exceeding it logs a warning, nothing more."""
    generation_ttfb_ms: int = 800
    synthesis_ms: int = 600
    first_audio_ms: int = 1500
    turn_total_ms: int = 8000

    def budget_for(self, stage: TurnStage) -> int:
        return {
            TurnStage.GENERATION_TTFB: self.generation_ttfb_ms,
            TurnStage.SYNTHESIS: self.synthesis_ms,
            TurnStage.FIRST_AUDIO: self.first_audio_ms,
            TurnStage.TURN_TOTAL: self.turn_total_ms,
        }[stage]


class StageTracker:
    """Rolling window of measurements for a single stage."""

    def __init__(self, stage: TurnStage, window_size: int = 200):
        self.stage = stage
        self._measurements: deque[float] = deque(maxlen=window_size)
        self._count: int = 0

    def record(self, duration_ms: float) -> None:
        self._measurements.append(duration_ms)
        self._count += 1

    @property
    def count(self) -> int:
        return self._count

    def percentile(self, pct: int) -> float:
        if not self._measurements:
            return 0.0
        sorted_vals = sorted(self._measurements)
        idx = min(int(len(sorted_vals) * pct / 100), len(sorted_vals) - 1)
        return sorted_vals[idx]

    def to_dict(self) -> dict[str, Any]:
        window = list(self._measurements)
        return {
            "stage": self.stage.value,
            "count": self._count,
            "avg_ms": round(sum(window) / len(window), 1) if window else 0.0,
            "p50_ms": round(self.percentile(50), 1),
            "p90_ms": round(self.percentile(90), 1),
            "p99_ms": round(self.percentile(99), 1),
        }


class AggregateLatencyTracker:
    """System-wide per-stage rolling percentiles."""

    def __init__(self, budget: LatencyBudget = None):
        self.budget = budget or LatencyBudget()
        self._stages: dict[TurnStage, StageTracker] = {
            stage: StageTracker(stage) for stage in TurnStage
        }

    def record(self, stage: TurnStage, duration_ms: float) -> None:
        self._stages[stage].record(duration_ms)

    def get_all_stats(self) -> dict[str, Any]:
        return {
            stage.value: tracker.to_dict()
            for stage, tracker in self._stages.items()
            if tracker.count > 0
        }


class TurnLatencyTracker:
    """
    Tracks latency for one session.

    Usage:
        tracker.begin_turn(epoch)
        tracker.mark(TurnStage.GENERATION_TTFB)   # first token arrived
        tracker.mark(TurnStage.FIRST_AUDIO)       # first fragment released
        tracker.mark(TurnStage.TURN_TOTAL)        # pipeline finished
    """

    def __init__(
        self,
        session_id: str,
        budget: LatencyBudget = None,
        aggregate: Optional[AggregateLatencyTracker] = None,
    ):
        self.session_id = session_id
        self.budget = budget or LatencyBudget()
        self.aggregate = aggregate
        self.turns = 0
        self.violations = 0
        self._turn_start: Optional[float] = None
        self._epoch = 0
        self._marked: set[TurnStage] = set()

    def begin_turn(self, epoch: int) -> None:
        self._turn_start = time.monotonic()
        self._epoch = epoch
        self._marked = set()
        self.turns += 1

    def mark(self, stage: TurnStage) -> float:
        """Record time since turn start for ``stage``, once per turn."""
        if self._turn_start is None or stage in self._marked:
            return 0.0
        self._marked.add(stage)
        duration_ms = (time.monotonic() - self._turn_start) * 1000
        self.record(stage, duration_ms)
        return duration_ms

    def record(self, stage: TurnStage, duration_ms: float) -> None:
        if self.aggregate is not None:
            self.aggregate.record(stage, duration_ms)
        budget = self.budget.budget_for(stage)
        if duration_ms > budget:
            self.violations += 1
            logger.warning(
                "latency_budget_exceeded", session_id=self.session_id, epoch=self._epoch,
                stage=stage.value, duration_ms=round(duration_ms, 1), budget_ms=budget,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turns": self.turns,
            "violations": self.violations,
        }
