"""Per-turn timing and counter telemetry.

PhaseMetrics     — snapshot of one handled turn's counters + duration.
MetricsCollector — async context manager; call .result / .to_dict() after exit.

Usage::

    async with MetricsCollector("deploying") as m:
        result = await coordinator.deploy(slot, definition)
        m.submissions = len(result.attempts)
    turn_metrics = m.to_dict()   # JSON-serialisable, returned in TurnResult.metrics
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any


# ---------------------------------------------------------------------------
# PhaseMetrics dataclass
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class PhaseMetrics:
    """Timing and counter snapshot for one turn.

    Fields
    ------
    phase:        Phase the session was in when the turn started.
    start_ts:     Unix timestamp at turn start (time.time()).
    end_ts:       Unix timestamp at turn end.
    duration_ms:  (end_ts - start_ts) * 1000.
    tokens_used:  Text-completion tokens consumed (0 for keyword extraction).
    submissions:  Engine submissions made during the turn.
    heal_events:  Submissions that were followed by a heal.
    """

    phase: str
    start_ts: float
    end_ts: float
    duration_ms: float
    tokens_used: int = 0
    submissions: int = 0
    heal_events: int = 0


# ---------------------------------------------------------------------------
# MetricsCollector async context manager
# ---------------------------------------------------------------------------


class MetricsCollector:
    """Async context manager that records per-turn timing and counters.

    The collector does not write anywhere by itself; the orchestrator copies
    ``m.to_dict()`` into the TurnResult it returns.
    """

    def __init__(self, phase: str) -> None:
        self.phase = phase
        self.tokens_used: int = 0
        self.submissions: int = 0
        self.heal_events: int = 0
        self._start_ts: float = 0.0
        self._result: PhaseMetrics | None = None

    async def __aenter__(self) -> MetricsCollector:
        self._start_ts = time.time()
        return self

    async def __aexit__(self, *_args: object) -> None:
        end_ts = time.time()
        self._result = PhaseMetrics(
            phase=self.phase,
            start_ts=self._start_ts,
            end_ts=end_ts,
            duration_ms=(end_ts - self._start_ts) * 1000,
            tokens_used=self.tokens_used,
            submissions=self.submissions,
            heal_events=self.heal_events,
        )

    @property
    def result(self) -> PhaseMetrics | None:
        """Finalized PhaseMetrics after the context manager exits, else None."""
        return self._result

    def to_dict(self) -> dict[str, Any]:
        """Finalized PhaseMetrics as a dict; empty before the context manager exits."""
        return dataclasses.asdict(self._result) if self._result is not None else {}
