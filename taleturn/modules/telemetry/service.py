from __future__ import annotations

import logging
from collections import Counter, deque
from statistics import mean
from threading import Lock

logger = logging.getLogger(__name__)

EVENT_TURN_CREATED = "turn.created"
EVENT_TURN_FAILED = "turn.failed"
EVENT_TURN_REPLAYED = "turn.replayed"
EVENT_TURN_COMMIT_FAILED = "turn.commit_failed"
EVENT_CONTEXT_ASSEMBLED = "context.assembled"

_MAX_SAMPLES = 1000


def _p95(samples: list[float]) -> float:
    if not samples:
        return 0.0
    ordered = sorted(samples)
    idx = max(0, min(len(ordered) - 1, round(0.95 * (len(ordered) - 1))))
    return float(ordered[idx])


class TurnTelemetry:
    """In-process observability sink for the turn pipeline."""

    def __init__(self, *, recent_limit: int = 200) -> None:
        self._lock = Lock()
        self._recent_limit = max(1, int(recent_limit))
        self._reset_unlocked()

    def _reset_unlocked(self) -> None:
        self.event_counts: Counter[str] = Counter()
        self.error_counts: Counter[str] = Counter()
        self._phase_ms: dict[str, list[float]] = {}
        self._turn_latencies_ms: list[float] = []
        self._budget_ratios: list[float] = []
        self.recent_events: deque[dict] = deque(maxlen=self._recent_limit)

    def reset(self) -> None:
        with self._lock:
            self._reset_unlocked()

    def emit(self, event: str, **fields) -> None:
        record = {"event": event, **fields}
        with self._lock:
            self.event_counts[event] += 1
            if event == EVENT_TURN_FAILED and fields.get("error_code"):
                self.error_counts[str(fields["error_code"])] += 1
            if event == EVENT_TURN_CREATED and fields.get("latency_ms") is not None:
                self._turn_latencies_ms.append(float(fields["latency_ms"]))
                self._turn_latencies_ms = self._turn_latencies_ms[-_MAX_SAMPLES:]
            if event == EVENT_CONTEXT_ASSEMBLED and fields.get("budget_ratio") is not None:
                self._budget_ratios.append(float(fields["budget_ratio"]))
                self._budget_ratios = self._budget_ratios[-_MAX_SAMPLES:]
            self.recent_events.append(record)
        logger.debug("telemetry %s %s", event, fields)

    def record_phase(self, phase: str, elapsed_ms: float) -> None:
        with self._lock:
            samples = self._phase_ms.setdefault(phase, [])
            samples.append(float(elapsed_ms))
            if len(samples) > _MAX_SAMPLES:
                del samples[: len(samples) - _MAX_SAMPLES]

    def events(self, event: str | None = None) -> list[dict]:
        with self._lock:
            return [dict(item) for item in self.recent_events if event is None or item["event"] == event]

    def summary(self) -> dict:
        with self._lock:
            created = int(self.event_counts[EVENT_TURN_CREATED])
            failed = int(self.event_counts[EVENT_TURN_FAILED])
            latencies = list(self._turn_latencies_ms)
            ratios = list(self._budget_ratios)
            phases = {
                phase: {
                    "count": len(samples),
                    "avg_ms": round(float(mean(samples)), 3) if samples else 0.0,
                    "p95_ms": round(_p95(samples), 3),
                }
                for phase, samples in sorted(self._phase_ms.items())
            }
            return {
                "turns_created": created,
                "turns_failed": failed,
                "turns_replayed": int(self.event_counts[EVENT_TURN_REPLAYED]),
                "commit_failures": int(self.event_counts[EVENT_TURN_COMMIT_FAILED]),
                "errors_by_code": dict(self.error_counts),
                "avg_turn_latency_ms": round(float(mean(latencies)), 3) if latencies else 0.0,
                "p95_turn_latency_ms": round(_p95(latencies), 3),
                "avg_context_budget_ratio": round(float(mean(ratios)), 4) if ratios else 0.0,
                "phases": phases,
            }
