"""
Dispatch observability — structured events and counters for every dispatch.

The router and processors receive a DispatchObserver instead of logging
ad hoc. The default StructlogObserver emits one structured event per outcome
and keeps in-process counters that the API exposes on /api/v1/queue/stats.
"""
from __future__ import annotations

import abc
import structlog
from collections import defaultdict, deque
from typing import Any

logger = structlog.get_logger()


class Outcome:
    PROCESSED = "processed"
    FAILED = "failed"
    UNHANDLED = "unhandled"


class DispatchMetrics:
    """Per-tag outcome counters and latency tracking.

    Average latency covers the most recent ``latency_window`` samples per tag;
    only the last ``error_window`` error strings are kept.
    """

    def __init__(self, latency_window: int = 1000, error_window: int = 10):
        self._counts: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._latencies: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=latency_window))
        self._errors: deque[str] = deque(maxlen=error_window)

    def record(self, message_type: str, outcome: str, latency_ms: float = 0.0, error: str = ""):
        self._counts[message_type][outcome] += 1
        if latency_ms > 0:
            self._latencies[message_type].append(latency_ms)
        if error:
            self._errors.append(f"{message_type}: {error}")

    def count(self, message_type: str, outcome: str) -> int:
        return self._counts.get(message_type, {}).get(outcome, 0)

    def total(self, outcome: str) -> int:
        return sum(c.get(outcome, 0) for c in self._counts.values())

    def avg_latency_ms(self, message_type: str) -> float:
        values = self._latencies.get(message_type, [])
        return sum(values) / len(values) if values else 0.0

    def reset(self):
        self._counts.clear()
        self._latencies.clear()
        self._errors.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "by_type": {
                t: {
                    **dict(counts),
                    "avg_latency_ms": round(self.avg_latency_ms(t), 1),
                }
                for t, counts in self._counts.items()
            },
            "processed": self.total(Outcome.PROCESSED),
            "failed": self.total(Outcome.FAILED),
            "unhandled": self.total(Outcome.UNHANDLED),
            "recent_errors": list(self._errors),
        }


class DispatchObserver(abc.ABC):
    """Receives one call per dispatch outcome."""

    @abc.abstractmethod
    def record(self, message_type: str, outcome: str, latency_ms: float = 0.0, **fields: Any) -> None:
        ...

    def event(self, name: str, **fields: Any) -> None:
        """Free-form structured event (processor intents, batch summaries)."""
        logger.info(name, **fields)


class StructlogObserver(DispatchObserver):
    """Default observer: structlog events plus DispatchMetrics counters."""

    def __init__(self, metrics: DispatchMetrics = None):
        self.metrics = metrics or DispatchMetrics()
        self._log = structlog.get_logger("dispatch")

    def record(self, message_type: str, outcome: str, latency_ms: float = 0.0, **fields: Any) -> None:
        self.metrics.record(message_type, outcome, latency_ms, error=fields.get("error", ""))
        event = f"message_{outcome}"
        fields = {"message_type": message_type, "latency_ms": round(latency_ms, 1), **fields}
        if outcome == Outcome.FAILED:
            self._log.error(event, **fields)
        elif outcome == Outcome.UNHANDLED:
            self._log.warning(event, **fields)
        else:
            self._log.info(event, **fields)

    def event(self, name: str, **fields: Any) -> None:
        self._log.info(name, **fields)
