"""
Passive availability tracking for site data sources.

The source chain reports every attempt here with its outcome.  A source is
judged on whether it *answered*: "ok" (data) and "empty" (nothing at this
point) both count, because a county GIS with no parcel outside its county
is working as intended.  "declined", "timeout" and "error" count against it.

No active checks are sent; most parcel and count services have no status
endpoint, and the chain already routes around a failing source.  Health
is informational only and never changes which sources a chain tries.

Module-level singleton: all callers in this process share one monitor.
"""

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)

WINDOW_SIZE = 50
HEALTHY_RATE = 0.95
DEGRADED_RATE = 0.70

ANSWERED_OUTCOMES = ("ok", "empty")


@dataclass
class _Attempt:
    at: float
    outcome: str
    latency_ms: int
    note: Optional[str] = None

    @property
    def answered(self) -> bool:
        return self.outcome in ANSWERED_OUTCOMES


@dataclass
class SourceHealth:
    """Rolling-window view of one source label."""
    source: str
    status: str                      # "healthy" | "degraded" | "down" | "unknown"
    answered_rate: float = 0.0
    attempts: int = 0
    avg_latency_ms: int = 0
    last_seen: Optional[str] = None  # ISO-8601
    last_failure: Optional[str] = None
    outcomes: Dict[str, int] = field(default_factory=dict)


def classify(answered_rate: float, attempts: int) -> str:
    if attempts == 0:
        return "unknown"
    if answered_rate >= HEALTHY_RATE:
        return "healthy"
    if answered_rate >= DEGRADED_RATE:
        return "degraded"
    return "down"


class SourceHealthMonitor:
    """Thread-safe per-source attempt windows."""

    def __init__(self, window_size: int = WINDOW_SIZE) -> None:
        self._lock = threading.Lock()
        self._window_size = window_size
        self._attempts: Dict[str, Deque[_Attempt]] = {}
        self._last_status: Dict[str, str] = {}

    def record(self, source: str, outcome: str, latency_ms: int,
               note: Optional[str] = None) -> None:
        with self._lock:
            window = self._attempts.setdefault(source, deque(maxlen=self._window_size))
            window.append(_Attempt(time.time(), outcome, latency_ms, note))

        status = self.health(source).status
        with self._lock:
            previous = self._last_status.get(source)
            self._last_status[source] = status
        if previous and previous != status:
            logger.warning(
                "[health] %s: %s -> %s (last outcome %s%s)",
                source, previous, status, outcome, f": {note}" if note else "",
            )

    def health(self, source: str) -> SourceHealth:
        with self._lock:
            window = list(self._attempts.get(source, ()))
        if not window:
            return SourceHealth(source=source, status="unknown")

        answered = sum(1 for a in window if a.answered)
        rate = answered / len(window)
        failures = [a for a in window if not a.answered]
        last_failure = None
        if failures:
            last = failures[-1]
            last_failure = f"{last.outcome}: {last.note}" if last.note else last.outcome

        return SourceHealth(
            source=source,
            status=classify(rate, len(window)),
            answered_rate=round(rate, 3),
            attempts=len(window),
            avg_latency_ms=int(sum(a.latency_ms for a in window) / len(window)),
            last_seen=datetime.fromtimestamp(window[-1].at, tz=timezone.utc).isoformat(),
            last_failure=last_failure,
            outcomes=dict(Counter(a.outcome for a in window)),
        )

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            sources = sorted(self._attempts)
        return {s: asdict(self.health(s)) for s in sources}

    def reset(self) -> None:
        with self._lock:
            self._attempts.clear()
            self._last_status.clear()


_monitor = SourceHealthMonitor()


def record_call(source: str, outcome: str, latency_ms: int,
                note: Optional[str] = None) -> None:
    """Record one source attempt.  Callers wrap this in try/except."""
    _monitor.record(source, outcome, latency_ms, note)


def get_status() -> Dict[str, Dict[str, Any]]:
    """Health of every source seen so far in this process."""
    return _monitor.snapshot()


def reset() -> None:
    _monitor.reset()
