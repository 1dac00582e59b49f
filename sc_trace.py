"""
Request-scoped tracing for one site analysis.

A TraceContext collects two kinds of record:

  - StageRecord: one per evaluator stage (each lookup chain, access
    detection, road attribution) with timing and any error
  - APICallRecord: one per source attempt made by a chain, tagged with
    the lookup it served and its outcome (ok / empty / declined /
    timeout / error)

summary_dict() folds them into one dict, including the order in which each
lookup's sources were tried, so a single log line shows which fallbacks
fired.

Lookups run in worker threads, which do not inherit thread-locals; the
evaluator hands the parent context to each worker and calls set_trace()
there.  All mutation goes through the context's lock.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class APICallRecord:
    service: str          # source label, e.g. "FDOT AADT"
    endpoint: str         # lookup type, e.g. "traffic_counts"
    elapsed_ms: int
    status_code: int      # 0 when no response was received
    outcome: str = ""
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    start_ts: float = 0.0
    end_ts: float = 0.0
    elapsed_ms: int = 0
    api_calls_made: int = 0
    skipped: bool = False
    error_class: str = ""
    error_message: str = ""

    @property
    def failed(self) -> bool:
        return bool(self.error_class) and not self.skipped

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage_name,
            "elapsed_ms": self.elapsed_ms,
            "api_calls": self.api_calls_made,
            "skipped": self.skipped,
            "error": f"{self.error_class}: {self.error_message}" if self.error_class else None,
        }


def _final_outcome(completed: int, skipped: int, errored: int) -> str:
    if errored and not completed:
        return "error"
    if not completed and not errored:
        return "empty"
    if skipped or errored:
        return "partial"
    return "success"


@dataclass
class TraceContext:
    """Timing and source attempts for a single site analysis."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    config_version: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    MAX_CALL_RECORDS = 200

    def record_stage(self, stage_name: str, start_ts: float, end_ts: float,
                     skipped: bool = False, error_class: str = "",
                     error_message: str = "") -> None:
        with self._lock:
            rec = StageRecord(
                stage_name=stage_name,
                start_ts=start_ts,
                end_ts=end_ts,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                api_calls_made=sum(1 for c in self.api_calls if c.stage == stage_name),
                skipped=skipped,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)

        if skipped:
            state = "SKIP"
        elif error_class:
            state = f"ERR {error_class}: {error_message}"
        else:
            state = "OK"
        logger.info(
            "  [stage] trace=%s %s %dms calls=%d %s",
            self.trace_id, stage_name, rec.elapsed_ms, rec.api_calls_made, state,
        )

    def record_api_call(self, service: str, endpoint: str, elapsed_ms: int,
                        status_code: int, outcome: str = "", stage: str = "") -> None:
        """Record one source attempt.  ``stage`` defaults to the lookup
        type, since lookups run concurrently and there is no single current
        stage."""
        rec = APICallRecord(service, endpoint, elapsed_ms, status_code, outcome,
                            stage or endpoint)
        with self._lock:
            self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s %s <- %s %dms http=%d %s",
            self.trace_id, rec.stage, service, elapsed_ms, status_code, outcome or "-",
        )

    def fallbacks(self) -> Dict[str, List[str]]:
        """Per lookup, the sources tried in order as "label:outcome"."""
        with self._lock:
            calls = list(self.api_calls)
        tried: Dict[str, List[str]] = {}
        for c in calls:
            tried.setdefault(c.endpoint, []).append(f"{c.service}:{c.outcome}")
        return tried

    def summary_dict(self) -> Dict[str, Any]:
        with self._lock:
            stages = list(self.stages)
            calls = list(self.api_calls)

        completed = sum(1 for s in stages if not s.skipped and not s.error_class)
        skipped = sum(1 for s in stages if s.skipped)
        errored = sum(1 for s in stages if s.failed)

        summary = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "total_api_calls": len(calls),
            "stages_completed": completed,
            "stages_skipped": skipped,
            "stages_errored": errored,
            "final_outcome": _final_outcome(completed, skipped, errored),
            "fallbacks": self.fallbacks(),
            "calls": [
                {
                    "service": c.service,
                    "endpoint": c.endpoint,
                    "stage": c.stage,
                    "elapsed_ms": c.elapsed_ms,
                    "status_code": c.status_code,
                    "outcome": c.outcome,
                }
                for c in calls[:self.MAX_CALL_RECORDS]
            ],
        }
        if self.config_version:
            summary["config_version"] = self.config_version
        return summary

    def log_summary(self) -> None:
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s outcome=%s total_ms=%d api_calls=%d "
            "stages=%d/%d/%d (ok/skip/err) fallbacks=%s",
            s["trace_id"], s["final_outcome"], s["total_elapsed_ms"],
            s["total_api_calls"], s["stages_completed"], s["stages_skipped"],
            s["stages_errored"], s["fallbacks"],
        )

    def stages_to_list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [s.as_dict() for s in self.stages]


# Thread-local current trace

_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    return getattr(_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]) -> None:
    _local.ctx = ctx


def clear_trace() -> None:
    _local.ctx = None
