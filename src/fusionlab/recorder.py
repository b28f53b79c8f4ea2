#!/usr/bin/env python3
"""
Cost recorder: wraps every strategy execution with timing, row counts and
process memory, and turns classified errors into failed ExecutionResults.

Every execution produces exactly one ExecutionRecord, success or not. The
history is per-recorder (one per engine / harness) and exportable as JSON.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import orjson
import psutil

from fusionlab.errors import ExecutionFailure, QueryTimeoutError, RewriteError, StoreConnectionError
from fusionlab.models import ExecutionResult, ExecutionStrategy, FailureKind

logger = logging.getLogger(__name__)

_FAILURE_KINDS = (
    (StoreConnectionError, FailureKind.CONNECTION),
    (QueryTimeoutError, FailureKind.TIMEOUT),
    (RewriteError, FailureKind.REWRITE_ABANDONED),
    (ExecutionFailure, FailureKind.EXECUTION),
)


def classify(error: BaseException) -> Optional[FailureKind]:
    for cls, kind in _FAILURE_KINDS:
        if isinstance(error, cls):
            return kind
    return None


@dataclass
class ExecutionRecord:
    strategy: str
    fingerprint_id: str
    role: str
    started_at: str
    finished_at: str
    elapsed_ms: float
    rows: int
    success: bool
    degraded: bool = False
    degraded_reason: Optional[str] = None
    failure: Optional[str] = None
    error: Optional[str] = None
    scanned_rows: Optional[int] = None
    memory_mb: float = 0.0
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "fingerprint_id": self.fingerprint_id,
            "role": self.role,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "rows": self.rows,
            "success": self.success,
            "degraded": self.degraded,
            "degraded_reason": self.degraded_reason,
            "failure": self.failure,
            "error": self.error,
            "scanned_rows": self.scanned_rows,
            "memory_mb": round(self.memory_mb, 1),
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CostRecorder:
    def __init__(self, max_history: Optional[int] = None):
        self.max_history = max_history
        self._history: List[ExecutionRecord] = []
        self._lock = threading.Lock()
        self._process = psutil.Process()

    def run(self, executor: Any, spec: Any, role: str = "primary") -> Tuple[ExecutionResult, ExecutionRecord]:
        """
        Execute spec with executor and record the outcome.

        Store/timeout/execution failures are returned as a failed result with
        the exception attached to the record; anything else propagates.
        """
        strategy: ExecutionStrategy = executor.strategy
        started = _now()
        t0 = time.perf_counter()
        error: Optional[BaseException] = None
        try:
            result = executor.execute(spec)
        except (StoreConnectionError, QueryTimeoutError, ExecutionFailure, RewriteError) as e:
            error = e
            result = ExecutionResult.failed(strategy, classify(e), str(e),
                                            elapsed_ms=(time.perf_counter() - t0) * 1000)
        return result, self._record(strategy, spec, role, started, result, error)

    def failed(self, strategy: ExecutionStrategy, spec: Any, role: str,
               error: BaseException) -> Tuple[ExecutionResult, ExecutionRecord]:
        """Record a run that died with an unclassified error as an execution failure."""
        result = ExecutionResult.failed(strategy, FailureKind.EXECUTION, f"{type(error).__name__}: {error}")
        return result, self._record(strategy, spec, role, _now(), result, error)

    def _record(self, strategy: ExecutionStrategy, spec: Any, role: str, started: str,
                result: ExecutionResult, error: Optional[BaseException]) -> ExecutionRecord:
        record = ExecutionRecord(
            strategy=strategy.value,
            fingerprint_id=spec.fingerprint_id,
            role=role,
            started_at=started,
            finished_at=_now(),
            elapsed_ms=result.elapsed_ms,
            rows=result.row_count,
            success=result.success,
            degraded=result.degraded,
            degraded_reason=result.degraded_reason,
            failure=result.failure.value if result.failure else None,
            error=result.error,
            scanned_rows=result.scanned_rows,
            memory_mb=self._memory_mb(),
            exception=error,
        )
        if error is not None:
            logger.warning("[recorder] %s %s failed (%s): %s", role, strategy.value, record.failure, error)
        else:
            logger.debug("[recorder] %s %s %.1fms, %d rows", role, strategy.value, record.elapsed_ms, record.rows)
        with self._lock:
            self._history.append(record)
            if self.max_history is not None and len(self._history) > self.max_history:
                del self._history[: len(self._history) - self.max_history]
        return record

    def history(self, fingerprint_id: Optional[str] = None) -> List[ExecutionRecord]:
        with self._lock:
            records = list(self._history)
        if fingerprint_id is not None:
            records = [r for r in records if r.fingerprint_id == fingerprint_id]
        return records

    def summary(self) -> Dict[str, Dict[str, Any]]:
        """Per-strategy run / failure counts and mean latency of successful runs."""
        out: Dict[str, Dict[str, Any]] = {}
        for record in self.history():
            s = out.setdefault(record.strategy, {"runs": 0, "failures": 0, "degraded": 0, "total_ms": 0.0})
            s["runs"] += 1
            if record.success:
                s["total_ms"] += record.elapsed_ms
            else:
                s["failures"] += 1
            if record.degraded:
                s["degraded"] += 1
        for s in out.values():
            ok = s["runs"] - s["failures"]
            s["mean_ms"] = s.pop("total_ms") / ok if ok else None
        return out

    def export(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"records": [r.to_dict() for r in self.history()], "summary": self.summary()}
        path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        return path

    def _memory_mb(self) -> float:
        try:
            return self._process.memory_info().rss / (1024 * 1024)
        except psutil.Error:
            return 0.0
