#!/usr/bin/env python3
"""
Shared result types: the closed strategy variant, failure classes and the
row-returning ExecutionResult every executor produces.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ExecutionStrategy(Enum):
    DIRECT = "direct"
    PUSHDOWN = "pushdown"
    SEMIJOIN = "semijoin"


ALTERNATES = (ExecutionStrategy.PUSHDOWN, ExecutionStrategy.SEMIJOIN)


class FailureKind(Enum):
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    REWRITE_ABANDONED = "rewrite_abandoned"
    EXECUTION = "execution"


def parse_strategy(value: Any) -> ExecutionStrategy:
    """Accept an ExecutionStrategy or its string value (case-insensitive)."""
    if isinstance(value, ExecutionStrategy):
        return value
    try:
        return ExecutionStrategy(str(value).strip().lower())
    except ValueError:
        names = ", ".join(s.value for s in ExecutionStrategy)
        raise ValueError(f"unknown strategy {value!r} (expected one of: {names})") from None


@dataclass
class ExecutionResult:
    strategy: ExecutionStrategy
    columns: List[str] = field(default_factory=list)
    rows: List[tuple] = field(default_factory=list)
    elapsed_ms: float = 0.0
    success: bool = True
    degraded: bool = False
    degraded_reason: Optional[str] = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None
    scanned_rows: Optional[int] = None
    plan: Optional[str] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def records(self) -> List[Dict[str, Any]]:
        """Rows as column -> value mappings."""
        return [dict(zip(self.columns, row)) for row in self.rows]

    @classmethod
    def failed(cls, strategy: ExecutionStrategy, kind: FailureKind, error: str,
               elapsed_ms: float = 0.0) -> "ExecutionResult":
        return cls(strategy=strategy, elapsed_ms=elapsed_ms, success=False, failure=kind, error=error)

    def with_rows(self, columns: List[str], rows: List[tuple]) -> "ExecutionResult":
        return ExecutionResult(
            strategy=self.strategy, columns=list(columns), rows=list(rows),
            elapsed_ms=self.elapsed_ms, success=self.success, degraded=self.degraded,
            degraded_reason=self.degraded_reason, failure=self.failure, error=self.error,
            scanned_rows=self.scanned_rows, plan=self.plan,
        )
