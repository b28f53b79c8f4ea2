#!/usr/bin/env python3
"""
Result comparison against the Direct oracle.

Equality rules:
1. Same number of columns with case-folded equal names (unless positional_headers)
2. Same multiset of rows; row order matters only for ordered queries
3. Numbers equal within abs/rel tolerance, ints exactly, NULL == NULL
4. Everything else by exact value equality
"""
import datetime
import decimal
import math
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from fusionlab.config import ComparatorConfig
from fusionlab.models import ExecutionResult


class Verdict(Enum):
    EQUAL = "equal"
    MISMATCH = "mismatch"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class MismatchDetail:
    note: str
    first_row: Optional[int] = None
    column: Optional[str] = None
    oracle_value: Any = None
    candidate_value: Any = None
    missing_rows: int = 0
    extra_rows: int = 0

    def describe(self) -> str:
        parts = [self.note]
        if self.first_row is not None:
            where = f"row {self.first_row}"
            if self.column is not None:
                where += f", column {self.column}"
            parts.append(f"{where}: expected {self.oracle_value!r}, got {self.candidate_value!r}")
        if self.missing_rows or self.extra_rows:
            parts.append(f"{self.missing_rows} missing / {self.extra_rows} extra rows")
        return "; ".join(parts)

    def to_dict(self):
        return {
            "note": self.note, "first_row": self.first_row, "column": self.column,
            "oracle_value": repr(self.oracle_value), "candidate_value": repr(self.candidate_value),
            "missing_rows": self.missing_rows, "extra_rows": self.extra_rows,
        }

    def __str__(self):
        return self.describe()


@dataclass
class Comparison:
    verdict: Verdict
    detail: Optional[MismatchDetail] = None

    @property
    def equal(self) -> bool:
        return self.verdict is Verdict.EQUAL


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, decimal.Decimal)) and not isinstance(value, bool)


def _sort_key(value: Any) -> tuple:
    """Total order over mixed cell types so unordered results sort deterministically."""
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if _is_number(value):
        f = float(value)
        if math.isnan(f):
            return (2, float("inf"), 1)
        return (2, f, 0)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, (datetime.date, datetime.time, datetime.timedelta)):
        return (4, str(value))
    if isinstance(value, (bytes, bytearray, memoryview)):
        return (5, bytes(value))
    return (6, repr(value))


def _row_key(row: tuple) -> tuple:
    return tuple(_sort_key(v) for v in row)


def _bucket(value: Any) -> Any:
    """Hashable stand-in used to count missing / extra rows."""
    if _is_number(value) and not isinstance(value, int):
        f = float(value)
        if math.isnan(f):
            return "nan"
        return float(f"{f:.9g}")
    return value


def values_equal(a: Any, b: Any, config: ComparatorConfig) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if _is_number(a) and _is_number(b):
        if isinstance(a, int) and isinstance(b, int):
            return a == b
        fa, fb = float(a), float(b)
        if math.isnan(fa) or math.isnan(fb):
            return math.isnan(fa) and math.isnan(fb)
        return math.isclose(fa, fb, rel_tol=config.rel_tol, abs_tol=config.abs_tol)
    return a == b


def compare(oracle: ExecutionResult, candidate: ExecutionResult, ordered: bool = False,
            config: Optional[ComparatorConfig] = None) -> Comparison:
    """Compare candidate against oracle; ordered=True when the query has a top-level ORDER BY."""
    config = config or ComparatorConfig()
    if not oracle.success:
        return Comparison(Verdict.SKIPPED, MismatchDetail(note=f"oracle failed: {oracle.error}"))
    if not candidate.success:
        return Comparison(Verdict.FAILED, MismatchDetail(note=f"candidate failed: {candidate.error}"))

    if len(oracle.columns) != len(candidate.columns):
        return Comparison(Verdict.MISMATCH, MismatchDetail(
            note=f"column count differs: {len(oracle.columns)} vs {len(candidate.columns)}"))
    if not config.positional_headers:
        for i, (a, b) in enumerate(zip(oracle.columns, candidate.columns)):
            if a.lower() != b.lower():
                return Comparison(Verdict.MISMATCH, MismatchDetail(
                    note=f"column {i} named {b!r}, expected {a!r}", column=a))

    left: List[tuple] = list(oracle.rows)
    right: List[tuple] = list(candidate.rows)
    if not ordered:
        left.sort(key=_row_key)
        right.sort(key=_row_key)

    first = _first_difference(left, right, oracle.columns, config)
    if first is None and len(left) == len(right):
        return Comparison(Verdict.EQUAL)

    expected = Counter(tuple(_bucket(v) for v in row) for row in left)
    actual = Counter(tuple(_bucket(v) for v in row) for row in right)
    missing = sum((expected - actual).values())
    extra = sum((actual - expected).values())
    if len(left) != len(right):
        note = f"row count differs: {len(left)} vs {len(right)}"
    elif ordered and not missing and not extra:
        note = "same rows in a different order"
    else:
        note = "row values differ"
    detail = MismatchDetail(note=note, missing_rows=missing, extra_rows=extra)
    if first is not None:
        detail.first_row, detail.column, detail.oracle_value, detail.candidate_value = first
    return Comparison(Verdict.MISMATCH, detail)


def _first_difference(left, right, columns, config):
    for i, (a, b) in enumerate(zip(left, right)):
        for j, (va, vb) in enumerate(zip(a, b)):
            if not values_equal(va, vb, config):
                return i, columns[j], va, vb
    if len(left) != len(right):
        i = min(len(left), len(right))
        return i, None, left[i] if i < len(left) else None, right[i] if i < len(right) else None
    return None
