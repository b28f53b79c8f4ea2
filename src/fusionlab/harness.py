#!/usr/bin/env python3
"""
Replay harness: run a corpus through every strategy and report.

For each case Direct and every non-quarantined alternate run concurrently,
each alternate is compared to Direct (Direct to the expected reference when
one is given), statistics learn from the outcomes, and the case lands in a
BenchmarkReport. A failing case is tagged for triage and the sweep goes on.

An optional journal (JSON lines, one finished case per line keyed by
case_id + fingerprint id) lets an interrupted sweep resume: journaled cases
are not re-executed and do not touch statistics again.
"""
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import orjson
import pandas as pd

from fusionlab.comparator import Verdict, compare
from fusionlab.config import ComparatorConfig
from fusionlab.errors import ConfigurationError
from fusionlab.executors import ensure_complete
from fusionlab.models import ALTERNATES, ExecutionResult, ExecutionStrategy
from fusionlab.query import QuerySpec
from fusionlab.recorder import CostRecorder
from fusionlab.stats import Observation, Outcome, StatisticsStore

logger = logging.getLogger(__name__)

DIRECT = ExecutionStrategy.DIRECT
ORACLE = "oracle"


@dataclass
class ReplayCase:
    case_id: str
    spec: QuerySpec
    expected: Optional[ExecutionResult] = None
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_sql(cls, case_id: str, text: str, dialect: str = "mysql", timeout_s: Optional[float] = None,
                 expected: Optional[Mapping[str, Any]] = None, tags: Iterable[str] = (),
                 explain: Optional[str] = None) -> "ReplayCase":
        reference = None
        if expected is not None:
            reference = ExecutionResult(
                strategy=DIRECT,
                columns=list(expected.get("columns", [])),
                rows=[tuple(r) for r in expected.get("rows", [])],
            )
        spec = QuerySpec(text=text, dialect=dialect, timeout_s=timeout_s, explain=explain)
        return cls(case_id=case_id, spec=spec, expected=reference, tags=list(tags))


@dataclass
class StrategyOutcome:
    strategy: str
    verdict: str
    elapsed_ms: Optional[float] = None
    rows: int = 0
    degraded: bool = False
    degraded_reason: Optional[str] = None
    failure: Optional[str] = None
    detail: Optional[str] = None
    plan: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "StrategyOutcome":
        return cls(**raw)


@dataclass
class CaseReport:
    case_id: str
    fingerprint_id: str
    tags: List[str] = field(default_factory=list)
    outcomes: Dict[str, StrategyOutcome] = field(default_factory=dict)
    triage: List[str] = field(default_factory=list)
    error: Optional[str] = None
    resumed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "fingerprint_id": self.fingerprint_id,
            "tags": list(self.tags),
            "outcomes": {k: v.to_dict() for k, v in self.outcomes.items()},
            "triage": list(self.triage),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CaseReport":
        return cls(
            case_id=raw["case_id"],
            fingerprint_id=raw["fingerprint_id"],
            tags=list(raw.get("tags", [])),
            outcomes={k: StrategyOutcome.from_dict(v) for k, v in raw.get("outcomes", {}).items()},
            triage=list(raw.get("triage", [])),
            error=raw.get("error"),
        )


@dataclass
class MismatchEntry:
    case_id: str
    fingerprint_id: str
    strategy: str
    detail: Optional[str]


@dataclass
class BenchmarkReport:
    cases: List[CaseReport] = field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def mismatches(self) -> List[MismatchEntry]:
        return [
            MismatchEntry(c.case_id, c.fingerprint_id, o.strategy, o.detail)
            for c in self.cases for o in c.outcomes.values()
            if o.verdict == Verdict.MISMATCH.value
        ]

    @property
    def triage(self) -> Dict[str, List[str]]:
        return {c.case_id: list(c.triage) for c in self.cases if c.triage}

    @property
    def totals(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for case in self.cases:
            for o in case.outcomes.values():
                t = out.setdefault(o.strategy, {"cases": 0, "degraded": 0, "total_ms": 0.0, "timed": 0})
                t["cases"] += 1
                t[o.verdict] = t.get(o.verdict, 0) + 1
                if o.degraded:
                    t["degraded"] += 1
                if o.elapsed_ms is not None and o.failure is None:
                    t["total_ms"] += o.elapsed_ms
                    t["timed"] += 1
        for t in out.values():
            timed = t.pop("timed")
            t["mean_ms"] = t.pop("total_ms") / timed if timed else None
        return out

    def verdicts(self) -> Dict[str, Dict[str, str]]:
        return {c.case_id: {s: o.verdict for s, o in sorted(c.outcomes.items())} for c in self.cases}

    def verdict_digest(self) -> str:
        """Stable over reruns: depends on verdicts only, never on timings."""
        return hashlib.sha256(orjson.dumps(self.verdicts(), option=orjson.OPT_SORT_KEYS)).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "cases": [c.to_dict() for c in self.cases],
            "totals": self.totals,
            "mismatches": [m.__dict__ for m in self.mismatches],
            "verdict_digest": self.verdict_digest(),
        }

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict(), option=orjson.OPT_INDENT_2)

    def write(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.to_json())
        return path

    def case_frame(self) -> pd.DataFrame:
        rows = [
            {"case_id": c.case_id, "strategy": o.strategy, "verdict": o.verdict,
             "elapsed_ms": o.elapsed_ms, "rows": o.rows, "degraded": o.degraded}
            for c in self.cases for o in c.outcomes.values()
        ]
        return pd.DataFrame(rows, columns=["case_id", "strategy", "verdict", "elapsed_ms", "rows", "degraded"])

    def summary_frame(self) -> pd.DataFrame:
        """Per-strategy aggregates: runs, mean/p95 latency, mismatches, failures, degraded."""
        df = self.case_frame()
        if df.empty:
            return pd.DataFrame(columns=["strategy", "runs", "mean_ms", "p95_ms", "mismatches", "failures", "degraded"])
        df["mismatch"] = df["verdict"] == Verdict.MISMATCH.value
        df["failed"] = df["verdict"] == Verdict.FAILED.value
        summary = df.groupby("strategy").agg(
            runs=("case_id", "count"),
            mean_ms=("elapsed_ms", "mean"),
            p95_ms=("elapsed_ms", lambda s: s.quantile(0.95)),
            mismatches=("mismatch", "sum"),
            failures=("failed", "sum"),
            degraded=("degraded", "sum"),
        )
        return summary.reset_index()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ReplayHarness:
    def __init__(self, executors: Mapping[ExecutionStrategy, Any],
                 comparator_config: Optional[ComparatorConfig] = None,
                 recorder: Optional[CostRecorder] = None,
                 journal_path: Optional[Path] = None, max_workers: int = 4):
        self.executors = ensure_complete(dict(executors))
        self.comparator_config = comparator_config or ComparatorConfig()
        self.recorder = recorder or CostRecorder()
        self.journal_path = Path(journal_path) if journal_path is not None else None
        self.max_workers = max_workers

    def run(self, cases: Iterable[ReplayCase], stats: StatisticsStore) -> BenchmarkReport:
        report = BenchmarkReport(started_at=_now())
        finished = self._read_journal()
        if finished:
            logger.info("[harness] resuming: %d cases already journaled", len(finished))

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fusionlab-replay") as workers:
            for case in cases:
                key = f"{case.case_id}:{case.spec.fingerprint_id}"
                if key in finished:
                    done = CaseReport.from_dict(finished[key])
                    done.resumed = True
                    report.cases.append(done)
                    continue
                try:
                    case_report = self._run_case(case, stats, workers)
                except Exception as e:
                    logger.exception("[harness] case %s aborted", case.case_id)
                    report.cases.append(CaseReport(
                        case_id=case.case_id, fingerprint_id=case.spec.fingerprint_id, tags=list(case.tags),
                        triage=[f"error:{type(e).__name__}"], error=str(e),
                    ))
                    continue
                self._journal(key, case_report)
                report.cases.append(case_report)
                status = "ok" if not case_report.triage else ", ".join(case_report.triage)
                logger.info("[harness] %s: %s", case.case_id, status)

        report.finished_at = _now()
        logger.info("[harness] %d cases, %d mismatches", len(report.cases), len(report.mismatches))
        return report

    def _run_case(self, case: ReplayCase, stats: StatisticsStore, workers: ThreadPoolExecutor) -> CaseReport:
        spec = case.spec
        state = stats.get(spec.fingerprint)
        ordered = spec.has_explicit_order
        strategies = [DIRECT] + [a for a in ALTERNATES if not state.is_quarantined(a)]
        futures = {s: workers.submit(self.recorder.run, self.executors[s], spec, "replay") for s in strategies}
        runs = {s: futures[s].result() for s in strategies}

        report = CaseReport(case_id=case.case_id, fingerprint_id=spec.fingerprint_id, tags=list(case.tags))
        oracle = runs[DIRECT][0]
        observations = []
        for s in strategies:
            result, record = runs[s]
            outcome = Outcome.SUCCESS
            detail = None
            if not result.success:
                verdict = Verdict.FAILED.value
                outcome = Outcome.TIMEOUT if record.failure == "timeout" else Outcome.FAILURE
                detail = result.error
                report.triage.append(f"failed:{s.value}:{record.failure}")
            elif s is DIRECT:
                verdict = ORACLE
                if case.expected is not None:
                    comparison = compare(case.expected, result, ordered, self.comparator_config)
                    verdict = comparison.verdict.value
                    if not comparison.equal:
                        detail = str(comparison.detail)
                        report.triage.append("mismatch:direct")
            else:
                comparison = compare(oracle, result, ordered, self.comparator_config)
                verdict = comparison.verdict.value
                if comparison.verdict is Verdict.MISMATCH:
                    outcome = Outcome.MISMATCH
                    detail = str(comparison.detail)
                    report.triage.append(f"mismatch:{s.value}")
                elif comparison.verdict is Verdict.SKIPPED:
                    # nothing to check against: not a sample
                    outcome = Outcome.UNVERIFIED
            report.outcomes[s.value] = StrategyOutcome(
                strategy=s.value, verdict=verdict,
                elapsed_ms=round(result.elapsed_ms, 3),
                rows=result.row_count, degraded=result.degraded, degraded_reason=result.degraded_reason,
                failure=record.failure, detail=detail, plan=result.plan,
            )
            observations.append(Observation(
                strategy=s, outcome=outcome,
                latency_ms=result.elapsed_ms if result.success else None,
                timestamp=record.finished_at, primary=False,
            ))
        for a in ALTERNATES:
            if a not in runs:
                # quarantined by an earlier mismatch on this fingerprint
                report.outcomes[a.value] = StrategyOutcome(strategy=a.value, verdict=Verdict.MISMATCH.value,
                                                           detail="quarantined")
                report.triage.append(f"mismatch:{a.value}")
        stats.apply(spec.fingerprint, observations)
        return report

    def _read_journal(self) -> Dict[str, Dict[str, Any]]:
        if self.journal_path is None or not self.journal_path.exists():
            return {}
        finished = {}
        with open(self.journal_path, "rb") as f:
            for n, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    entry = orjson.loads(line)
                except orjson.JSONDecodeError:
                    # torn final line from an interrupted sweep
                    logger.warning("[harness] ignoring unreadable journal line %d", n)
                    continue
                finished[entry["key"]] = entry["case"]
        return finished

    def _journal(self, key: str, case_report: CaseReport) -> None:
        if self.journal_path is None:
            return
        self.journal_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.journal_path, "ab") as f:
            if f.tell() and not self._ends_with_newline():
                f.write(b"\n")
            f.write(orjson.dumps({"key": key, "case": case_report.to_dict()}) + b"\n")

    def _ends_with_newline(self) -> bool:
        with open(self.journal_path, "rb") as f:
            f.seek(-1, 2)
            return f.read(1) == b"\n"


def load_corpus(directory: Path, dialect: str = "mysql", explain: Optional[str] = None) -> List[ReplayCase]:
    """
    Read *.sql files (sorted by name) into replay cases. An optional sidecar
    <name>.json may carry "tags", "timeout_s", "explain" and "expected"
    {"columns", "rows"}. explain, when given, overrides every sidecar's.
    """
    directory = Path(directory)
    cases = []
    for path in sorted(directory.glob("*.sql")):
        sidecar = path.with_suffix(".json")
        meta = _read_sidecar(sidecar) if sidecar.exists() else {}
        cases.append(ReplayCase.from_sql(
            case_id=path.stem,
            text=path.read_text(),
            dialect=dialect,
            timeout_s=meta.get("timeout_s"),
            expected=meta.get("expected"),
            tags=meta.get("tags", []),
            explain=explain or meta.get("explain"),
        ))
    logger.info("[harness] loaded %d cases from %s", len(cases), directory)
    return cases


def _read_sidecar(path: Path) -> Dict[str, Any]:
    try:
        meta = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ConfigurationError(f"Malformed sidecar {path}: {e}") from e
    if not isinstance(meta, dict):
        raise ConfigurationError(f"Sidecar {path} must hold a JSON object, got {type(meta).__name__}")
    return meta
