#!/usr/bin/env python3
"""
Strategy executors: three interchangeable ways to answer the same query.

1. DirectPassthrough - ship the query text to the store unchanged (the oracle)
2. PushdownEngine    - push per-relation projections/filters to the store,
                       finish joins and aggregation in a local DuckDB
3. SemijoinReduction - collect join keys from selectively filtered
                       dimensions, then run the join with the fact side
                       pre-restricted to those keys

Rewriting strategies never fail because a query shape is unsupported: they
fall back to a safe plan and mark the result degraded with a reason.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from sqlglot import exp

from fusionlab.config import EngineConfig
from fusionlab.errors import ConfigurationError, ExecutionFailure, QueryTimeoutError, RewriteError
from fusionlab.models import ExecutionResult, ExecutionStrategy
from fusionlab.query import EXPLAIN_MODES, QueryShape, QuerySpec, analyze, is_portable, table_key
from fusionlab.store import ConnectionPool, StoreConnection, local_engine

logger = logging.getLogger(__name__)

SCAN_PREFIX = "__fl_scan_"


class Deadline:
    """Wall-clock budget shared by every round trip of one execution."""

    def __init__(self, timeout_s: Optional[float]):
        self.timeout_s = timeout_s
        self._expires = None if timeout_s is None else time.monotonic() + timeout_s

    def remaining(self) -> Optional[float]:
        if self._expires is None:
            return None
        left = self._expires - time.monotonic()
        if left <= 0:
            raise QueryTimeoutError(f"deadline of {self.timeout_s}s exceeded")
        return left


class Catalog:
    """Per-table column lists and row counts, fetched once and cached."""

    def __init__(self, dialect: str):
        self.dialect = dialect
        self._columns: Dict[str, List[str]] = {}
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def columns(self, table: exp.Table, conn: StoreConnection) -> List[str]:
        key = table_key(table)
        with self._lock:
            cached = self._columns.get(key)
        if cached is None:
            cols, _ = conn.query(f"SELECT * FROM {self._bare(table)} WHERE 1 = 0")
            cached = [c.lower() for c in cols]
            with self._lock:
                self._columns[key] = cached
        return cached

    def row_count(self, table: exp.Table, conn: StoreConnection) -> int:
        key = table_key(table)
        with self._lock:
            cached = self._counts.get(key)
        if cached is None:
            _, rows = conn.query(f"SELECT COUNT(*) FROM {self._bare(table)}")
            cached = int(rows[0][0]) if rows else 0
            with self._lock:
                self._counts[key] = cached
        return cached

    def _bare(self, table: exp.Table) -> str:
        bare = table.copy()
        bare.set("alias", None)
        return bare.sql(dialect=self.dialect)


class StrategyExecutor:
    strategy: ExecutionStrategy

    def __init__(self, pool: ConnectionPool, default_timeout_s: Optional[float] = None):
        self.pool = pool
        self.dialect = pool.config.dialect
        self.default_timeout_s = default_timeout_s

    def execute(self, spec: QuerySpec) -> ExecutionResult:
        """
        Run spec on one pooled connection held for the whole execution.

        Raises StoreConnectionError, QueryTimeoutError or ExecutionFailure;
        RewriteError never escapes a rewriting strategy.
        """
        timeout_s = spec.timeout_s if spec.timeout_s is not None else self.default_timeout_s
        deadline = Deadline(timeout_s)
        with self.pool.acquire(timeout=deadline.remaining()) as conn:
            t0 = time.perf_counter()
            result = self._execute(spec, conn, deadline)
            result.elapsed_ms = (time.perf_counter() - t0) * 1000
        return result

    def _execute(self, spec: QuerySpec, conn: StoreConnection, deadline: Deadline) -> ExecutionResult:
        raise NotImplementedError

    def _explain(self, engine, sql: str, spec: QuerySpec, deadline: Deadline) -> str:
        """The engine's plan for sql; an engine that cannot explain it yields a note, not a failure."""
        try:
            columns, rows = engine.query(f"{EXPLAIN_MODES[spec.explain]} {sql}", timeout_s=deadline.remaining())
        except ExecutionFailure as e:
            logger.warning("[%s] explain failed for %s: %s", self.strategy.value, spec.fingerprint_id[:12], e)
            return f"explain failed: {e}"
        return render_plan(columns, rows)

    def _native_names(self, spec: QuerySpec, conn: StoreConnection, deadline: Deadline,
                      columns: List[str]) -> List[str]:
        """Output names as the store labels them for the original statement."""
        if not spec.has_unnamed_outputs:
            return columns
        text = spec.text.strip().rstrip(";")
        try:
            names, _ = conn.query(f"SELECT * FROM ({text}) AS _fl_names LIMIT 0", timeout_s=deadline.remaining())
        except ExecutionFailure as e:
            logger.debug("[%s] keeping engine column names: %s", self.strategy.value, e)
            return columns
        return list(names) if len(names) == len(columns) else columns


def render_plan(columns: List[str], rows: List[tuple]) -> str:
    if columns and columns[-1].lower() == "explain_value":
        # duckdb: (explain_key, explain_value) with the rendered tree in the value
        return "\n".join(str(r[-1]) for r in rows)
    if len(columns) == 1:
        return "\n".join(str(r[0]) for r in rows)
    lines = [" | ".join(columns)]
    lines.extend(" | ".join("NULL" if v is None else str(v) for v in r) for r in rows)
    return "\n".join(lines)


class DirectPassthrough(StrategyExecutor):
    strategy = ExecutionStrategy.DIRECT

    def _execute(self, spec, conn, deadline):
        plan = self._explain(conn, spec.text, spec, deadline) if spec.explain else None
        columns, rows = conn.query(spec.text, timeout_s=deadline.remaining())
        return ExecutionResult(strategy=self.strategy, columns=columns, rows=rows, scanned_rows=len(rows),
                               plan=plan)


@dataclass
class Scan:
    name: str
    sql: str
    pushed: int = 0
    full: bool = False


def _scan_table(name: str, alias: str) -> exp.Table:
    return exp.Table(
        this=exp.to_identifier(name),
        alias=exp.TableAlias(this=exp.to_identifier(alias)),
    )


class PushdownEngine(StrategyExecutor):
    strategy = ExecutionStrategy.PUSHDOWN

    def __init__(self, pool, catalog: Catalog, default_timeout_s=None):
        super().__init__(pool, default_timeout_s)
        self.catalog = catalog

    def _execute(self, spec, conn, deadline):
        tree = spec.tree()
        reasons: List[str] = []
        try:
            shape = analyze(tree, lambda t: self.catalog.columns(t, conn))
            scans = self._plan_scans(shape, conn, reasons)
        except RewriteError as e:
            logger.info("[pushdown] full pull for %s: %s", spec.fingerprint_id[:12], e)
            tree = spec.tree()
            scans = self._full_scans(tree)
            reasons.append(f"unsupported_shape:{e}")
        local_sql = tree.sql(dialect="duckdb")

        local = local_engine()
        scanned = 0
        plan = None
        try:
            for scan in scans:
                types = conn.column_types(scan.sql)
                _, rows = conn.query(scan.sql, timeout_s=deadline.remaining())
                scanned += len(rows)
                local.load(scan.name, types, rows)
            if spec.explain:
                lines = [f"-- {scan.name}: {scan.sql}" for scan in scans]
                lines.append(self._explain(local, local_sql, spec, deadline))
                plan = "\n".join(lines)
            columns, rows = local.query(local_sql, timeout_s=deadline.remaining())
        finally:
            local.close()
        columns = self._native_names(spec, conn, deadline, columns)

        logger.debug("[pushdown] %d scans, %d rows pulled, %d predicates pushed",
                     len(scans), scanned, sum(s.pushed for s in scans))
        return ExecutionResult(
            strategy=self.strategy, columns=columns, rows=rows, scanned_rows=scanned,
            degraded=bool(reasons), degraded_reason="; ".join(reasons) or None, plan=plan,
        )

    def _plan_scans(self, shape: QueryShape, conn: StoreConnection, reasons: List[str]) -> List[Scan]:
        """One projected, filtered scan per relation; rewrites shape.tree to read the scans."""
        star = any(not isinstance(s.parent, exp.Count) for s in shape.tree.find_all(exp.Star))
        pushable: Dict[int, List[exp.Expression]] = {r.index: [] for r in shape.refs}
        blocked: Set[int] = set()
        for conjunct in shape.conjuncts:
            idx = conjunct.single_ref
            if idx is None or shape.refs[idx].null_supplying:
                continue
            if is_portable(conjunct.expr):
                pushable[idx].append(conjunct.expr)
            else:
                blocked.add(idx)

        scans = []
        for ref in shape.refs:
            name = f"{SCAN_PREFIX}{ref.index}"
            qualifier = ref.node.alias_or_name
            select = exp.select()
            preds: List[exp.Expression] = []
            if ref.index in blocked:
                select = select.select(exp.Star())
                reasons.append(f"predicate_not_pushable:{ref.alias}")
            else:
                if star:
                    cols = self.catalog.columns(ref.node, conn)
                else:
                    cols = sorted(shape.columns_by_ref[ref.index]) or self.catalog.columns(ref.node, conn)[:1]
                select = select.select(*[exp.column(c, table=qualifier) for c in cols])
                preds = [p.copy() for p in pushable[ref.index]]
            select = select.from_(ref.node.copy())
            if preds:
                select = select.where(*preds)
            scans.append(Scan(name=name, sql=select.sql(dialect=self.dialect),
                              pushed=len(preds), full=ref.index in blocked))
            ref.node.replace(_scan_table(name, qualifier))
        return scans

    def _full_scans(self, tree: exp.Expression) -> List[Scan]:
        """Pull every physical table whole; the local engine evaluates the original query."""
        cte_names = {cte.alias_or_name.lower() for cte in tree.find_all(exp.CTE)}
        tables = [t for t in tree.find_all(exp.Table) if t.name.lower() not in cte_names]
        scans = []
        for i, table in enumerate(tables):
            name = f"{SCAN_PREFIX}{i}"
            bare = table.copy()
            bare.set("alias", None)
            scans.append(Scan(name=name, sql=exp.select("*").from_(bare).sql(dialect=self.dialect), full=True))
            table.replace(_scan_table(name, table.alias_or_name))
        return scans


@dataclass
class Reduction:
    fact_column: exp.Column
    dimension_alias: str
    probe_sql: str


class SemijoinReduction(StrategyExecutor):
    strategy = ExecutionStrategy.SEMIJOIN

    def __init__(self, pool, catalog: Catalog, key_threshold: int = 100_000, default_timeout_s=None):
        super().__init__(pool, default_timeout_s)
        self.catalog = catalog
        self.key_threshold = key_threshold

    def _execute(self, spec, conn, deadline):
        scanned = 0
        reason = None
        lines: List[str] = []
        try:
            tree, reductions = self._plan(spec, conn)
            for reduction in reductions:
                lines.append(f"-- keys of {reduction.dimension_alias}: {reduction.probe_sql}")
                _, rows = conn.query(reduction.probe_sql, timeout_s=deadline.remaining())
                scanned += len(rows)
                keys = sorted({r[0] for r in rows if r[0] is not None})
                if len(keys) > self.key_threshold:
                    raise RewriteError(
                        f"key_set_exceeds_threshold:{reduction.dimension_alias}>{self.key_threshold}")
                if keys:
                    semi = exp.In(this=reduction.fact_column.copy(),
                                  expressions=[exp.convert(k) for k in keys])
                else:
                    semi = exp.false()
                tree = tree.where(semi, copy=False)
            sql = tree.sql(dialect=self.dialect)
        except RewriteError as e:
            logger.info("[semijoin] plain join for %s: %s", spec.fingerprint_id[:12], e)
            reason = str(e)
            sql = spec.text

        plan = None
        if spec.explain:
            lines.append(self._explain(conn, sql, spec, deadline))
            plan = "\n".join(lines)
        columns, rows = conn.query(sql, timeout_s=deadline.remaining())
        if reason is None:
            columns = self._native_names(spec, conn, deadline, columns)
        return ExecutionResult(
            strategy=self.strategy, columns=columns, rows=rows, scanned_rows=scanned + len(rows),
            degraded=reason is not None, degraded_reason=reason, plan=plan,
        )

    def _plan(self, spec: QuerySpec, conn: StoreConnection):
        tree = spec.tree()
        shape = analyze(tree, lambda t: self.catalog.columns(t, conn))
        if len(shape.refs) < 2:
            raise RewriteError("single_relation")
        if shape.has_outer_join:
            raise RewriteError("outer_join")

        counts = {r.index: self.catalog.row_count(r.node, conn) for r in shape.refs}
        fact = max(shape.refs, key=lambda r: (counts[r.index], -r.index))

        reductions: List[Reduction] = []
        for join in shape.equi_joins():
            if fact.index not in join.refs:
                continue
            left, right = join.expr.this, join.expr.expression
            if shape.owners(left) == [fact.index]:
                fact_col, dim_col = left, right
            else:
                fact_col, dim_col = right, left
            dim_owners = shape.owners(dim_col)
            if len(dim_owners) != 1 or dim_owners[0] == fact.index or shape.owners(fact_col) != [fact.index]:
                continue
            dim = shape.refs[dim_owners[0]]
            filters = [c.expr for c in shape.conjuncts if c.single_ref == dim.index]
            if not filters:
                continue
            key = exp.column(dim_col.name, table=dim.node.alias_or_name)
            probe = (
                exp.select(key)
                .distinct()
                .from_(dim.node.copy())
                .where(*[f.copy() for f in filters], exp.not_(exp.Is(this=key.copy(), expression=exp.Null())))
                .limit(self.key_threshold + 1)
            )
            reductions.append(Reduction(fact_column=fact_col, dimension_alias=dim.alias,
                                        probe_sql=probe.sql(dialect=self.dialect)))
        if not reductions:
            raise RewriteError("no_filtered_dimension")
        return tree, reductions


def ensure_complete(executors: Dict[ExecutionStrategy, StrategyExecutor]) -> Dict[ExecutionStrategy, StrategyExecutor]:
    missing = [s.value for s in ExecutionStrategy if s not in executors]
    if missing:
        raise ConfigurationError(f"No executor registered for: {', '.join(missing)}")
    return executors


def build_executors(pool: ConnectionPool, engine: Optional[EngineConfig] = None) -> Dict[ExecutionStrategy, StrategyExecutor]:
    engine = engine or EngineConfig()
    catalog = Catalog(pool.config.dialect)
    return ensure_complete({
        ExecutionStrategy.DIRECT: DirectPassthrough(pool, engine.default_timeout_s),
        ExecutionStrategy.PUSHDOWN: PushdownEngine(pool, catalog, engine.default_timeout_s),
        ExecutionStrategy.SEMIJOIN: SemijoinReduction(pool, catalog, engine.semijoin_key_threshold,
                                                      engine.default_timeout_s),
    })
