#!/usr/bin/env python3
"""
Query model: QuerySpec, fingerprinting and single-block shape analysis.

Fingerprint = the parsed query re-rendered with every literal replaced by a
placeholder, keywords/identifiers normalised and whitespace collapsed. Two
queries that only differ in literal values share a fingerprint, which is the
key the router learns under.

Shape analysis (analyze) decomposes a single SELECT block into:
1. Relation references (tables with alias, join side, null-supplying flag)
2. Top-level conjuncts of WHERE and inner-join ON clauses
3. Column -> relation resolution against a store catalog
Anything else (CTEs, derived tables, set operations, nested selects) raises
RewriteError so the rewriting strategies can fall back safely.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from fusionlab.errors import ConfigurationError, RewriteError
from fusionlab.models import ExecutionStrategy, parse_strategy

_QUERY_TYPES = (exp.Select, exp.Union, exp.Intersect, exp.Except)

# analyze executes the statement a second time
EXPLAIN_MODES = {"plan": "EXPLAIN", "analyze": "EXPLAIN ANALYZE"}

# Constructs every SQL backend evaluates identically; predicates built only
# from these may be shipped to the remote scan.
PORTABLE_NODES = (
    exp.Column, exp.Identifier, exp.Literal, exp.Null, exp.Boolean, exp.Paren,
    exp.And, exp.Or, exp.Not, exp.EQ, exp.NEQ, exp.GT, exp.GTE, exp.LT, exp.LTE,
    exp.Between, exp.In, exp.Is, exp.Like, exp.Add, exp.Sub, exp.Mul, exp.Div,
    exp.Neg, exp.Cast, exp.DataType, exp.DataTypeParam, exp.Tuple,
)


def _parse(text: str, dialect: str) -> exp.Expression:
    try:
        statements = [s for s in sqlglot.parse(text, read=dialect) if s is not None]
    except SqlglotError as e:
        raise ConfigurationError(f"Malformed query: {e}") from e
    if len(statements) != 1:
        raise ConfigurationError(f"Expected exactly one statement, got {len(statements)}")
    tree = statements[0]
    if not isinstance(tree, _QUERY_TYPES):
        raise ConfigurationError(f"Only row-returning queries are supported, got {tree.key.upper()}")
    return tree


def fingerprint(tree: exp.Expression, dialect: str) -> str:
    def _abstract(node: exp.Expression) -> exp.Expression:
        if isinstance(node, exp.Literal):
            return exp.Placeholder()
        return node

    text = tree.transform(_abstract).sql(dialect=dialect, normalize=True, comments=False)
    return " ".join(text.split())


@dataclass(frozen=True)
class QuerySpec:
    text: str
    dialect: str = "mysql"
    strategy_override: Optional[ExecutionStrategy] = None
    timeout_s: Optional[float] = None
    best_effort: bool = False
    explain: Optional[str] = None
    fingerprint: str = field(init=False)
    _tree: exp.Expression = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.text or not self.text.strip():
            raise ConfigurationError("Query text is empty")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigurationError(f"timeout_s must be positive, got {self.timeout_s!r}")
        if self.explain is not None and self.explain not in EXPLAIN_MODES:
            raise ConfigurationError(f"explain must be one of {', '.join(EXPLAIN_MODES)}, got {self.explain!r}")
        if self.strategy_override is not None:
            try:
                object.__setattr__(self, "strategy_override", parse_strategy(self.strategy_override))
            except ValueError as e:
                raise ConfigurationError(str(e)) from None
        tree = _parse(self.text, self.dialect)
        object.__setattr__(self, "_tree", tree)
        object.__setattr__(self, "fingerprint", fingerprint(tree, self.dialect))

    @property
    def fingerprint_id(self) -> str:
        return hashlib.sha256(self.fingerprint.encode()).hexdigest()

    @property
    def has_explicit_order(self) -> bool:
        return self._tree.args.get("order") is not None

    def tree(self) -> exp.Expression:
        """A private copy of the parsed query, safe to rewrite."""
        return self._tree.copy()

    def sql(self) -> str:
        return self._tree.sql(dialect=self.dialect)

    @property
    def has_unnamed_outputs(self) -> bool:
        """True when a top-level projection is an unaliased expression the engine names itself."""
        if not isinstance(self._tree, exp.Select):
            return False
        return any(not isinstance(e, (exp.Alias, exp.Column, exp.Star)) for e in self._tree.expressions)


@dataclass
class TableRef:
    index: int
    node: exp.Table
    name: str
    alias: str
    side: str = ""
    null_supplying: bool = False

    def bare_table(self) -> exp.Table:
        """The referenced table without its alias, for catalog probes."""
        table = self.node.copy()
        table.set("alias", None)
        return table


@dataclass
class Conjunct:
    expr: exp.Expression
    source: str
    refs: Set[int] = field(default_factory=set)

    @property
    def single_ref(self) -> Optional[int]:
        return next(iter(self.refs)) if len(self.refs) == 1 else None


@dataclass
class QueryShape:
    tree: exp.Select
    refs: List[TableRef]
    conjuncts: List[Conjunct]
    columns_by_ref: Dict[int, Set[str]]
    catalog: Dict[int, Set[str]] = field(default_factory=dict)

    def owners(self, column: exp.Column) -> List[int]:
        return resolve_column(column, self.refs, self.catalog)

    @property
    def has_outer_join(self) -> bool:
        return any(ref.side for ref in self.refs)

    def equi_joins(self) -> List[Conjunct]:
        """Column = column conjuncts linking two different relations."""
        found = []
        for c in self.conjuncts:
            e = c.expr
            if (isinstance(e, exp.EQ) and isinstance(e.this, exp.Column)
                    and isinstance(e.expression, exp.Column) and len(c.refs) == 2):
                found.append(c)
        return found


def split_conjuncts(expression: Optional[exp.Expression]) -> List[exp.Expression]:
    if expression is None:
        return []
    if isinstance(expression, exp.Paren):
        return split_conjuncts(expression.this)
    if isinstance(expression, exp.And):
        return split_conjuncts(expression.this) + split_conjuncts(expression.expression)
    return [expression]


def is_portable(expression: exp.Expression) -> bool:
    return all(isinstance(node, PORTABLE_NODES) for node in expression.find_all(exp.Expression))


def table_key(table: exp.Table) -> str:
    bare = table.copy()
    bare.set("alias", None)
    return bare.sql().lower()


def analyze(tree: exp.Expression, catalog_columns: Any) -> QueryShape:
    """
    Decompose a single SELECT block. catalog_columns(table_node) -> list of
    lower-cased column names for that table.
    """
    if not isinstance(tree, exp.Select):
        raise RewriteError("not a single SELECT block")
    if tree.args.get("with") is not None:
        raise RewriteError("common table expressions are not decomposed")
    if any(s is not tree for s in tree.find_all(exp.Select)) or tree.find(exp.Subquery) is not None:
        raise RewriteError("nested selects are not decomposed")

    joins = tree.args.get("joins") or []
    join_tables = {id(j.this) for j in joins}
    refs: List[TableRef] = []
    for node in tree.find_all(exp.Table):
        if id(node) in join_tables:
            continue
        refs.append(TableRef(index=len(refs), node=node, name=node.name.lower(), alias=node.alias_or_name.lower()))
    if not refs:
        raise RewriteError("query reads no relations")

    on_conditions: List[exp.Expression] = []
    for join in joins:
        if not isinstance(join.this, exp.Table):
            raise RewriteError("join over a non-table relation")
        if join.args.get("using"):
            raise RewriteError("JOIN ... USING is not decomposed")
        side = (join.side or "").upper()
        kind = (join.kind or "").upper()
        ref = TableRef(index=len(refs), node=join.this, name=join.this.name.lower(),
                       alias=join.this.alias_or_name.lower(), side=side)
        if side in ("LEFT", "FULL"):
            ref.null_supplying = True
        if side in ("RIGHT", "FULL"):
            for earlier in refs:
                earlier.null_supplying = True
        refs.append(ref)
        on = join.args.get("on")
        if on is not None and not side and kind in ("", "INNER", "CROSS"):
            on_conditions.append(on)

    aliases = [r.alias for r in refs]
    if len(set(aliases)) != len(aliases):
        raise RewriteError("duplicate relation alias")

    catalog = {r.index: set(catalog_columns(r.node)) for r in refs}
    shape = QueryShape(tree=tree, refs=refs, conjuncts=[], columns_by_ref={r.index: set() for r in refs},
                       catalog=catalog)

    for column in tree.find_all(exp.Column):
        for idx in resolve_column(column, refs, catalog):
            shape.columns_by_ref[idx].add(column.name.lower())

    where = tree.args.get("where")
    sources = [(c, "where") for c in split_conjuncts(where.this if where is not None else None)]
    for on in on_conditions:
        sources.extend((c, "on") for c in split_conjuncts(on))
    for expr_, source in sources:
        owners: Set[int] = set()
        for column in expr_.find_all(exp.Column):
            owners.update(resolve_column(column, refs, catalog))
        shape.conjuncts.append(Conjunct(expr=expr_, source=source, refs=owners))
    return shape


def resolve_column(column: exp.Column, refs: List[TableRef], catalog: Dict[int, Set[str]]) -> List[int]:
    name = column.name.lower()
    qualifier = (column.table or "").lower()
    if qualifier:
        return [r.index for r in refs if r.alias == qualifier and name in catalog[r.index]]
    # unqualified: every relation exposing the name (ambiguity is the store's problem)
    return [r.index for r in refs if name in catalog[r.index]]
