"""Tests for the three strategy executors against an in-memory SSB store."""

import pytest

from conftest import SSB_Q1_3, SSB_Q2_STYLE
from fusionlab.comparator import compare
from fusionlab.config import EngineConfig
from fusionlab.errors import ConfigurationError, QueryTimeoutError
from fusionlab.executors import (
    Deadline,
    DirectPassthrough,
    SemijoinReduction,
    build_executors,
    ensure_complete,
    render_plan,
)
from fusionlab.models import ExecutionStrategy, FailureKind
from fusionlab.query import QuerySpec
from fusionlab.recorder import CostRecorder

DIRECT = ExecutionStrategy.DIRECT
PUSHDOWN = ExecutionStrategy.PUSHDOWN
SEMIJOIN = ExecutionStrategy.SEMIJOIN


def spec(sql, **kwargs):
    return QuerySpec(sql, dialect="duckdb", **kwargs)


EQUIVALENCE_QUERIES = [
    SSB_Q1_3,
    SSB_Q2_STYLE,
    "SELECT c_region, COUNT(*) AS n FROM customer WHERE c_custkey > 10 GROUP BY c_region",
    """SELECT c.c_custkey, COUNT(l.lo_orderkey) AS n
       FROM customer c LEFT JOIN lineorder l ON c.c_custkey = l.lo_custkey AND l.lo_discount > 8
       GROUP BY c.c_custkey""",
    """WITH big AS (SELECT lo_custkey, SUM(lo_revenue) AS rev FROM lineorder GROUP BY lo_custkey)
       SELECT c.c_region, SUM(b.rev) AS rev FROM big b JOIN customer c ON b.lo_custkey = c.c_custkey
       GROUP BY c.c_region""",
    "SELECT c_custkey FROM customer WHERE UPPER(c_region) = 'ASIA'",
    "SELECT * FROM supplier s WHERE s.s_region = 'EUROPE'",
    """SELECT o.o_id, c.c_segment FROM orders_n o JOIN cust_n c ON o.o_custkey = c.c_id
       WHERE c.c_segment = 'AUTO'""",
    """SELECT c.c_id, o.o_id FROM cust_n c LEFT JOIN orders_n o ON c.c_id = o.o_custkey
       WHERE c.c_segment = 'AUTO'""",
    """SELECT o.o_id FROM orders_n o JOIN cust_n c ON o.o_custkey = c.c_id
       WHERE c.c_segment = 'NONE'""",
    """SELECT c.c_region, COUNT(*) AS n FROM lineorder l, customer c
       WHERE l.lo_custkey = c.c_custkey AND c.c_region IN ('ASIA', 'EUROPE') AND l.lo_quantity < 10
       GROUP BY c.c_region ORDER BY n DESC, c.c_region""",
]


class TestEquivalence:
    @pytest.mark.parametrize("sql", EQUIVALENCE_QUERIES)
    def test_alternates_agree_with_direct(self, executors, sql):
        query = spec(sql)
        oracle = executors[DIRECT].execute(query)
        assert oracle.success
        for strategy in (PUSHDOWN, SEMIJOIN):
            candidate = executors[strategy].execute(query)
            comparison = compare(oracle, candidate, ordered=query.has_explicit_order)
            assert comparison.equal, f"{strategy.value}: {comparison.detail}"

    def test_q1_3_has_revenue(self, executors):
        result = executors[DIRECT].execute(spec(SSB_Q1_3))
        assert result.columns == ["revenue"]
        assert result.rows[0][0] > 0


class TestPushdown:
    def test_filters_pushed_to_scans(self, executors):
        result = executors[PUSHDOWN].execute(spec(SSB_Q1_3))
        assert not result.degraded
        assert result.scanned_rows < 3012

    def test_non_portable_predicate_degrades(self, executors):
        result = executors[PUSHDOWN].execute(spec("SELECT c_custkey FROM customer WHERE UPPER(c_region) = 'ASIA'"))
        assert result.degraded
        assert result.degraded_reason == "predicate_not_pushable:customer"

    def test_cte_falls_back_to_full_local_evaluation(self, executors):
        result = executors[PUSHDOWN].execute(spec(EQUIVALENCE_QUERIES[4]))
        assert result.success
        assert result.degraded
        assert result.degraded_reason.startswith("unsupported_shape:")

    def test_star_pulls_every_column(self, executors):
        result = executors[PUSHDOWN].execute(spec("SELECT * FROM supplier WHERE s_region = 'ASIA'"))
        assert result.columns == ["s_suppkey", "s_name", "s_region"]
        assert result.row_count == 4


class TestSemijoin:
    def test_reduces_without_degrading(self, executors):
        result = executors[SEMIJOIN].execute(spec(SSB_Q1_3))
        assert not result.degraded

    def test_key_threshold_falls_back_to_plain_join(self, pool, executors):
        reducer = SemijoinReduction(pool, executors[SEMIJOIN].catalog, key_threshold=1)
        query = spec(SSB_Q2_STYLE)
        result = reducer.execute(query)
        assert result.degraded
        assert result.degraded_reason.startswith("key_set_exceeds_threshold")
        assert compare(executors[DIRECT].execute(query), result, ordered=True).equal

    @pytest.mark.parametrize("sql,reason", [
        ("SELECT COUNT(*) FROM customer WHERE c_region = 'ASIA'", "single_relation"),
        (EQUIVALENCE_QUERIES[3], "outer_join"),
        ("SELECT COUNT(*) FROM lineorder l JOIN customer c ON l.lo_custkey = c.c_custkey", "no_filtered_dimension"),
    ])
    def test_unsupported_shapes_run_plain_join(self, executors, sql, reason):
        result = executors[SEMIJOIN].execute(spec(sql))
        assert result.success
        assert result.degraded
        assert result.degraded_reason == reason

    def test_null_keys_never_join(self, executors):
        sql = EQUIVALENCE_QUERIES[7]
        result = executors[SEMIJOIN].execute(spec(sql))
        assert not result.degraded
        assert sorted(r[0] for r in result.rows) == [10, 11, 12, 17]

    def test_empty_key_set(self, executors):
        result = executors[SEMIJOIN].execute(spec(EQUIVALENCE_QUERIES[9]))
        assert result.rows == []
        assert not result.degraded


class TestTimeoutsAndRegistry:
    def test_timeout_raises_and_recorder_classifies(self, pool):
        direct = DirectPassthrough(pool)
        slow = spec("SELECT COUNT(*) FROM range(100000) a, range(100000) b WHERE a.range + b.range < 0",
                    timeout_s=0.2)
        with pytest.raises(QueryTimeoutError):
            direct.execute(slow)

        result, record = CostRecorder().run(direct, slow)
        assert not result.success
        assert result.failure is FailureKind.TIMEOUT
        assert record.failure == "timeout"
        assert pool.in_use == 0

    def test_default_timeout_from_engine_config(self, pool):
        executors = build_executors(pool, EngineConfig(default_timeout_s=0.2))
        slow = spec("SELECT COUNT(*) FROM range(100000) a, range(100000) b WHERE a.range + b.range < 0")
        with pytest.raises(QueryTimeoutError):
            executors[DIRECT].execute(slow)

    def test_registry_must_cover_every_strategy(self, executors):
        partial = {DIRECT: executors[DIRECT], PUSHDOWN: executors[PUSHDOWN]}
        with pytest.raises(ConfigurationError, match="semijoin"):
            ensure_complete(partial)


class NamingConnection:
    """Answers every statement with MySQL-style output names and no rows."""

    def __init__(self, names):
        self.names = list(names)
        self.statements = []

    def query(self, sql, timeout_s=None):
        self.statements.append(sql)
        return list(self.names), []


class TestPlansAndNames:
    def test_no_plan_unless_asked(self, executors):
        for strategy in ExecutionStrategy:
            assert executors[strategy].execute(spec(SSB_Q1_3)).plan is None

    def test_direct_explains_on_the_store(self, executors):
        plain = executors[DIRECT].execute(spec(SSB_Q1_3))
        explained = executors[DIRECT].execute(spec(SSB_Q1_3, explain="plan"))
        assert "lineorder" in explained.plan.lower()
        assert explained.rows == plain.rows

    def test_pushdown_plan_lists_scans_then_local_plan(self, executors):
        result = executors[PUSHDOWN].execute(spec(SSB_Q1_3, explain="plan"))
        lines = result.plan.splitlines()
        assert lines[0].startswith("-- __fl_scan_0: SELECT")
        assert lines[1].startswith("-- __fl_scan_1: SELECT")
        assert len(lines) > 2
        assert not result.degraded

    def test_semijoin_plan_lists_key_queries(self, executors):
        result = executors[SEMIJOIN].execute(spec(SSB_Q2_STYLE, explain="analyze"))
        assert result.plan.startswith("-- keys of ")
        assert compare(executors[DIRECT].execute(spec(SSB_Q2_STYLE)), result, ordered=True).equal

    def test_unnamed_outputs_take_store_names(self, executors):
        query = spec("SELECT c_region, COUNT(*) FROM customer WHERE c_custkey > 10 GROUP BY c_region")
        oracle = executors[DIRECT].execute(query)
        for strategy in (PUSHDOWN, SEMIJOIN):
            assert executors[strategy].execute(query).columns == oracle.columns

    def test_store_names_replace_engine_names(self, executors):
        conn = NamingConnection(["c_region", "COUNT(*)"])
        query = spec("SELECT c_region, COUNT(*) FROM customer GROUP BY c_region;")
        names = executors[PUSHDOWN]._native_names(query, conn, Deadline(None), ["c_region", "count_star()"])
        assert names == ["c_region", "COUNT(*)"]
        assert conn.statements == [
            "SELECT * FROM (SELECT c_region, COUNT(*) FROM customer GROUP BY c_region) AS _fl_names LIMIT 0"
        ]

        aliased = spec("SELECT c_region, COUNT(*) AS n FROM customer GROUP BY c_region")
        assert executors[PUSHDOWN]._native_names(aliased, conn, Deadline(None), ["c_region", "n"]) == ["c_region", "n"]
        assert len(conn.statements) == 1

    def test_plan_rendering(self):
        assert render_plan(["explain_key", "explain_value"], [("physical_plan", "SCAN\nFILTER")]) == "SCAN\nFILTER"
        assert render_plan(["EXPLAIN"], [("-> Table scan on t",)]) == "-> Table scan on t"
        assert render_plan(["id", "table", "key"], [(1, "t", None)]) == "id | table | key\n1 | t | NULL"
