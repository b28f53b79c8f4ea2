"""Pytest configuration and fixtures for fusionlab tests."""

import random
from pathlib import Path

import duckdb
import pytest

from fusionlab.config import EngineConfig, RouterPolicy, StoreConfig
from fusionlab.executors import build_executors
from fusionlab.models import ExecutionResult, ExecutionStrategy
from fusionlab.store import ConnectionPool


# =============================================================================
# SSB DATA
# =============================================================================

REGIONS = ["AMERICA", "ASIA", "EUROPE", "AFRICA", "MIDDLE EAST"]
YEARS = range(1992, 1999)

SSB_Q1_3 = """
SELECT SUM(lo_extendedprice * lo_discount) AS revenue
FROM lineorder, dwdate
WHERE lo_orderdate = d_datekey
  AND d_weeknuminyear = 6
  AND d_year = 1994
  AND lo_discount BETWEEN 5 AND 7
  AND lo_quantity BETWEEN 26 AND 35
"""

SSB_Q2_STYLE = """
SELECT d.d_year, s.s_region, SUM(l.lo_revenue) AS revenue
FROM lineorder l
JOIN dwdate d ON l.lo_orderdate = d.d_datekey
JOIN supplier s ON l.lo_suppkey = s.s_suppkey
WHERE s.s_region = 'ASIA' AND d.d_year BETWEEN 1993 AND 1995
GROUP BY d.d_year, s.s_region
ORDER BY d.d_year
"""


def _seed(con: duckdb.DuckDBPyConnection) -> None:
    rng = random.Random(7)
    con.execute("CREATE TABLE dwdate (d_datekey INTEGER, d_year INTEGER, d_weeknuminyear INTEGER, "
                "d_yearmonthnum INTEGER)")
    dates = []
    for year in YEARS:
        for week in range(1, 53):
            dates.append((year * 1000 + week, year, week, year * 100 + min(12, (week - 1) // 4 + 1)))
    con.executemany("INSERT INTO dwdate VALUES (?, ?, ?, ?)", dates)

    con.execute("CREATE TABLE customer (c_custkey INTEGER, c_name VARCHAR, c_region VARCHAR, c_nation VARCHAR)")
    con.executemany("INSERT INTO customer VALUES (?, ?, ?, ?)", [
        (k, f"Customer#{k:09d}", REGIONS[k % 5], f"NATION{k % 11}") for k in range(1, 61)
    ])

    con.execute("CREATE TABLE supplier (s_suppkey INTEGER, s_name VARCHAR, s_region VARCHAR)")
    con.executemany("INSERT INTO supplier VALUES (?, ?, ?)", [
        (k, f"Supplier#{k:09d}", REGIONS[k % 5]) for k in range(1, 21)
    ])

    con.execute("CREATE TABLE lineorder (lo_orderkey INTEGER, lo_custkey INTEGER, lo_suppkey INTEGER, "
                "lo_orderdate INTEGER, lo_quantity INTEGER, lo_extendedprice INTEGER, "
                "lo_discount INTEGER, lo_revenue INTEGER)")
    orders = []
    for key in range(1, 3001):
        price = rng.randint(100, 10000)
        discount = rng.randint(0, 10)
        orders.append((key, rng.randint(1, 60), rng.randint(1, 20), rng.choice(dates)[0],
                       rng.randint(1, 50), price, discount, price * (100 - discount) // 100))
    # guaranteed Q1.3 hits
    for key in range(3001, 3013):
        orders.append((key, 1 + key % 60, 1 + key % 20, 1994006, 30, 1000 + key, 6, 940))
    con.executemany("INSERT INTO lineorder VALUES (?, ?, ?, ?, ?, ?, ?, ?)", orders)

    # nullable join keys on both sides
    con.execute("CREATE TABLE cust_n (c_id INTEGER, c_segment VARCHAR)")
    con.executemany("INSERT INTO cust_n VALUES (?, ?)", [
        (1, "AUTO"), (2, "AUTO"), (3, "BUILDING"), (None, "AUTO"), (None, "BUILDING"),
    ])
    con.execute("CREATE TABLE orders_n (o_id INTEGER, o_custkey INTEGER, o_amount DOUBLE)")
    con.executemany("INSERT INTO orders_n VALUES (?, ?, ?)", [
        (10, 1, 1.5), (11, 1, 2.25), (12, 2, 3.0), (13, None, 4.0), (14, 3, 5.5),
        (15, None, 6.0), (16, 4, 7.75), (17, 2, 0.1),
    ])


@pytest.fixture(scope="session")
def ssb_path(tmp_path_factory) -> Path:
    path = tmp_path_factory.mktemp("ssb") / "ssb.duckdb"
    con = duckdb.connect(str(path))
    try:
        _seed(con)
    finally:
        con.close()
    return path


# =============================================================================
# STORE / EXECUTOR FIXTURES
# =============================================================================

@pytest.fixture
def store_config(ssb_path) -> StoreConfig:
    return StoreConfig(backend="duckdb", database=str(ssb_path))


@pytest.fixture
def pool(store_config):
    pool = ConnectionPool(store_config, size=4)
    yield pool
    pool.close()


@pytest.fixture
def executors(pool):
    return build_executors(pool, EngineConfig())


@pytest.fixture
def policy() -> RouterPolicy:
    return RouterPolicy(seed=11)


# =============================================================================
# FAKE EXECUTORS
# =============================================================================

class FakeExecutor:
    """Returns canned rows with a fixed latency; raises `error` when set."""

    def __init__(self, strategy, rows=None, latency_ms=10.0, columns=("x",)):
        self.strategy = strategy
        self.rows = list(rows if rows is not None else [(1,), (2,)])
        self.columns = list(columns)
        self.latency_ms = latency_ms
        self.error = None
        self.calls = 0

    def execute(self, spec):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ExecutionResult(strategy=self.strategy, columns=list(self.columns), rows=list(self.rows),
                               elapsed_ms=self.latency_ms)


class ScriptedLatency:
    """Wraps a real executor: reports a fixed latency, optionally drops the first row."""

    def __init__(self, inner, latency_ms):
        self.inner = inner
        self.strategy = inner.strategy
        self.latency_ms = latency_ms
        self.drop_row = False

    def execute(self, spec):
        result = self.inner.execute(spec)
        result.elapsed_ms = self.latency_ms
        if self.drop_row:
            result = result.with_rows(result.columns, result.rows[1:])
        return result


def fake_executors(**latencies):
    return {
        s: FakeExecutor(s, latency_ms=latencies.get(s.value, 10.0))
        for s in ExecutionStrategy
    }
