#!/usr/bin/env python3
"""
Entrypoints: run one query, replay a corpus.

QueryEngine wires the pool, executors, recorder and router for one store and
owns their lifetime; run_query / replay_corpus are one-shot conveniences that
build an engine, use it and close it again.
"""
import logging
from pathlib import Path
from typing import Iterable, Optional, Tuple

from fusionlab.config import ComparatorConfig, EngineConfig, RouterPolicy, StoreConfig
from fusionlab.errors import ConfigurationError
from fusionlab.executors import build_executors
from fusionlab.harness import BenchmarkReport, ReplayCase, ReplayHarness
from fusionlab.models import ExecutionResult
from fusionlab.query import QuerySpec
from fusionlab.recorder import CostRecorder
from fusionlab.router import Router, RunTrace
from fusionlab.stats import StatisticsStore
from fusionlab.store import ConnectionPool

logger = logging.getLogger(__name__)


class QueryEngine:
    def __init__(self, store: StoreConfig, stats: Optional[StatisticsStore] = None,
                 engine: Optional[EngineConfig] = None, policy: Optional[RouterPolicy] = None,
                 comparator: Optional[ComparatorConfig] = None):
        self.engine = (engine or EngineConfig()).validate()
        self.policy = (policy or (stats.policy if stats is not None else RouterPolicy())).validate()
        self.comparator = (comparator or ComparatorConfig()).validate()
        store.validate()
        if stats is None:
            if self.engine.statistics_path:
                stats = StatisticsStore.load(Path(self.engine.statistics_path), self.policy)
            else:
                stats = StatisticsStore(self.policy)
        self.stats = stats

        self.pool = ConnectionPool(store, size=self.engine.pool_size,
                                   connect_retries=self.engine.connect_retries,
                                   retry_backoff_s=self.engine.retry_backoff_s)
        self.dialect = store.dialect
        self.executors = build_executors(self.pool, self.engine)
        self.recorder = CostRecorder()
        self.router = Router(self.executors, self.policy, self.comparator, self.recorder,
                             pool=self.pool, max_workers=self.engine.pool_size,
                             checkpoint_every=self.engine.checkpoint_every)
        logger.info("[engine] ready: %s", store.redacted())

    def spec(self, text: str, **kwargs) -> QuerySpec:
        return QuerySpec(text=text, dialect=self.dialect, **kwargs)

    def run_query(self, spec: QuerySpec) -> Tuple[ExecutionResult, RunTrace]:
        if spec.dialect != self.dialect:
            raise ConfigurationError(f"query dialect {spec.dialect!r} does not match store dialect {self.dialect!r}")
        outcome = self.router.run(spec, self.stats)
        return outcome.result, outcome.trace

    def replay(self, cases: Iterable[ReplayCase], journal_path: Optional[Path] = None) -> BenchmarkReport:
        harness = ReplayHarness(self.executors, self.comparator, self.recorder,
                                journal_path=journal_path, max_workers=self.engine.pool_size)
        return harness.run(cases, self.stats)

    def close(self) -> None:
        self.router.close()
        self.pool.close()
        if self.stats.path is not None:
            self.stats.checkpoint()

    def __enter__(self) -> "QueryEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def run_query(spec: QuerySpec, store: StoreConfig, stats: Optional[StatisticsStore] = None,
              engine: Optional[EngineConfig] = None, policy: Optional[RouterPolicy] = None,
              comparator: Optional[ComparatorConfig] = None) -> Tuple[ExecutionResult, RunTrace]:
    """Route one query against store; returns the chosen strategy's result and the run trace."""
    with QueryEngine(store, stats, engine, policy, comparator) as qe:
        return qe.run_query(spec)


def replay_corpus(cases: Iterable[ReplayCase], store: StoreConfig, stats: Optional[StatisticsStore] = None,
                  engine: Optional[EngineConfig] = None, comparator: Optional[ComparatorConfig] = None,
                  journal_path: Optional[Path] = None) -> BenchmarkReport:
    with QueryEngine(store, stats, engine, comparator=comparator) as qe:
        return qe.replay(cases, journal_path)
