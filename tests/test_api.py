"""Tests for the run_query / replay_corpus entrypoints."""

import pytest

from conftest import SSB_Q1_3
from fusionlab.api import QueryEngine, replay_corpus, run_query
from fusionlab.config import EngineConfig, RouterPolicy
from fusionlab.errors import ConfigurationError
from fusionlab.harness import ReplayCase
from fusionlab.models import ExecutionStrategy
from fusionlab.query import QuerySpec
from fusionlab.stats import Phase, StatisticsStore


class TestRunQuery:
    def test_one_shot_run_query(self, store_config):
        stats = StatisticsStore(RouterPolicy(seed=2))
        result, trace = run_query(QuerySpec(SSB_Q1_3, dialect="duckdb"), store_config, stats)
        assert result.strategy is ExecutionStrategy.DIRECT
        assert result.columns == ["revenue"]
        assert trace.decision.phase is Phase.COLD
        assert trace.phase_after is Phase.EXPLORING

    def test_dialect_must_match_store(self, store_config):
        with QueryEngine(store_config) as engine:
            with pytest.raises(ConfigurationError, match="dialect"):
                engine.run_query(QuerySpec(SSB_Q1_3, dialect="mysql"))

    def test_statistics_persist_across_engines(self, store_config, tmp_path):
        config = EngineConfig(statistics_path=str(tmp_path / "stats.json"))
        with QueryEngine(store_config, engine=config, policy=RouterPolicy(seed=4)) as engine:
            query = engine.spec(SSB_Q1_3)
            for _ in range(3):
                engine.run_query(query)
        assert (tmp_path / "stats.json").exists()

        with QueryEngine(store_config, engine=config) as engine:
            state = engine.stats.get(query.fingerprint)
            assert state.strategy(ExecutionStrategy.DIRECT).sample_count >= 3
            assert state.phase is Phase.EXPLORING


class TestReplayCorpus:
    def test_replay_corpus(self, store_config, tmp_path):
        cases = [
            ReplayCase.from_sql("q1_3", SSB_Q1_3, dialect="duckdb"),
            ReplayCase.from_sql("regions", "SELECT c_region, COUNT(*) AS n FROM customer GROUP BY c_region",
                                dialect="duckdb"),
        ]
        report = replay_corpus(cases, store_config, journal_path=tmp_path / "journal.jsonl")
        assert [c.case_id for c in report.cases] == ["q1_3", "regions"]
        assert report.mismatches == []
        assert report.triage == {}
        assert (tmp_path / "journal.jsonl").exists()
