"""
FusionLab: run SQL through alternative execution strategies, check they agree,
and learn per query shape which one to use.
"""
from fusionlab.api import QueryEngine, replay_corpus, run_query
from fusionlab.config import ComparatorConfig, CoreConfig, EngineConfig, RouterPolicy, StoreConfig
from fusionlab.errors import (
    ConfigurationError,
    CorrectnessMismatch,
    ExecutionFailure,
    FusionLabError,
    QueryTimeoutError,
    RewriteError,
    StoreConnectionError,
)
from fusionlab.harness import BenchmarkReport, ReplayCase, load_corpus
from fusionlab.models import ExecutionResult, ExecutionStrategy
from fusionlab.query import QuerySpec
from fusionlab.stats import Phase, StatisticsStore

__version__ = "0.3.0"

__all__ = [
    "BenchmarkReport", "ComparatorConfig", "ConfigurationError", "CoreConfig", "CorrectnessMismatch",
    "EngineConfig", "ExecutionFailure", "ExecutionResult", "ExecutionStrategy", "FusionLabError",
    "Phase", "QueryEngine", "QuerySpec", "QueryTimeoutError", "ReplayCase", "RewriteError",
    "RouterPolicy", "StatisticsStore", "StoreConfig", "StoreConnectionError",
    "load_corpus", "replay_corpus", "run_query",
]
