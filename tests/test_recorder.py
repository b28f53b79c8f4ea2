"""Tests for the cost recorder."""

import orjson
import pytest

from conftest import FakeExecutor
from fusionlab.errors import ExecutionFailure, QueryTimeoutError, RewriteError, StoreConnectionError
from fusionlab.models import ExecutionStrategy, FailureKind
from fusionlab.query import QuerySpec
from fusionlab.recorder import CostRecorder, classify

DIRECT = ExecutionStrategy.DIRECT
PUSHDOWN = ExecutionStrategy.PUSHDOWN

QUERY = QuerySpec("SELECT x FROM t WHERE y = 1")


class TestClassify:
    @pytest.mark.parametrize("error,kind", [
        (StoreConnectionError("down"), FailureKind.CONNECTION),
        (QueryTimeoutError("slow"), FailureKind.TIMEOUT),
        (RewriteError("no"), FailureKind.REWRITE_ABANDONED),
        (ExecutionFailure("bad"), FailureKind.EXECUTION),
    ])
    def test_known_errors(self, error, kind):
        assert classify(error) is kind

    def test_unknown_error(self):
        assert classify(RuntimeError("bug")) is None


class TestCostRecorder:
    def test_success_record(self):
        recorder = CostRecorder()
        result, record = recorder.run(FakeExecutor(DIRECT, latency_ms=12.5), QUERY)
        assert result.success
        assert record.success
        assert record.rows == 2
        assert record.elapsed_ms == 12.5
        assert record.role == "primary"
        assert record.fingerprint_id == QUERY.fingerprint_id
        assert record.memory_mb > 0

    def test_failure_becomes_failed_result(self):
        executor = FakeExecutor(PUSHDOWN)
        executor.error = QueryTimeoutError("deadline")
        result, record = CostRecorder().run(executor, QUERY, role="shadow")
        assert not result.success
        assert result.failure is FailureKind.TIMEOUT
        assert record.failure == "timeout"
        assert record.exception is executor.error

    def test_unexpected_error_propagates(self):
        executor = FakeExecutor(DIRECT)
        executor.error = RuntimeError("bug")
        recorder = CostRecorder()
        with pytest.raises(RuntimeError):
            recorder.run(executor, QUERY)
        assert recorder.history() == []

    def test_history_is_bounded(self):
        recorder = CostRecorder(max_history=3)
        for _ in range(5):
            recorder.run(FakeExecutor(DIRECT), QUERY)
        assert len(recorder.history()) == 3
        assert recorder.history("other") == []

    def test_summary_and_export(self, tmp_path):
        recorder = CostRecorder()
        recorder.run(FakeExecutor(DIRECT, latency_ms=10.0), QUERY)
        recorder.run(FakeExecutor(DIRECT, latency_ms=30.0), QUERY)
        failing = FakeExecutor(PUSHDOWN)
        failing.error = ExecutionFailure("rejected")
        recorder.run(failing, QUERY)

        summary = recorder.summary()
        assert summary["direct"] == {"runs": 2, "failures": 0, "degraded": 0, "mean_ms": 20.0}
        assert summary["pushdown"]["failures"] == 1
        assert summary["pushdown"]["mean_ms"] is None

        path = recorder.export(tmp_path / "telemetry.json")
        payload = orjson.loads(path.read_bytes())
        assert len(payload["records"]) == 3
        assert payload["summary"]["direct"]["runs"] == 2
