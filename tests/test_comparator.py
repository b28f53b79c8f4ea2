"""Tests for result comparison against the Direct oracle."""

import datetime
import decimal

from fusionlab.comparator import Verdict, compare, values_equal
from fusionlab.config import ComparatorConfig
from fusionlab.models import ExecutionResult, ExecutionStrategy, FailureKind


def result(rows, columns=("a", "b"), strategy=ExecutionStrategy.DIRECT):
    return ExecutionResult(strategy=strategy, columns=list(columns), rows=list(rows))


class TestUnordered:
    def test_row_order_ignored_without_order_by(self):
        oracle = result([(1, "x"), (2, "y"), (None, "z")])
        candidate = result([(2, "y"), (None, "z"), (1, "x")], strategy=ExecutionStrategy.PUSHDOWN)
        assert compare(oracle, candidate).equal

    def test_duplicates_matter(self):
        oracle = result([(1, "x"), (1, "x")])
        candidate = result([(1, "x")])
        comparison = compare(oracle, candidate)
        assert comparison.verdict is Verdict.MISMATCH
        assert comparison.detail.missing_rows == 1
        assert comparison.detail.extra_rows == 0
        assert "row count differs" in comparison.detail.note

    def test_mixed_types_sort_without_error(self):
        oracle = result([(None, 1), (True, 2), (3.5, 3), ("s", 4), (datetime.date(2020, 1, 1), 5)])
        candidate = result(list(reversed(oracle.rows)))
        assert compare(oracle, candidate).equal

    def test_first_difference_reported(self):
        oracle = result([(1, "x"), (2, "y")])
        candidate = result([(1, "x"), (2, "q")])
        detail = compare(oracle, candidate).detail
        assert detail.first_row == 1
        assert detail.column == "b"
        assert detail.oracle_value == "y"
        assert detail.candidate_value == "q"
        assert detail.missing_rows == 1 and detail.extra_rows == 1


class TestOrdered:
    def test_order_matters_with_order_by(self):
        oracle = result([(1, "x"), (2, "y")])
        candidate = result([(2, "y"), (1, "x")])
        comparison = compare(oracle, candidate, ordered=True)
        assert comparison.verdict is Verdict.MISMATCH
        assert comparison.detail.note == "same rows in a different order"

    def test_same_order_equal(self):
        oracle = result([(1, "x"), (2, "y")])
        assert compare(oracle, result(oracle.rows), ordered=True).equal


class TestValues:
    def test_numeric_tolerance(self):
        config = ComparatorConfig(abs_tol=1e-6, rel_tol=0)
        assert values_equal(1.0, 1.0000001, config)
        assert not values_equal(1.0, 1.001, config)

    def test_decimal_and_float(self):
        assert values_equal(decimal.Decimal("12.50"), 12.5, ComparatorConfig())

    def test_ints_exact(self):
        assert not values_equal(10**17, 10**17 + 1, ComparatorConfig(rel_tol=1e-3))

    def test_null_equals_null_only(self):
        config = ComparatorConfig()
        assert values_equal(None, None, config)
        assert not values_equal(None, 0, config)

    def test_bool_is_not_numeric(self):
        assert not values_equal(True, 1.0, ComparatorConfig())

    def test_nan_equals_nan(self):
        assert values_equal(float("nan"), float("nan"), ComparatorConfig())


class TestHeadersAndFailures:
    def test_header_names_case_folded(self):
        oracle = result([(1, 2)], columns=("revenue", "n"))
        assert compare(oracle, result([(1, 2)], columns=("REVENUE", "N"))).equal

        comparison = compare(oracle, result([(1, 2)], columns=("REVENUE", "cnt")))
        assert comparison.verdict is Verdict.MISMATCH
        assert comparison.detail.column == "n"

    def test_positional_headers_opt_in(self):
        oracle = result([(1, 2)], columns=("revenue", "n"))
        candidate = result([(1, 2)], columns=("sum(x)", "count_star()"))
        assert compare(oracle, candidate, config=ComparatorConfig(positional_headers=True)).equal

    def test_column_count_mismatch(self):
        comparison = compare(result([(1, 2)]), result([(1,)], columns=("a",)))
        assert comparison.verdict is Verdict.MISMATCH
        assert "column count" in comparison.detail.describe()

    def test_failed_candidate_is_not_a_mismatch(self):
        failed = ExecutionResult.failed(ExecutionStrategy.SEMIJOIN, FailureKind.TIMEOUT, "too slow")
        assert compare(result([(1, 2)]), failed).verdict is Verdict.FAILED

    def test_failed_oracle_skips(self):
        failed = ExecutionResult.failed(ExecutionStrategy.DIRECT, FailureKind.EXECUTION, "boom")
        assert compare(failed, result([(1, 2)])).verdict is Verdict.SKIPPED
