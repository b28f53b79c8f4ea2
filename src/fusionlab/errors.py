#!/usr/bin/env python3
"""
Error taxonomy for the FusionLab strategy router.

Driver exceptions (duckdb, mysql-connector) are translated into these classes at
the store boundary so strategy and routing code only deals with one vocabulary:

1. StoreConnectionError - store unreachable / auth failure (fatal for the call)
2. QueryTimeoutError    - caller deadline expired, in-flight request cancelled
3. ExecutionFailure     - the store rejected or failed the statement
4. RewriteError         - a rewrite cannot be applied safely (never surfaced)
5. CorrectnessMismatch  - a strategy disagreed with the Direct oracle
6. ConfigurationError   - malformed query or invalid parameters, raised before
                          any execution or state mutation
"""
from typing import Any, Optional


class FusionLabError(Exception):
    """Base class for every error raised by the core."""


class ConfigurationError(FusionLabError, ValueError):
    pass


class StoreConnectionError(FusionLabError, ConnectionError):
    pass


class QueryTimeoutError(FusionLabError, TimeoutError):
    pass


class ExecutionFailure(FusionLabError):
    pass


class RewriteError(FusionLabError):
    pass


class CorrectnessMismatch(FusionLabError):
    """Raised when the strategy about to be trusted as the answer disagrees with Direct."""

    def __init__(self, strategy: Any, fingerprint: str, detail: Any, oracle_result: Optional[Any] = None):
        self.strategy = strategy
        self.fingerprint = fingerprint
        self.detail = detail
        self.oracle_result = oracle_result
        name = getattr(strategy, "value", strategy)
        super().__init__(f"{name} disagrees with direct for '{fingerprint}': {detail}")
