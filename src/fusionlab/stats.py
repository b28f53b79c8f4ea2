#!/usr/bin/env python3
"""
Routing statistics: per (fingerprint, strategy) latency/outcome state, the
per-fingerprint phase machine, and the store that owns both.

Learning is a pure function, observe(state, observation, policy) -> state.
The StatisticsStore applies it under a lock and swaps the result in, so a
failure while computing leaves the previous state in place and concurrent
updates for one fingerprint serialize.

Phase machine per fingerprint:
1. cold      - only Direct trusted; alternates shadowed to collect samples
2. exploring - epsilon-greedy over EMA latency
3. converged - one strategy beats all others by the significance margin
Quarantine is per (fingerprint, strategy) and only lifted by reset().
"""
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import orjson

from fusionlab.config import RouterPolicy
from fusionlab.errors import ConfigurationError
from fusionlab.models import ALTERNATES, ExecutionStrategy, parse_strategy

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


class Phase(Enum):
    COLD = "cold"
    EXPLORING = "exploring"
    CONVERGED = "converged"


class Outcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    MISMATCH = "mismatch"
    UNVERIFIED = "unverified"


@dataclass(frozen=True)
class StrategyStats:
    fingerprint: str
    strategy: ExecutionStrategy
    sample_count: int = 0
    ema_latency_ms: Optional[float] = None
    failure_count: int = 0
    mismatch_count: int = 0
    unverified_count: int = 0
    quarantined: bool = False
    last_updated: Optional[str] = None

    @property
    def attempts(self) -> int:
        return self.sample_count + self.failure_count + self.mismatch_count + self.unverified_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "strategy": self.strategy.value,
            "sample_count": self.sample_count,
            "ema_latency_ms": self.ema_latency_ms,
            "failure_count": self.failure_count,
            "mismatch_count": self.mismatch_count,
            "unverified_count": self.unverified_count,
            "quarantined": self.quarantined,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "StrategyStats":
        return cls(
            fingerprint=raw["fingerprint"],
            strategy=parse_strategy(raw["strategy"]),
            sample_count=int(raw.get("sample_count", 0)),
            ema_latency_ms=raw.get("ema_latency_ms"),
            failure_count=int(raw.get("failure_count", 0)),
            mismatch_count=int(raw.get("mismatch_count", 0)),
            unverified_count=int(raw.get("unverified_count", 0)),
            quarantined=bool(raw.get("quarantined", False)),
            last_updated=raw.get("last_updated"),
        )


@dataclass(frozen=True)
class FingerprintStats:
    fingerprint: str
    phase: Phase = Phase.COLD
    default_strategy: ExecutionStrategy = ExecutionStrategy.DIRECT
    invocations: int = 0
    since_validation: int = 0
    strategies: Mapping[ExecutionStrategy, StrategyStats] = field(default_factory=dict)

    def strategy(self, strategy: ExecutionStrategy) -> StrategyStats:
        found = self.strategies.get(strategy)
        return found if found is not None else StrategyStats(self.fingerprint, strategy)

    def is_quarantined(self, strategy: ExecutionStrategy) -> bool:
        return self.strategy(strategy).quarantined

    def trusted(self, strategy: ExecutionStrategy, policy: RouterPolicy) -> bool:
        """Direct is always trusted; others need trust_samples clean samples."""
        if strategy is ExecutionStrategy.DIRECT:
            return True
        s = self.strategy(strategy)
        return not s.quarantined and s.sample_count >= policy.trust_samples

    def eligible(self) -> List[ExecutionStrategy]:
        return [s for s in ExecutionStrategy if not self.is_quarantined(s)]

    @property
    def total_samples(self) -> int:
        return sum(s.sample_count for s in self.strategies.values())

    @property
    def mismatch_count(self) -> int:
        return sum(s.mismatch_count for s in self.strategies.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "phase": self.phase.value,
            "default_strategy": self.default_strategy.value,
            "invocations": self.invocations,
            "since_validation": self.since_validation,
        }


@dataclass(frozen=True)
class Observation:
    strategy: ExecutionStrategy
    outcome: Outcome
    latency_ms: Optional[float] = None
    timestamp: Optional[str] = None
    primary: bool = True
    revalidation: bool = False


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def observe(state: FingerprintStats, observation: Observation, policy: RouterPolicy) -> FingerprintStats:
    """Fold one completed execution into the fingerprint's state."""
    s = state.strategy(observation.strategy)
    outcome = observation.outcome
    if outcome is Outcome.SUCCESS:
        if observation.latency_ms is None:
            raise ValueError("successful observation without latency")
        latency = float(observation.latency_ms)
        if s.ema_latency_ms is None:
            ema = latency
        else:
            ema = policy.ema_alpha * latency + (1.0 - policy.ema_alpha) * s.ema_latency_ms
        s = replace(s, sample_count=s.sample_count + 1, ema_latency_ms=ema)
    elif outcome in (Outcome.FAILURE, Outcome.TIMEOUT):
        s = replace(s, failure_count=s.failure_count + 1)
    elif outcome is Outcome.MISMATCH:
        # the oracle itself is never quarantined
        s = replace(s, mismatch_count=s.mismatch_count + 1,
                    quarantined=s.quarantined or observation.strategy is not ExecutionStrategy.DIRECT)
    elif outcome is Outcome.UNVERIFIED:
        # ran, but the oracle failed: no sample, no latency
        s = replace(s, unverified_count=s.unverified_count + 1)
    if observation.timestamp is not None:
        s = replace(s, last_updated=observation.timestamp)

    strategies = dict(state.strategies)
    strategies[observation.strategy] = s
    since = state.since_validation + (1 if observation.primary else 0)
    if observation.revalidation:
        since = 0
    new = replace(
        state,
        strategies=strategies,
        invocations=state.invocations + (1 if observation.primary else 0),
        since_validation=since,
    )
    return _advance(new, observation, policy)


def _advance(state: FingerprintStats, observation: Observation, policy: RouterPolicy) -> FingerprintStats:
    if state.phase is Phase.COLD:
        if any(state.strategy(a).sample_count >= 1 and not state.is_quarantined(a) for a in ALTERNATES):
            state = replace(state, phase=Phase.EXPLORING)

    if state.phase is Phase.EXPLORING:
        winner = converged_winner(state, policy)
        if winner is not None:
            logger.info("[stats] %s converged on %s", state.fingerprint[:60], winner.value)
            return replace(state, phase=Phase.CONVERGED, default_strategy=winner, since_validation=0)
        return state

    if state.phase is Phase.CONVERGED:
        default = state.strategy(state.default_strategy)
        if default.quarantined:
            return _demote(state, "default quarantined")
        if observation.revalidation and observation.outcome is Outcome.MISMATCH:
            return _demote(state, f"{observation.strategy.value} mismatched during revalidation")
        if (observation.revalidation and observation.outcome is Outcome.SUCCESS
                and observation.strategy is not state.default_strategy):
            other = state.strategy(observation.strategy)
            if (default.ema_latency_ms is not None and other.ema_latency_ms is not None
                    and default.ema_latency_ms >= other.ema_latency_ms):
                return _demote(state, f"{state.default_strategy.value} regressed against {other.strategy.value}")
    return state


def _demote(state: FingerprintStats, reason: str) -> FingerprintStats:
    logger.info("[stats] %s back to exploring: %s", state.fingerprint[:60], reason)
    return replace(state, phase=Phase.EXPLORING, default_strategy=ExecutionStrategy.DIRECT, since_validation=0)


def converged_winner(state: FingerprintStats, policy: RouterPolicy) -> Optional[ExecutionStrategy]:
    """The strategy beating every other sampled, non-quarantined one by the margin, if any."""
    order = list(ExecutionStrategy)
    sampled = [s for s in state.strategies.values()
               if not s.quarantined and s.sample_count > 0 and s.ema_latency_ms is not None]
    if len(sampled) < 2:
        return None
    best = min(sampled, key=lambda s: (s.ema_latency_ms, order.index(s.strategy)))
    if best.sample_count < policy.min_samples or best.mismatch_count:
        return None
    threshold = 1.0 - policy.significance_margin
    if all(best.ema_latency_ms <= threshold * other.ema_latency_ms for other in sampled if other is not best):
        return best.strategy
    return None


def reset_strategy(state: FingerprintStats, strategy: Optional[ExecutionStrategy] = None) -> FingerprintStats:
    """Forget one strategy's statistics (lifting its quarantine), or the whole fingerprint."""
    if strategy is None:
        return FingerprintStats(state.fingerprint)
    strategies = dict(state.strategies)
    strategies.pop(strategy, None)
    state = replace(state, strategies=strategies)
    if state.phase is Phase.CONVERGED and state.default_strategy is strategy:
        state = _demote(state, f"{strategy.value} reset")
    return state


class StatisticsStore:
    """Owner of all routing statistics; every mutation goes through apply()/reset()."""

    def __init__(self, policy: Optional[RouterPolicy] = None, path: Optional[Path] = None):
        self.policy = (policy or RouterPolicy()).validate()
        self.path = Path(path) if path is not None else None
        self._states: Dict[str, FingerprintStats] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._states)

    def get(self, fingerprint: str) -> FingerprintStats:
        with self._lock:
            return self._states.get(fingerprint) or FingerprintStats(fingerprint)

    def apply(self, fingerprint: str, observations: Sequence[Observation]) -> FingerprintStats:
        """Fold observations in order and swap the result in as one update."""
        with self._lock:
            state = self._states.get(fingerprint) or FingerprintStats(fingerprint)
            for observation in observations:
                state = observe(state, observation, self.policy)
            self._states[fingerprint] = state
            return state

    def reset(self, fingerprint: str, strategy: Optional[ExecutionStrategy] = None) -> FingerprintStats:
        strategy = parse_strategy(strategy) if strategy is not None else None
        with self._lock:
            state = reset_strategy(self._states.get(fingerprint) or FingerprintStats(fingerprint), strategy)
            self._states[fingerprint] = state
        logger.info("[stats] reset %s for %s", strategy.value if strategy else "all strategies", fingerprint[:60])
        return state

    def fingerprints(self) -> List[str]:
        with self._lock:
            return sorted(self._states)

    def records(self) -> List[Dict[str, Any]]:
        """One record per (fingerprint, strategy), the persisted shape."""
        with self._lock:
            states = list(self._states.values())
        return [s.to_dict() for state in states for s in state.strategies.values()]

    def checkpoint(self, path: Optional[Path] = None) -> Path:
        """Write all statistics atomically (temp file then rename)."""
        target = Path(path) if path is not None else self.path
        if target is None:
            raise ConfigurationError("No statistics path configured")
        with self._lock:
            states = list(self._states.values())
        payload = {
            "version": CHECKPOINT_VERSION,
            "saved_at": now_iso(),
            "strategies": [s.to_dict() for state in states for s in state.strategies.values()],
            "fingerprints": [state.to_dict() for state in states],
        }
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        os.replace(tmp, target)
        logger.debug("[stats] checkpoint %s (%d fingerprints)", target, len(states))
        return target

    @classmethod
    def load(cls, path: Path, policy: Optional[RouterPolicy] = None) -> "StatisticsStore":
        """Reload a checkpoint; a missing file yields an empty store bound to path."""
        store = cls(policy, path)
        path = Path(path)
        if not path.exists():
            return store
        try:
            payload = orjson.loads(path.read_bytes())
            store._states = _restore(payload.get("strategies", []), payload.get("fingerprints", []))
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Unreadable statistics checkpoint {path}: {e}") from e
        logger.info("[stats] loaded %d fingerprints from %s", len(store._states), path)
        return store


def _restore(strategy_rows: Iterable[Mapping[str, Any]],
             fingerprint_rows: Iterable[Mapping[str, Any]]) -> Dict[str, FingerprintStats]:
    grouped: Dict[str, Dict[ExecutionStrategy, StrategyStats]] = {}
    for raw in strategy_rows:
        s = StrategyStats.from_dict(raw)
        grouped.setdefault(s.fingerprint, {})[s.strategy] = s
    states: Dict[str, FingerprintStats] = {}
    for raw in fingerprint_rows:
        fp = raw["fingerprint"]
        states[fp] = FingerprintStats(
            fingerprint=fp,
            phase=Phase(raw.get("phase", "cold")),
            default_strategy=parse_strategy(raw.get("default_strategy", "direct")),
            invocations=int(raw.get("invocations", 0)),
            since_validation=int(raw.get("since_validation", 0)),
            strategies=grouped.pop(fp, {}),
        )
    # strategy records without phase state: rebuild the phase from the samples
    for fp, strategies in grouped.items():
        phase = Phase.COLD
        if any(a in strategies and strategies[a].sample_count and not strategies[a].quarantined for a in ALTERNATES):
            phase = Phase.EXPLORING
        states[fp] = FingerprintStats(fingerprint=fp, phase=phase, strategies=strategies)
    return states
