#!/usr/bin/env python3
"""
Statistics-driven strategy router.

Per call:
1. choose_strategy() picks the primary and any shadows from the fingerprint's
   statistics (pure given the state, the policy and a seeded RNG)
2. primary and shadows run concurrently on the shared worker pool
3. every non-Direct result is compared against Direct when Direct ran
4. all outcomes are folded into the statistics as one atomic update
5. the primary's result is returned, or its error raised
"""
import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from fusionlab.comparator import Verdict, compare
from fusionlab.config import ComparatorConfig, RouterPolicy
from fusionlab.errors import ConfigurationError, CorrectnessMismatch, ExecutionFailure
from fusionlab.executors import ensure_complete
from fusionlab.models import ALTERNATES, ExecutionResult, ExecutionStrategy, FailureKind
from fusionlab.query import QuerySpec
from fusionlab.recorder import CostRecorder, ExecutionRecord
from fusionlab.stats import FingerprintStats, Observation, Outcome, Phase, StatisticsStore

logger = logging.getLogger(__name__)

DIRECT = ExecutionStrategy.DIRECT
_ORDER = list(ExecutionStrategy)


@dataclass
class RoutingDecision:
    phase: Phase
    primary: ExecutionStrategy
    shadows: List[ExecutionStrategy] = field(default_factory=list)
    epsilon: float = 0.0
    explored: bool = False
    throttled: bool = False
    override: bool = False
    revalidation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "primary": self.primary.value,
            "shadows": [s.value for s in self.shadows],
            "epsilon": round(self.epsilon, 6),
            "explored": self.explored,
            "throttled": self.throttled,
            "override": self.override,
            "revalidation": self.revalidation,
        }


def _ema_key(state: FingerprintStats, strategy: ExecutionStrategy) -> Tuple[float, int]:
    ema = state.strategy(strategy).ema_latency_ms
    return (ema if ema is not None else float("inf"), _ORDER.index(strategy))


def exploit_choice(state: FingerprintStats, policy: RouterPolicy,
                   exclude: Optional[ExecutionStrategy] = None) -> ExecutionStrategy:
    """Lowest-EMA trusted strategy; Direct when nothing else is trusted."""
    trusted = [s for s in state.eligible() if s is not exclude and state.trusted(s, policy)]
    if not trusted:
        return DIRECT
    return min(trusted, key=lambda s: _ema_key(state, s))


def runner_up(state: FingerprintStats, default: ExecutionStrategy) -> Optional[ExecutionStrategy]:
    sampled = [s for s in state.eligible()
               if s is not default and state.strategy(s).sample_count > 0]
    if not sampled:
        return None
    return min(sampled, key=lambda s: _ema_key(state, s))


def admit_shadow(utilization: float, policy: RouterPolicy, rng: random.Random) -> bool:
    """Backpressure: never at/above the ceiling, otherwise with probability 1 - u/ceiling."""
    ceiling = policy.shadow_utilization_ceiling
    if utilization >= ceiling:
        return False
    return rng.random() < 1.0 - utilization / ceiling


def choose_strategy(state: FingerprintStats, policy: RouterPolicy, rng: random.Random,
                    utilization: float = 0.0,
                    override: Optional[ExecutionStrategy] = None) -> RoutingDecision:
    if override is not None:
        if state.is_quarantined(override):
            raise ConfigurationError(
                f"{override.value} is quarantined for this query; reset it before overriding into it")
        return RoutingDecision(state.phase, override, override=True)

    epsilon = policy.epsilon(state.total_samples)

    if state.phase is Phase.COLD:
        decision = RoutingDecision(Phase.COLD, DIRECT, epsilon=epsilon)
        candidates = [a for a in ALTERNATES if not state.is_quarantined(a)]
        if candidates:
            fewest = min(state.strategy(a).attempts for a in candidates)
            tied = [a for a in candidates if state.strategy(a).attempts == fewest]
            decision.shadows.append(rng.choice(tied))
        return decision

    if state.phase is Phase.CONVERGED and not state.is_quarantined(state.default_strategy):
        decision = RoutingDecision(Phase.CONVERGED, state.default_strategy, epsilon=epsilon)
        if state.since_validation + 1 >= policy.revalidate_every:
            partner = DIRECT if decision.primary is not DIRECT else runner_up(state, DIRECT)
            if partner is not None:
                decision.shadows.append(partner)
                decision.revalidation = True
        return decision

    default = exploit_choice(state, policy)
    decision = RoutingDecision(Phase.EXPLORING, default, epsilon=epsilon)
    others = [s for s in state.eligible() if s is not default]
    if others and rng.random() < epsilon:
        pick = rng.choice(others)
        decision.explored = True
        if state.trusted(pick, policy):
            decision.primary = pick
        elif admit_shadow(utilization, policy, rng):
            decision.shadows.append(pick)
        else:
            decision.throttled = True
    # a non-Direct answer is only returned next to the oracle
    if decision.primary is not DIRECT and DIRECT not in decision.shadows:
        decision.shadows.insert(0, DIRECT)
    return decision


@dataclass
class RunTrace:
    fingerprint: str
    fingerprint_id: str
    decision: RoutingDecision
    records: List[ExecutionRecord] = field(default_factory=list)
    verdicts: Dict[str, str] = field(default_factory=dict)
    retried_with: Optional[ExecutionStrategy] = None
    plans: Dict[str, str] = field(default_factory=dict)
    phase_after: Optional[Phase] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "fingerprint_id": self.fingerprint_id,
            "decision": self.decision.to_dict(),
            "records": [r.to_dict() for r in self.records],
            "verdicts": dict(self.verdicts),
            "retried_with": self.retried_with.value if self.retried_with else None,
            "plans": dict(self.plans),
            "phase_after": self.phase_after.value if self.phase_after else None,
        }


@dataclass
class RunOutcome:
    result: ExecutionResult
    trace: RunTrace


def _outcome_of(result: ExecutionResult) -> Outcome:
    if result.success:
        return Outcome.SUCCESS
    return Outcome.TIMEOUT if result.failure is FailureKind.TIMEOUT else Outcome.FAILURE


def _error_of(result: Optional[ExecutionResult], record: ExecutionRecord) -> BaseException:
    if record.exception is not None:
        return record.exception
    return ExecutionFailure(result.error if result is not None else record.error)


class Router:
    def __init__(self, executors: Mapping[ExecutionStrategy, Any], policy: Optional[RouterPolicy] = None,
                 comparator_config: Optional[ComparatorConfig] = None,
                 recorder: Optional[CostRecorder] = None, pool: Any = None,
                 max_workers: int = 4, checkpoint_every: int = 25):
        self.executors = ensure_complete(dict(executors))
        self.policy = (policy or RouterPolicy()).validate()
        self.comparator_config = comparator_config or ComparatorConfig()
        self.recorder = recorder or CostRecorder()
        self.pool = pool
        self.checkpoint_every = checkpoint_every
        self._rng = random.Random(self.policy.seed)
        self._rng_lock = threading.Lock()
        self._workers = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fusionlab")
        self._runs = 0
        self._runs_lock = threading.Lock()

    def utilization(self) -> float:
        return self.pool.utilization() if self.pool is not None else 0.0

    def decide(self, spec: QuerySpec, stats: StatisticsStore) -> RoutingDecision:
        with self._rng_lock:
            return choose_strategy(stats.get(spec.fingerprint), self.policy, self._rng,
                                   self.utilization(), spec.strategy_override)

    def run(self, spec: QuerySpec, stats: StatisticsStore) -> RunOutcome:
        """
        Route one query. Returns the primary's result with a trace.

        Raises CorrectnessMismatch when the primary disagreed with Direct,
        otherwise the primary's StoreConnectionError / QueryTimeoutError /
        ExecutionFailure (after one best-effort retry on timeout). An
        exploring primary that Direct failed to verify is not returned:
        Direct's error is raised instead.
        """
        decision = self.decide(spec, stats)
        trace = RunTrace(spec.fingerprint, spec.fingerprint_id, decision)
        logger.info("[router] %s phase=%s primary=%s shadows=%s%s",
                    spec.fingerprint_id[:12], decision.phase.value, decision.primary.value,
                    ",".join(s.value for s in decision.shadows) or "-",
                    " (throttled)" if decision.throttled else "")

        order = [decision.primary] + decision.shadows
        futures = {decision.primary: self._workers.submit(
            self.recorder.run, self.executors[decision.primary], spec, "primary")}
        for s in decision.shadows:
            futures[s] = self._workers.submit(self._shadow, s, spec)
        runs = {s: futures[s].result() for s in order}
        trace.records = [runs[s][1] for s in order]

        oracle = runs[DIRECT][0] if DIRECT in runs else None
        validated = decision.revalidation and all(runs[s][0].success for s in order)
        observations = []
        mismatch = None
        unverified = False
        for s in order:
            result, record = runs[s]
            outcome = _outcome_of(result)
            if result.plan is not None:
                trace.plans[s.value] = result.plan
            if result.success and s is not DIRECT and oracle is not None:
                comparison = compare(oracle, result, spec.has_explicit_order, self.comparator_config)
                trace.verdicts[s.value] = comparison.verdict.value
                if comparison.verdict is Verdict.SKIPPED:
                    outcome = Outcome.UNVERIFIED
                    unverified = unverified or s is decision.primary
                elif comparison.verdict is Verdict.MISMATCH:
                    outcome = Outcome.MISMATCH
                    logger.warning("[router] %s quarantined for %s: %s",
                                   s.value, spec.fingerprint_id[:12], comparison.detail)
                    if s is decision.primary:
                        mismatch = comparison.detail
            observations.append(Observation(
                strategy=s, outcome=outcome,
                latency_ms=result.elapsed_ms if result.success else None,
                timestamp=record.finished_at,
                primary=s is decision.primary,
                revalidation=validated and s is not decision.primary,
            ))
        state = stats.apply(spec.fingerprint, observations)
        trace.phase_after = state.phase
        self._maybe_checkpoint(stats)

        if mismatch is not None:
            raise CorrectnessMismatch(decision.primary, spec.fingerprint, mismatch, oracle_result=oracle)

        result, record = runs[decision.primary]
        if result.success:
            if unverified and decision.phase is not Phase.CONVERGED:
                logger.warning("[router] %s answer withheld for %s: direct failed to verify it",
                               decision.primary.value, spec.fingerprint_id[:12])
                raise _error_of(*runs[DIRECT])
            return RunOutcome(result, trace)
        if result.failure is FailureKind.TIMEOUT and spec.best_effort and not decision.override:
            return self._retry(spec, stats, trace, record)
        raise _error_of(result, record)

    def _shadow(self, strategy: ExecutionStrategy, spec: QuerySpec) -> Tuple[ExecutionResult, ExecutionRecord]:
        """A shadow never takes the caller down: unexpected errors become failed runs."""
        try:
            return self.recorder.run(self.executors[strategy], spec, "shadow")
        except Exception as e:
            logger.exception("[router] shadow %s crashed for %s", strategy.value, spec.fingerprint_id[:12])
            return self.recorder.failed(strategy, spec, "shadow", e)

    def _retry(self, spec: QuerySpec, stats: StatisticsStore, trace: RunTrace,
               failed: ExecutionRecord) -> RunOutcome:
        state = stats.get(spec.fingerprint)
        fallback = exploit_choice(state, self.policy, exclude=trace.decision.primary)
        if fallback is trace.decision.primary:
            raise _error_of(None, failed)
        logger.info("[router] %s timed out, retrying once with %s", trace.decision.primary.value, fallback.value)
        result, record = self.recorder.run(self.executors[fallback], spec, "retry")
        trace.records.append(record)
        trace.retried_with = fallback
        if result.plan is not None:
            trace.plans[fallback.value] = result.plan
        state = stats.apply(spec.fingerprint, [Observation(
            strategy=fallback, outcome=_outcome_of(result),
            latency_ms=result.elapsed_ms if result.success else None,
            timestamp=record.finished_at, primary=False,
        )])
        trace.phase_after = state.phase
        if not result.success:
            raise _error_of(result, record)
        return RunOutcome(result, trace)

    def _maybe_checkpoint(self, stats: StatisticsStore) -> None:
        with self._runs_lock:
            self._runs += 1
            due = self._runs % self.checkpoint_every == 0
        if due and stats.path is not None:
            stats.checkpoint()

    def reset(self, stats: StatisticsStore, fingerprint: str,
              strategy: Optional[ExecutionStrategy] = None) -> FingerprintStats:
        return stats.reset(fingerprint, strategy)

    def close(self) -> None:
        self._workers.shutdown(wait=True)
