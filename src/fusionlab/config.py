#!/usr/bin/env python3
"""
Typed configuration for the core.

The core never reads files or parses flags: callers hand it already-parsed
values (see from_mapping) and may apply environment overrides for secrets.
Every config validates eagerly and raises ConfigurationError before any
connection or statistics state is touched.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

from fusionlab.errors import ConfigurationError

BACKENDS = ("mysql", "duckdb")


@dataclass
class StoreConfig:
    host: str = "127.0.0.1"
    port: int = 3306
    user: str = "root"
    password: Optional[str] = None
    database: str = "ssb"
    backend: str = "mysql"
    connect_timeout: int = 15

    @property
    def dialect(self) -> str:
        """sqlglot dialect used to parse and render SQL for this store."""
        return "mysql" if self.backend == "mysql" else "duckdb"

    def validate(self) -> "StoreConfig":
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"Unsupported backend {self.backend!r}; expected one of {', '.join(BACKENDS)}")
        if not self.database:
            raise ConfigurationError("database must be set")
        if self.backend == "mysql":
            if not self.host:
                raise ConfigurationError("host must be set for the mysql backend")
            if not isinstance(self.port, int) or not (0 < self.port < 65536):
                raise ConfigurationError(f"invalid port: {self.port!r}")
            if not self.user:
                raise ConfigurationError("user must be set for the mysql backend")
        if self.connect_timeout <= 0:
            raise ConfigurationError("connect_timeout must be positive")
        return self

    def redacted(self) -> Dict[str, Any]:
        return {
            "host": self.host, "port": self.port, "user": self.user,
            "password": "***" if self.password else None,
            "database": self.database, "backend": self.backend,
        }


@dataclass
class RouterPolicy:
    """Tunable routing constants; defaults follow the documented policy."""
    epsilon_start: float = 0.3
    epsilon_min: float = 0.01
    epsilon_decay: float = 0.05
    ema_alpha: float = 0.2
    significance_margin: float = 0.20
    min_samples: int = 50
    trust_samples: int = 5
    revalidate_every: int = 100
    shadow_utilization_ceiling: float = 0.75
    seed: Optional[int] = None

    def validate(self) -> "RouterPolicy":
        if not (0.0 <= self.epsilon_min <= self.epsilon_start <= 1.0):
            raise ConfigurationError("expected 0 <= epsilon_min <= epsilon_start <= 1")
        if self.epsilon_decay < 0:
            raise ConfigurationError("epsilon_decay must be >= 0")
        if not (0.0 < self.ema_alpha <= 1.0):
            raise ConfigurationError("ema_alpha must be in (0, 1]")
        if not (0.0 <= self.significance_margin < 1.0):
            raise ConfigurationError("significance_margin must be in [0, 1)")
        if self.min_samples < 1 or self.trust_samples < 1:
            raise ConfigurationError("min_samples and trust_samples must be >= 1")
        if self.revalidate_every < 1:
            raise ConfigurationError("revalidate_every must be >= 1")
        if not (0.0 < self.shadow_utilization_ceiling <= 1.0):
            raise ConfigurationError("shadow_utilization_ceiling must be in (0, 1]")
        return self

    def epsilon(self, total_samples: int) -> float:
        return max(self.epsilon_min, self.epsilon_start / (1.0 + self.epsilon_decay * total_samples))


@dataclass
class ComparatorConfig:
    abs_tol: float = 1e-9
    rel_tol: float = 1e-9
    positional_headers: bool = False

    def validate(self) -> "ComparatorConfig":
        if self.abs_tol < 0 or self.rel_tol < 0:
            raise ConfigurationError("tolerances must be >= 0")
        return self


@dataclass
class EngineConfig:
    pool_size: int = 4
    semijoin_key_threshold: int = 100_000
    default_timeout_s: Optional[float] = None
    connect_retries: int = 2
    retry_backoff_s: float = 0.05
    checkpoint_every: int = 25
    statistics_path: Optional[str] = None

    def validate(self) -> "EngineConfig":
        if self.pool_size < 1:
            raise ConfigurationError("pool_size must be >= 1")
        if self.semijoin_key_threshold < 1:
            raise ConfigurationError("semijoin_key_threshold must be >= 1")
        if self.default_timeout_s is not None and self.default_timeout_s <= 0:
            raise ConfigurationError("default_timeout_s must be positive")
        if self.connect_retries < 0 or self.retry_backoff_s < 0:
            raise ConfigurationError("connect_retries and retry_backoff_s must be >= 0")
        if self.checkpoint_every < 1:
            raise ConfigurationError("checkpoint_every must be >= 1")
        return self


@dataclass
class CoreConfig:
    store: StoreConfig
    engine: EngineConfig = field(default_factory=EngineConfig)
    policy: RouterPolicy = field(default_factory=RouterPolicy)
    comparator: ComparatorConfig = field(default_factory=ComparatorConfig)

    def validate(self) -> "CoreConfig":
        self.store.validate()
        self.engine.validate()
        self.policy.validate()
        self.comparator.validate()
        return self


def from_mapping(raw: Mapping[str, Mapping[str, Any]]) -> CoreConfig:
    """Build a CoreConfig from already-parsed sections (store/engine/policy/comparator)."""
    store_raw = dict(raw.get("store") or {})
    _require_keys(store_raw, ["database"], "store")
    try:
        store = StoreConfig(
            host=store_raw.get("host", "127.0.0.1"),
            port=int(store_raw.get("port", 3306)),
            user=store_raw.get("user", "root"),
            password=store_raw.get("password"),
            database=store_raw["database"],
            backend=store_raw.get("backend", "mysql"),
            connect_timeout=int(store_raw.get("connect_timeout", 15)),
        )
        engine = EngineConfig(**_known(raw.get("engine"), EngineConfig))
        policy = RouterPolicy(**_known(raw.get("policy"), RouterPolicy))
        comparator = ComparatorConfig(**_known(raw.get("comparator"), ComparatorConfig))
    except ConfigurationError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
    return CoreConfig(store=store, engine=engine, policy=policy, comparator=comparator).validate()


def env_override(config: CoreConfig) -> CoreConfig:
    """
    Allow env overrides for credentials to avoid committing secrets.
    """
    pwd = os.environ.get("FUSIONLAB_PASSWORD")
    host = os.environ.get("FUSIONLAB_HOST")
    pool_size = os.environ.get("FUSIONLAB_POOL_SIZE")
    if pwd:
        config.store.password = pwd
    if host:
        config.store.host = host
    if pool_size:
        try:
            config.engine.pool_size = int(pool_size)
        except ValueError:
            raise ConfigurationError(f"FUSIONLAB_POOL_SIZE is not an integer: {pool_size!r}") from None
    return config.validate()


def _require_keys(data: Dict[str, Any], keys: Iterable[str], section: str) -> None:
    missing = [k for k in keys if k not in data]
    if missing:
        raise ConfigurationError(
            "Missing required config keys in %s: %s" % (section, ", ".join(missing))
        )


def _known(section: Optional[Mapping[str, Any]], cls: type) -> Dict[str, Any]:
    section = dict(section or {})
    unknown = sorted(set(section) - set(cls.__dataclass_fields__))
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    return section
