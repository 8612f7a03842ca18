"""Immutable configuration values for keeper components.

Each component receives its configuration at construction; nothing reads
global mutable settings. Values can be built directly or from environment
variables via :meth:`KeeperConfig.from_env` (the CLI layers argparse on top).

.. code-block:: python

    >>> cfg = KeeperConfig.from_env({"PAIRS": "sol/usdc,btc/usdt", "MIN_SOURCES": "3"})
    >>> cfg.pairs
    ('sol/usdc', 'btc/usdt')
    >>> cfg.aggregator.min_sources
    3
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

# Well-known localnet development key (never holds real funds).
LOCALNET_PRIVATE_KEY = (
    "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
)
DEFAULT_PROGRAM_ID = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


def parse_api_keys(api_key_str: str | None) -> dict[str, str]:
    """Parse comma-separated API key string into a dictionary.

    Format: source1=key1,source2=key2

    :param api_key_str: Comma-separated API key string.
    :returns: Dict mapping source names to API keys.
    """
    if not api_key_str:
        return {}

    api_keys = {}
    for item in api_key_str.split(","):
        item = item.strip()
        if "=" in item:
            source, key = item.split("=", 1)
            api_keys[source.strip().lower()] = key.strip()
    return api_keys


def parse_env_api_keys(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Parse API keys from individual environment variables.

    Looks for: API_KEY_OKX, API_KEY_COINGECKO, etc.

    :param environ: Environment mapping (defaults to os.environ).
    :returns: Dict mapping source names to API keys.
    """
    environ = os.environ if environ is None else environ
    api_keys = {}
    for key, value in environ.items():
        if key.startswith("API_KEY_") and value:
            api_keys[key[len("API_KEY_"):].lower()] = value
    return api_keys


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class FeedPolicy:
    """Per-account validation and circuit breaker settings.

    Persisted with the account so readers apply the same rules as writers.

    :ivar max_age: Seconds after which a price is stale.
    :ivar confidence_floor: Minimum confidence for a healthy feed.
    :ivar minimum_sources: Sources an update command must name.
    :ivar error_threshold: Errors within the window that open the breaker.
    :ivar error_window: Rolling error window in seconds.
    :ivar recovery_time: Seconds after the last error before the breaker closes.
    """

    max_age: float = 300.0
    confidence_floor: float = 0.7
    minimum_sources: int = 1
    error_threshold: int = 5
    error_window: float = 60.0
    recovery_time: float = 300.0

    def __post_init__(self) -> None:
        if self.max_age <= 0:
            raise ValueError("max_age must be positive")
        if not 0.0 <= self.confidence_floor <= 1.0:
            raise ValueError("confidence_floor must be within [0.0, 1.0]")
        if not 0 <= self.minimum_sources <= 255:
            raise ValueError("minimum_sources must be between 0 and 255")
        if self.error_threshold < 1:
            raise ValueError("error_threshold must be at least 1")
        if self.error_window <= 0 or self.recovery_time < 0:
            raise ValueError("error_window must be positive and recovery_time non-negative")


@dataclass(frozen=True)
class AggregatorConfig:
    """Settings for combining source quotes.

    Confidence for two or more surviving sources is
    ``clamp(1 - confidence_k * MARD, confidence_floor, confidence_ceiling)``.

    :ivar min_sources: Minimum sources required for valid aggregation.
    :ivar max_age: Seconds after which a quote is discarded.
    :ivar outlier_filter: Whether to discard z-score outliers.
    :ivar outlier_z_threshold: Z-score above which a quote is an outlier.
    :ivar source_weights: Per-source weights for the average (default 1.0).
    :ivar drift_limit_percent: Max change vs previous price, None disables.
    """

    min_sources: int = 2
    max_age: float = 60.0
    outlier_filter: bool = True
    outlier_z_threshold: float = 2.0
    source_weights: Mapping[str, float] = field(default_factory=dict)
    drift_limit_percent: float | None = None
    confidence_k: float = 10.0
    confidence_floor: float = 0.1
    confidence_ceiling: float = 0.95
    single_source_confidence: float = 0.5

    def __post_init__(self) -> None:
        """Freeze the weights mapping and validate values.

        :raises ValueError: If parameters are invalid.
        """
        object.__setattr__(
            self, "source_weights", MappingProxyType(dict(self.source_weights))
        )
        if self.min_sources < 1:
            raise ValueError("min_sources must be at least 1")
        if self.max_age <= 0:
            raise ValueError("max_age must be positive")
        if self.outlier_z_threshold <= 0:
            raise ValueError("outlier_z_threshold must be positive")
        if self.drift_limit_percent is not None and self.drift_limit_percent <= 0:
            raise ValueError("drift_limit_percent must be positive if specified")
        if any(w <= 0 for w in self.source_weights.values()):
            raise ValueError("source weights must be positive")
        if not 0.0 <= self.confidence_floor <= self.confidence_ceiling <= 1.0:
            raise ValueError("confidence bounds must satisfy 0 <= floor <= ceiling <= 1")
        if not 0.0 <= self.single_source_confidence <= 1.0:
            raise ValueError("single_source_confidence must be within [0.0, 1.0]")

    def weight_for(self, source: str) -> float:
        """Weight of a source in the average."""
        return self.source_weights.get(source, 1.0)


@dataclass(frozen=True)
class SchedulerConfig:
    """Settings for the keeper decision loop.

    :ivar update_interval: Seconds between ticks.
    :ivar price_threshold: Relative move (0.01 = 1%) that warrants an update.
    :ivar fetch_timeout: Per-source fetch timeout in seconds.
    :ivar min_submission_interval: Seconds between submissions in one cycle.
    :ivar base_backoff: First transport-failure backoff in seconds.
    :ivar max_backoff: Cap for the exponential backoff.
    """

    update_interval: float = 60.0
    price_threshold: float = 0.01
    fetch_timeout: float = 10.0
    min_submission_interval: float = 1.0
    base_backoff: float = 5.0
    max_backoff: float = 300.0

    def __post_init__(self) -> None:
        if self.update_interval <= 0:
            raise ValueError("update_interval must be positive")
        if self.price_threshold < 0:
            raise ValueError("price_threshold must not be negative")
        if self.fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be positive")
        if self.min_submission_interval < 0:
            raise ValueError("min_submission_interval must not be negative")


@dataclass(frozen=True)
class KeeperConfig:
    """Top-level keeper configuration.

    :ivar pairs: Trading pairs to keep (e.g., "sol/usdc").
    :ivar sources: Market data source names.
    :ivar api_keys: Source name to API key.
    :ivar ledger_url: Remote ledger gateway URL; None runs a local ledger.
    :ivar program_id: Address of the controlling program.
    :ivar history_capacity: History slots allocated per feed account.
    """

    pairs: tuple[str, ...] = ("sol/usdc",)
    sources: tuple[str, ...] = ("okx", "binance", "coingecko")
    api_keys: Mapping[str, str] = field(default_factory=dict)
    ledger_url: str | None = None
    program_id: str = DEFAULT_PROGRAM_ID
    history_capacity: int = 1000
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    policy: FeedPolicy = field(default_factory=FeedPolicy)

    def __post_init__(self) -> None:
        object.__setattr__(self, "pairs", tuple(self.pairs))
        object.__setattr__(self, "sources", tuple(self.sources))
        object.__setattr__(self, "api_keys", MappingProxyType(dict(self.api_keys)))
        if not self.pairs:
            raise ValueError("At least one trading pair must be specified")
        if not self.sources:
            raise ValueError("At least one source must be specified")
        if self.history_capacity < 1:
            raise ValueError("history_capacity must be at least 1")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> KeeperConfig:
        """Build configuration from environment variables.

        Recognized: PAIRS, SOURCES, MIN_SOURCES, MAX_QUOTE_AGE, OUTLIER_Z,
        DRIFT_LIMIT_PERCENT, PRICE_THRESHOLD_PERCENT, UPDATE_INTERVAL,
        FETCH_TIMEOUT, LEDGER_URL, PROGRAM_ID, HISTORY_CAPACITY, API_KEYS
        and API_KEY_<SOURCE>.

        :param environ: Environment mapping (defaults to os.environ).
        :returns: KeeperConfig instance.
        :raises ValueError: If a value is invalid.
        """
        env = os.environ if environ is None else environ

        drift = float(env.get("DRIFT_LIMIT_PERCENT") or "0")
        aggregator = AggregatorConfig(
            min_sources=int(env.get("MIN_SOURCES") or "2"),
            max_age=float(env.get("MAX_QUOTE_AGE") or "60"),
            outlier_z_threshold=float(env.get("OUTLIER_Z") or "2.0"),
            drift_limit_percent=drift if drift > 0 else None,
        )
        scheduler = SchedulerConfig(
            update_interval=float(env.get("UPDATE_INTERVAL") or "60"),
            price_threshold=float(env.get("PRICE_THRESHOLD_PERCENT") or "1.0") / 100,
            fetch_timeout=float(env.get("FETCH_TIMEOUT") or "10"),
        )

        api_keys = parse_env_api_keys(env)
        api_keys.update(parse_api_keys(env.get("API_KEYS")))

        return cls(
            pairs=_split_csv(env.get("PAIRS") or "sol/usdc"),
            sources=tuple(
                s.lower() for s in _split_csv(env.get("SOURCES") or "okx,binance,coingecko")
            ),
            api_keys=api_keys,
            ledger_url=env.get("LEDGER_URL") or None,
            program_id=env.get("PROGRAM_ID") or DEFAULT_PROGRAM_ID,
            history_capacity=int(env.get("HISTORY_CAPACITY") or "1000"),
            aggregator=aggregator,
            scheduler=scheduler,
        )
