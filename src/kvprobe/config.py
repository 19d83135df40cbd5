"""TOML-based configuration for kvprobe runs.

Provides ``load_config`` / ``discover_config`` for loading ``kvprobe.toml``
and a small hierarchy of frozen dataclasses for the store endpoint, the
cluster platform and the scenario timings.  Command-line flags are applied on
top with ``HarnessConfig.with_overrides``.

Example ``kvprobe.toml``::

    concurrent_clients = 3
    operations_per_client = 5
    partition_count = 3

    [store]
    url = "http://kv-gateway:8080"
    map_name = "precision-test-map"

    [platform]
    namespace = "kube-system"
    store_name = "consensus-store"

    [scenario]
    post_recovery_wait = 1.0
"""

from __future__ import annotations

import dataclasses
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kvprobe.errors import ConfigurationError

__all__ = [
    "CONFIG_FILENAME",
    "HarnessConfig",
    "PlatformConfig",
    "ScenarioConfig",
    "StoreConfig",
    "discover_config",
    "load_config",
]

CONFIG_FILENAME = "kvprobe.toml"


@dataclass(frozen=True)
class StoreConfig:
    """Where the store under test is reached.

    Parameters
    ----------
    url : str
        Base URL of the store's HTTP gateway.
    map_name : str
        Map primitive used by failover trials.
    concurrency_map_name : str
        Map primitive used by the concurrent batches.
    request_timeout : float
        Transport-level timeout of each HTTP request, in seconds.
    """

    url: str = "http://localhost:8080"
    map_name: str = "precision-test-map"
    concurrency_map_name: str = "concurrency-test-map"
    request_timeout: float = 10.0


@dataclass(frozen=True)
class PlatformConfig:
    """Kubernetes access used for leadership queries and pod deletion.

    ``api_url = None`` means in-cluster configuration from the pod's service
    account.
    """

    api_url: str | None = None
    namespace: str = "kube-system"
    store_name: str = "consensus-store"
    token: str | None = None
    verify: bool = True
    replica_offset: int = 1
    group_index_base: int = 1
    request_timeout: float = 5.0


@dataclass(frozen=True)
class ScenarioConfig:
    """Timings of the failover trials, in seconds."""

    leader_ready_timeout: float = 45.0
    settle_interval: float = 2.0
    immediate_read_timeout: float = 5.0
    verification_read_timeout: float = 10.0
    post_recovery_wait: float = 1.0
    between_trials: float = 2.0
    between_modes: float = 3.0
    between_scenarios: float = 5.0
    write_interval: float = 1.0
    read_interval: float = 2.0


@dataclass(frozen=True)
class HarnessConfig:
    """Top-level run configuration.

    Parameters
    ----------
    concurrent_clients : int
        Clients per concurrent batch.
    operations_per_client : int
        Sequential writes per client.
    test_duration_seconds : float
        Length of a sequence-stream run.
    failure_delay_millis : int | None
        When set, failover runs use this single delay for every scenario.
    partition_count : int
        Number of store partitions.
    poll_interval_millis : int
        Leader tracker and recovery poll cadence.
    recovery_timeout_seconds : float
        Deadline for a new stable leader after termination.
    operation_timeout_seconds : float
        Bound on every store call made by the workload driver.
    report_dir : str
        Directory where JSON reports are written.
    log_dir : str
        Directory where DEBUG log files are written.

    Examples
    --------
    >>> HarnessConfig().poll_interval
    1.0
    """

    concurrent_clients: int = 3
    operations_per_client: int = 5
    test_duration_seconds: float = 300.0
    failure_delay_millis: int | None = None
    partition_count: int = 3
    poll_interval_millis: int = 1000
    recovery_timeout_seconds: float = 60.0
    operation_timeout_seconds: float = 10.0
    report_dir: str = "."
    log_dir: str = "."
    store: StoreConfig = field(default_factory=StoreConfig)
    platform: PlatformConfig = field(default_factory=PlatformConfig)
    scenario: ScenarioConfig = field(default_factory=ScenarioConfig)

    def __post_init__(self) -> None:
        positive = {
            "concurrent_clients": self.concurrent_clients,
            "operations_per_client": self.operations_per_client,
            "partition_count": self.partition_count,
            "poll_interval_millis": self.poll_interval_millis,
            "recovery_timeout_seconds": self.recovery_timeout_seconds,
            "operation_timeout_seconds": self.operation_timeout_seconds,
            "test_duration_seconds": self.test_duration_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                msg = f"{name} must be positive, got {value!r}"
                raise ConfigurationError(msg)
        if self.failure_delay_millis is not None and self.failure_delay_millis < 0:
            msg = f"failure_delay_millis must be >= 0, got {self.failure_delay_millis!r}"
            raise ConfigurationError(msg)

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_millis / 1000.0

    def with_overrides(self, **overrides: Any) -> HarnessConfig:
        """Return a copy with every non-``None`` override applied.

        Dotted names (``"store.url"``) address nested sections.
        """
        top: dict[str, Any] = {}
        nested: dict[str, dict[str, Any]] = {}
        for name, value in overrides.items():
            if value is None:
                continue
            section, _, attr = name.partition(".")
            if attr:
                nested.setdefault(section, {})[attr] = value
            else:
                top[name] = value
        for section, values in nested.items():
            top[section] = _build(type(getattr(self, section)), {
                **dataclasses.asdict(getattr(self, section)),
                **values,
            })
        return _build(HarnessConfig, {**_shallow(self), **top})


def _shallow(config: HarnessConfig) -> dict[str, Any]:
    return {f.name: getattr(config, f.name) for f in dataclasses.fields(config)}


def _build[T](cls: type[T], values: dict[str, Any]) -> T:
    try:
        return cls(**values)
    except TypeError as exc:
        msg = f"invalid {cls.__name__} options: {exc}"
        raise ConfigurationError(msg) from exc


def discover_config(start: Path | None = None) -> Path | None:
    """Walk up from *start* (default: cwd) looking for ``kvprobe.toml``.

    Returns
    -------
    Path | None
        Path to the discovered config file, or ``None`` if not found.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(path: Path | None = None) -> HarnessConfig:
    """Load a ``HarnessConfig`` from a TOML file.

    If *path* is ``None``, auto-discovers ``kvprobe.toml`` by walking up from
    the current working directory.  Returns the default config if no file is
    found.

    Raises
    ------
    ConfigurationError
        If an explicit *path* does not exist, the file is not valid TOML, or
        it holds unknown or invalid options.
    """
    if path is None:
        discovered = discover_config()
        if discovered is None:
            return HarnessConfig()
        path = discovered

    if not path.exists():
        msg = f"Config file not found: {path}"
        raise ConfigurationError(msg)

    try:
        with path.open("rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        msg = f"Invalid TOML in {path}: {exc}"
        raise ConfigurationError(msg) from exc

    store = _build(StoreConfig, raw.pop("store", {}))
    platform = _build(PlatformConfig, raw.pop("platform", {}))
    scenario = _build(ScenarioConfig, raw.pop("scenario", {}))
    return _build(
        HarnessConfig,
        {**raw, "store": store, "platform": platform, "scenario": scenario},
    )
