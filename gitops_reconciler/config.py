"""Configuration objects for gitops-reconciler.

Each component takes its own configuration dataclass. `ControllerConfig`
aggregates them and may be loaded from a YAML file, e.g.:

```yaml
source:
  pollInterval: 60
sync:
  workerPoolSize: 8
selfHeal:
  interval: 10
```
"""

from dataclasses import dataclass, field
from pathlib import Path

from mashumaro import DataClassDictMixin, field_options
from mashumaro.codecs.yaml import yaml_decode
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "BackoffConfig",
    "SourceControllerConfig",
    "ResolverConfig",
    "ObserverConfig",
    "SyncConfig",
    "SelfHealConfig",
    "HistoryConfig",
    "ControllerConfig",
]


@dataclass
class BackoffConfig(DataClassDictMixin):
    """Exponential backoff with jitter, in seconds."""

    base: float = 1.0
    factor: float = 2.0
    cap: float = 60.0
    jitter: float = 0.1
    """Fraction of the delay randomly added or removed."""


@dataclass
class SourceControllerConfig(DataClassDictMixin):
    """Configuration for the SourceController."""

    poll_interval: float = field(
        metadata=field_options(alias="pollInterval"), default=180.0
    )
    failure_threshold: int = field(
        metadata=field_options(alias="failureThreshold"), default=3
    )
    """Consecutive fetch failures before the error is surfaced on Applications."""

    backoff: BackoffConfig = field(
        default_factory=lambda: BackoffConfig(base=5.0, cap=300.0)
    )


@dataclass
class ResolverConfig(DataClassDictMixin):
    """Configuration for the Resolver."""

    max_depth: int = field(metadata=field_options(alias="maxDepth"), default=16)
    """Maximum depth of nested Application compositions."""


@dataclass
class ObserverConfig(DataClassDictMixin):
    """Configuration for the ClusterObserver."""

    max_staleness: float = field(
        metadata=field_options(alias="maxStaleness"), default=60.0
    )
    """Seconds a disconnected cache may be served before reads fail."""

    relist_backoff: BackoffConfig = field(
        metadata=field_options(alias="relistBackoff"),
        default_factory=lambda: BackoffConfig(base=0.5, cap=30.0),
    )


@dataclass
class SyncConfig(DataClassDictMixin):
    """Configuration for the SyncExecutor."""

    worker_pool_size: int = field(
        metadata=field_options(alias="workerPoolSize"), default=4
    )
    """Maximum number of Applications synchronizing at once."""

    action_concurrency: int = field(
        metadata=field_options(alias="actionConcurrency"), default=5
    )
    """Maximum concurrent actions within one wave."""

    max_conflict_retries: int = field(
        metadata=field_options(alias="maxConflictRetries"), default=3
    )
    hook_timeout: float = field(
        metadata=field_options(alias="hookTimeout"), default=300.0
    )
    operation_timeout: float = field(
        metadata=field_options(alias="operationTimeout"), default=300.0
    )
    rate_limit_qps: float = field(
        metadata=field_options(alias="rateLimitQps"), default=20.0
    )
    rate_limit_burst: int = field(
        metadata=field_options(alias="rateLimitBurst"), default=40
    )


@dataclass
class SelfHealConfig(DataClassDictMixin):
    """Configuration for the SelfHealLoop."""

    interval: float = 5.0


@dataclass
class HistoryConfig(DataClassDictMixin):
    """Configuration for the RevisionHistory."""

    limit: int = 10


@dataclass
class ControllerConfig(DataClassDictMixin):
    """Configuration for the ApplicationController and its components."""

    source: SourceControllerConfig = field(default_factory=SourceControllerConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    observer: ObserverConfig = field(default_factory=ObserverConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    self_heal: SelfHealConfig = field(
        metadata=field_options(alias="selfHeal"), default_factory=SelfHealConfig
    )
    history: HistoryConfig = field(default_factory=HistoryConfig)

    class Config(BaseConfig):
        serialize_by_alias = True

    @classmethod
    def from_yaml_file(cls, path: Path) -> "ControllerConfig":
        """Load the configuration from a YAML file."""
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as err:
            raise InputException(f"Unable to read config file {path}: {err}") from err
        if not content.strip():
            return cls()
        try:
            return yaml_decode(content, cls)
        except (ValueError, TypeError) as err:
            raise InputException(f"Invalid config file {path}: {err}") from err
