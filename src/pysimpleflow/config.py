"""Engine configuration.

EngineConfig holds the defaults applied to steps that leave a value unset
and the sizing of the engine's worker pool and admission control. It can be
built directly or from the mapping layout used by configuration files:

```yaml
execution:
  default-timeout-ms: 30000
  default-retry-count: 0
  default-retry-delay-ms: 1000
  parallel-enabled: false
  max-parallelism: 4
thread-pool:
  core-size: 4
  queue-capacity: 100
  thread-name-prefix: simple-flow-
```
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """
    Configuration for FlowEngine.

    Attributes:
        default_timeout_ms: Per-attempt bound for steps without timeout_ms (None: unbounded)
        default_max_retries: Retries for steps without max_retries
        default_retry_delay_ms: Delay for steps without retry_delay_ms
        retry_backoff_multiplier: Growth of the delay per retry (1.0: fixed delay)
        max_retry_delay_ms: Cap for a single retry delay (None: no cap)
        parallel_enabled: Run independent steps of every flow concurrently
        max_parallelism: Concurrent steps within one execution
        max_concurrent_executions: Async executions running at once
        queue_capacity: Async executions allowed to wait for a slot
        worker_threads: Size of the default pool for blocking handlers
        thread_name_prefix: Name prefix of worker threads
    """

    default_timeout_ms: int | None = 30_000
    default_max_retries: int = 0
    default_retry_delay_ms: int = 1_000
    retry_backoff_multiplier: float = 1.0
    max_retry_delay_ms: int | None = None
    parallel_enabled: bool = False
    max_parallelism: int = 4
    max_concurrent_executions: int = 8
    queue_capacity: int = 100
    worker_threads: int = 4
    thread_name_prefix: str = "simple-flow-"

    def __post_init__(self):
        for name in ("max_parallelism", "max_concurrent_executions", "worker_threads"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.queue_capacity < 0:
            raise ValueError(f"queue_capacity must be >= 0, got {self.queue_capacity}")

    def with_overrides(self, **changes: Any) -> "EngineConfig":
        return replace(self, **changes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "EngineConfig":
        """
        Build a config from "execution" and "thread-pool" sections.

        Unknown keys are ignored. Values of the wrong type are skipped with a
        warning and the default is kept.
        """
        values: dict[str, Any] = {}
        if not data:
            return cls()

        execution = data.get("execution") or {}
        pool = data.get("thread-pool") or data.get("thread_pool") or {}

        _read(values, execution, "default-timeout-ms", "default_timeout_ms", int)
        _read(values, execution, "default-retry-count", "default_max_retries", int)
        _read(values, execution, "default-retry-delay-ms", "default_retry_delay_ms", int)
        _read(values, execution, "retry-backoff-multiplier", "retry_backoff_multiplier", float)
        _read(values, execution, "max-retry-delay-ms", "max_retry_delay_ms", int)
        _read(values, execution, "parallel-enabled", "parallel_enabled", bool)
        _read(values, execution, "max-parallelism", "max_parallelism", int)
        _read(values, execution, "max-concurrent-executions", "max_concurrent_executions", int)
        _read(values, pool, "core-size", "worker_threads", int)
        _read(values, pool, "queue-capacity", "queue_capacity", int)
        _read(values, pool, "thread-name-prefix", "thread_name_prefix", str)

        if "max-size" in pool and "max_concurrent_executions" not in values:
            _read(values, pool, "max-size", "max_concurrent_executions", int)

        config = cls(**values)
        logger.debug(f"Loaded engine configuration: {config}")
        return config


_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


def _read(
    target: dict[str, Any], section: Mapping[str, Any], key: str, field_name: str, kind: type
) -> None:
    if key not in section and field_name not in section:
        return
    raw = section.get(key, section.get(field_name))
    try:
        target[field_name] = _convert(raw, kind)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid value for '{key}': {raw!r}")


def _convert(raw: Any, kind: type) -> Any:
    if kind is bool:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(raw)
    if kind is int and isinstance(raw, bool):
        raise TypeError(raw)
    if kind is str:
        if not isinstance(raw, str):
            raise TypeError(raw)
        return raw
    return kind(raw)
