"""
Retry policy for step dispatch.

RetryPolicy encapsulates how often a failed or timed-out step is re-invoked
and how long the engine waits between attempts, so the control loop does not
need to know where the numbers came from (step declaration or engine
defaults).

Safe default: no automatic retries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from pysimpleflow.config import EngineConfig
    from pysimpleflow.models.definition import StepDefinition


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for step retry behavior.

    Examples:
        # Fixed delay, as declared on a step
        policy = RetryPolicy(max_retries=2, delay_ms=10)

        # Exponential backoff capped at 5 seconds
        policy = RetryPolicy(
            max_retries=5,
            delay_ms=100,
            backoff_multiplier=2.0,
            max_delay_ms=5000,
        )
    """

    max_retries: int
    """Number of re-invocations after the first attempt.

    max_retries = 2 means at most three invocations in total.
    """

    delay_ms: int = 0
    """Delay before the first retry in milliseconds."""

    backoff_multiplier: float = 1.0
    """Multiplier applied per retry.

    Each retry delay is calculated as:
    min(delay_ms * backoff_multiplier^(retry-1), max_delay_ms)

    The default of 1.0 keeps the delay fixed.
    """

    max_delay_ms: int | None = None
    """Upper bound for a single delay, or None for no cap."""

    if TYPE_CHECKING:
        NONE: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {self.delay_ms}")
        if self.backoff_multiplier < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}")

    @classmethod
    def for_step(cls, step: StepDefinition, config: EngineConfig) -> RetryPolicy:
        """
        Build the effective policy for a step.

        Values declared on the step win; anything left unset falls back to
        the engine configuration. The engine only applies it to leaf steps:
        composite steps (branches, parallel groups, loops, sub-flows) run
        once, and their nested steps retry under their own policies.

        Args:
            step: Step being dispatched
            config: Engine configuration providing defaults

        Returns:
            RetryPolicy for this step
        """
        max_retries = step.max_retries
        if max_retries is None:
            max_retries = config.default_max_retries
        delay_ms = step.retry_delay_ms
        if delay_ms is None:
            delay_ms = config.default_retry_delay_ms
        return cls(
            max_retries=max_retries,
            delay_ms=delay_ms,
            backoff_multiplier=config.retry_backoff_multiplier,
            max_delay_ms=config.max_retry_delay_ms,
        )

    @property
    def allows_retry(self) -> bool:
        return self.max_retries > 0

    def delay_for_attempt(self, retry: int) -> int | None:
        """
        Calculate the delay before a retry.

        Args:
            retry: The retry number (1-indexed; 1 is the first re-invocation)

        Returns:
            Delay in milliseconds, or None if the retry budget is exhausted.

        Example:
            policy = RetryPolicy(max_retries=2, delay_ms=100, backoff_multiplier=2.0)
            policy.delay_for_attempt(1)  # 100
            policy.delay_for_attempt(2)  # 200
            policy.delay_for_attempt(3)  # None
        """
        if retry < 1 or retry > self.max_retries:
            return None

        delay = self.delay_ms * self.backoff_multiplier ** (retry - 1)
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return int(delay)

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_retries={self.max_retries}, delay_ms={self.delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier}, max_delay_ms={self.max_delay_ms})"
        )


RetryPolicy.NONE = RetryPolicy(max_retries=0)
