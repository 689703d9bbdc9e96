"""Immutable results of step invocations and flow executions.

StepResult is produced once per dispatched (or skipped) step; FlowResult is
produced exactly once per execution and aggregates the step results in the
order they were recorded.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pysimpleflow.models.errors import ErrorKind, StepError
from pysimpleflow.models.status import FlowStatus, StepStatus

if TYPE_CHECKING:
    from pysimpleflow.models.definition import StepDefinition


def _now() -> datetime:
    return datetime.now(UTC)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class StepResult:
    """
    Outcome of one step.

    Attributes:
        step_id: Step identifier
        step_name: Step display name
        status: Terminal status of the step
        started_at: When dispatch (or the skip decision) started
        ended_at: When the result was produced
        output: Data the handler produced
        error: Error captured from the last attempt, if any
        retry_count: Retries performed after the first attempt
        executor_name: Handler family that ran the step
        metadata: Extra facts, e.g. "skip_reason"
    """

    step_id: str
    step_name: str
    status: StepStatus
    started_at: datetime
    ended_at: datetime
    output: Mapping[str, Any] = field(default_factory=dict)
    error: StepError | None = None
    retry_count: int = 0
    executor_name: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "output", MappingProxyType(dict(self.output)))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    # =========================================================================
    # Factories
    # =========================================================================

    @classmethod
    def success(
        cls,
        step: StepDefinition,
        started_at: datetime,
        output: Mapping[str, Any] | None = None,
        *,
        executor_name: str | None = None,
    ) -> StepResult:
        return cls(
            step_id=step.id,
            step_name=step.name,
            status=StepStatus.SUCCESS,
            started_at=started_at,
            ended_at=_now(),
            output=output or {},
            executor_name=executor_name,
        )

    @classmethod
    def failure(
        cls,
        step: StepDefinition,
        started_at: datetime,
        error: StepError,
        *,
        output: Mapping[str, Any] | None = None,
        executor_name: str | None = None,
    ) -> StepResult:
        status = StepStatus.TIMEOUT if error.kind is ErrorKind.TIMEOUT else StepStatus.FAILED
        return cls(
            step_id=step.id,
            step_name=step.name,
            status=status,
            started_at=started_at,
            ended_at=_now(),
            output=output or {},
            error=error,
            executor_name=executor_name,
        )

    @classmethod
    def skipped(cls, step: StepDefinition, reason: str) -> StepResult:
        now = _now()
        return cls(
            step_id=step.id,
            step_name=step.name,
            status=StepStatus.SKIPPED,
            started_at=now,
            ended_at=now,
            metadata={"skip_reason": reason},
        )

    @classmethod
    def cancelled(
        cls, step: StepDefinition, started_at: datetime | None = None, reason: str = "cancelled"
    ) -> StepResult:
        now = _now()
        return cls(
            step_id=step.id,
            step_name=step.name,
            status=StepStatus.CANCELLED,
            started_at=started_at or now,
            ended_at=now,
            error=StepError(kind=ErrorKind.CANCELLATION, message=reason),
        )

    # =========================================================================
    # Derived values
    # =========================================================================

    @property
    def is_skipped(self) -> bool:
        return self.status is StepStatus.SKIPPED

    @property
    def is_success(self) -> bool:
        return self.status is StepStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        """FAILED or TIMEOUT."""
        return self.status.is_failure

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def duration_ms(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    def with_retry_count(self, retry_count: int) -> StepResult:
        return replace(self, retry_count=retry_count)

    def with_metadata(self, **values: Any) -> StepResult:
        return replace(self, metadata={**self.metadata, **values})

    # =========================================================================
    # Serialization (used by persistent stores)
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_name": self.step_name,
            "status": self.status.value,
            "started_at": _to_iso(self.started_at),
            "ended_at": _to_iso(self.ended_at),
            "output": dict(self.output),
            "error": self.error.to_dict() if self.error else None,
            "retry_count": self.retry_count,
            "executor_name": self.executor_name,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StepResult:
        return cls(
            step_id=data["step_id"],
            step_name=data["step_name"],
            status=StepStatus(data["status"]),
            started_at=_from_iso(data["started_at"]),
            ended_at=_from_iso(data["ended_at"]),
            output=data.get("output") or {},
            error=StepError.from_dict(data["error"]) if data.get("error") else None,
            retry_count=data.get("retry_count", 0),
            executor_name=data.get("executor_name"),
            metadata=data.get("metadata") or {},
        )

    def __repr__(self) -> str:
        return (
            f"StepResult(step_id={self.step_id!r}, status={self.status}, "
            f"retry_count={self.retry_count})"
        )


@dataclass(frozen=True)
class FlowResult:
    """
    Outcome of one flow execution.

    Attributes:
        execution_id: Execution identifier
        flow_id: Flow identifier
        flow_name: Flow display name
        status: Overall status
        started_at: Execution start
        ended_at: Execution end
        step_results: step id → StepResult, in recording order
        output: Final variables of the execution context
        error: Error of the step that aborted the flow, if any
    """

    execution_id: str
    flow_id: str
    flow_name: str
    status: FlowStatus
    started_at: datetime
    ended_at: datetime
    step_results: Mapping[str, StepResult] = field(default_factory=dict)
    output: Mapping[str, Any] = field(default_factory=dict)
    error: StepError | None = None

    def __post_init__(self):
        object.__setattr__(self, "step_results", MappingProxyType(dict(self.step_results)))
        object.__setattr__(self, "output", MappingProxyType(dict(self.output)))

    @property
    def is_success(self) -> bool:
        return self.status.is_success

    @property
    def duration_ms(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    @property
    def error_message(self) -> str | None:
        return self.error.message if self.error else None

    @property
    def total_steps(self) -> int:
        return len(self.step_results)

    @property
    def successful_steps(self) -> int:
        return sum(1 for r in self.step_results.values() if r.status is StepStatus.SUCCESS)

    @property
    def failed_steps(self) -> int:
        return sum(1 for r in self.step_results.values() if r.is_failed)

    @property
    def skipped_steps(self) -> int:
        return sum(1 for r in self.step_results.values() if r.status is StepStatus.SKIPPED)

    @property
    def success_rate(self) -> float:
        """Fraction of recorded steps that succeeded (0.0 when none ran)."""
        if not self.step_results:
            return 0.0
        return self.successful_steps / self.total_steps

    @property
    def executed_step_ids(self) -> list[str]:
        """Ids of steps that were dispatched (skipped steps excluded)."""
        return [sid for sid, r in self.step_results.items() if r.status is not StepStatus.SKIPPED]

    def get_step_result(self, step_id: str) -> StepResult | None:
        return self.step_results.get(step_id)

    def failed_step_results(self) -> list[StepResult]:
        return [r for r in self.step_results.values() if r.is_failed]

    def successful_step_results(self) -> list[StepResult]:
        return [r for r in self.step_results.values() if r.is_success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "flow_id": self.flow_id,
            "flow_name": self.flow_name,
            "status": self.status.value,
            "started_at": _to_iso(self.started_at),
            "ended_at": _to_iso(self.ended_at),
            "step_results": [r.to_dict() for r in self.step_results.values()],
            "output": dict(self.output),
            "error": self.error.to_dict() if self.error else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FlowResult:
        results = [StepResult.from_dict(r) for r in data.get("step_results", ())]
        return cls(
            execution_id=data["execution_id"],
            flow_id=data["flow_id"],
            flow_name=data.get("flow_name", data["flow_id"]),
            status=FlowStatus(data["status"]),
            started_at=_from_iso(data["started_at"]),
            ended_at=_from_iso(data["ended_at"]),
            step_results={r.step_id: r for r in results},
            output=data.get("output") or {},
            error=StepError.from_dict(data["error"]) if data.get("error") else None,
        )

    def __repr__(self) -> str:
        return (
            f"FlowResult(execution_id={self.execution_id!r}, flow_id={self.flow_id!r}, "
            f"status={self.status}, steps={self.total_steps})"
        )
