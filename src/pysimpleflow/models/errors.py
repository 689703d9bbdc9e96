"""Error taxonomy for flow registration and execution.

A single exception type carries a kind tag plus the identifying context of
the failure as named fields. Step-level failures never escape the control
loop as exceptions; they are captured as a StepError value on the step's
result instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(Enum):
    """Kind of failure, independent of where it was raised."""

    DEFINITION = "DEFINITION"
    """Invalid flow shape, dependency cycle or empty step list."""

    DISPATCH = "DISPATCH"
    """No handler could be resolved for a step."""

    EXECUTION = "EXECUTION"
    """A handler raised or reported an error."""

    TIMEOUT = "TIMEOUT"
    """A handler exceeded its time bound."""

    CANCELLATION = "CANCELLATION"
    """A cooperative stop was observed."""

    ENGINE = "ENGINE"
    """The engine refused the request (shut down, queue full, unknown flow)."""

    def __str__(self) -> str:
        return self.value


class FlowError(Exception):
    """Flow operation failed.

    Attributes:
        kind: Failure kind
        message: Human readable description
        flow_id: Flow the failure belongs to, if known
        execution_id: Execution the failure belongs to, if known
        step_id: Step the failure belongs to, if known
        retry_count: Retries performed before the failure, if relevant
        cause: Underlying exception, if any
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        flow_id: str | None = None,
        execution_id: str | None = None,
        step_id: str | None = None,
        retry_count: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.flow_id = flow_id
        self.execution_id = execution_id
        self.step_id = step_id
        self.retry_count = retry_count
        self.cause = cause

    @classmethod
    def definition(cls, message: str, *, flow_id: str | None = None, **kwargs) -> FlowError:
        return cls(ErrorKind.DEFINITION, message, flow_id=flow_id, **kwargs)

    @classmethod
    def dispatch(cls, message: str, *, step_id: str | None = None, **kwargs) -> FlowError:
        return cls(ErrorKind.DISPATCH, message, step_id=step_id, **kwargs)

    @classmethod
    def execution(cls, message: str, *, step_id: str | None = None, **kwargs) -> FlowError:
        return cls(ErrorKind.EXECUTION, message, step_id=step_id, **kwargs)

    @classmethod
    def timeout(cls, message: str, *, step_id: str | None = None, **kwargs) -> FlowError:
        return cls(ErrorKind.TIMEOUT, message, step_id=step_id, **kwargs)

    @classmethod
    def cancellation(cls, message: str, **kwargs) -> FlowError:
        return cls(ErrorKind.CANCELLATION, message, **kwargs)

    @classmethod
    def engine(cls, message: str, **kwargs) -> FlowError:
        return cls(ErrorKind.ENGINE, message, **kwargs)

    def __str__(self) -> str:
        context = [
            f"{name}={value}"
            for name, value in (
                ("flow", self.flow_id),
                ("execution", self.execution_id),
                ("step", self.step_id),
                ("retries", self.retry_count),
            )
            if value is not None
        ]
        if not context:
            return f"[{self.kind}] {self.message}"
        return f"[{self.kind}] {self.message} ({', '.join(context)})"

    def __repr__(self) -> str:
        return f"FlowError(kind={self.kind.name}, message={self.message!r})"


@dataclass(frozen=True)
class StepError:
    """Error recorded on a StepResult.

    Attributes:
        kind: Failure kind
        message: Human readable description
        exception_type: Qualified name of the exception that caused it, if any
    """

    kind: ErrorKind
    message: str
    exception_type: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, kind: ErrorKind | None = None) -> StepError:
        """Capture an exception raised by a handler.

        A FlowError keeps its own kind unless one is given explicitly.
        """
        if isinstance(exc, FlowError):
            return cls(kind=kind or exc.kind, message=exc.message, exception_type="FlowError")
        message = str(exc) or type(exc).__name__
        exc_type = type(exc)
        qualified = (
            exc_type.__qualname__
            if exc_type.__module__ == "builtins"
            else f"{exc_type.__module__}.{exc_type.__qualname__}"
        )
        return cls(kind=kind or ErrorKind.EXECUTION, message=message, exception_type=qualified)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "exception_type": self.exception_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> StepError:
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data["message"],
            exception_type=data.get("exception_type"),
        )

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"
