"""Status and type enumerations for flow definitions and executions.

Defines the step type tags used by the dispatcher, the lifecycle states of
individual step results and whole flow results, and the coarse status the
engine reports for a tracked execution.
"""

from enum import Enum


class StepType(Enum):
    """Declared kind of a step.

    The type selects the default handler family when a step binds no
    explicit executor, node or bean.
    """

    SIMPLE = "SIMPLE"
    """Plain unit of work bound to a bean or node."""

    SERVICE = "SERVICE"
    """Call into a registered service bean."""

    CONDITIONAL = "CONDITIONAL"
    """Branch on a condition into nested step lists."""

    SCRIPT_CONDITIONAL = "SCRIPT_CONDITIONAL"
    """Branch on a script expression taken from the step parameters."""

    PARALLEL = "PARALLEL"
    """Run nested steps concurrently and join."""

    LOOP = "LOOP"
    """Run nested steps once per item of a collection."""

    SUB_FLOW = "SUB_FLOW"
    """Run another registered flow in an isolated child context."""

    @property
    def is_conditional(self) -> bool:
        """Check if the step's condition selects a branch instead of guarding it."""
        return self in (StepType.CONDITIONAL, StepType.SCRIPT_CONDITIONAL)

    @property
    def is_composite(self) -> bool:
        """Check if the step runs nested steps (or a whole sub-flow)."""
        return self in (
            StepType.CONDITIONAL,
            StepType.SCRIPT_CONDITIONAL,
            StepType.PARALLEL,
            StepType.LOOP,
            StepType.SUB_FLOW,
        )

    def __str__(self) -> str:
        return self.value


class StepStatus(Enum):
    """Outcome of a single step invocation.

    Lifecycle:
        RETRYING → SUCCESS/FAILED/TIMEOUT, or SKIPPED/CANCELLED directly
    """

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    RETRYING = "RETRYING"

    @property
    def is_failure(self) -> bool:
        """Check if this status counts as a failed attempt (eligible for retry)."""
        return self in (StepStatus.FAILED, StepStatus.TIMEOUT)

    @property
    def is_terminal(self) -> bool:
        """Check if this status ends the step."""
        return self is not StepStatus.RETRYING

    def __str__(self) -> str:
        return self.value


class FlowStatus(Enum):
    """Overall outcome of a flow execution.

    PARTIAL is part of the vocabulary shared with persisted history but is
    never produced by the engine itself.
    """

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    PARTIAL = "PARTIAL"

    @property
    def is_success(self) -> bool:
        return self is FlowStatus.SUCCESS

    def __str__(self) -> str:
        return self.value


class ExecutionStatus(Enum):
    """Status reported by the engine for an execution id.

    Lifecycle:
        RUNNING ⇄ PAUSED → SUCCESS/FAILED/CANCELLED

    Executions are only tracked while running, so a lookup after
    completion returns NOT_FOUND rather than a cached terminal state.
    """

    NOT_FOUND = "NOT_FOUND"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @classmethod
    def from_flow_status(cls, status: FlowStatus) -> "ExecutionStatus":
        """Map a terminal flow status onto the execution vocabulary."""
        if status is FlowStatus.SUCCESS:
            return cls.SUCCESS
        if status is FlowStatus.CANCELLED:
            return cls.CANCELLED
        return cls.FAILED

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)

    def __str__(self) -> str:
        return self.value
