"""Data models for flow definitions and execution results.

Design: Dependency-Free Models
These types do not import core, executor or storage modules at import
time, which keeps the layering acyclic.
"""

from pysimpleflow.models.definition import (
    BranchCase,
    BranchConfig,
    FlowDefinition,
    StepDefinition,
)
from pysimpleflow.models.errors import ErrorKind, FlowError, StepError
from pysimpleflow.models.result import FlowResult, StepResult
from pysimpleflow.models.retry import RetryPolicy
from pysimpleflow.models.status import ExecutionStatus, FlowStatus, StepStatus, StepType

__all__ = [
    "BranchCase",
    "BranchConfig",
    "ErrorKind",
    "ExecutionStatus",
    "FlowDefinition",
    "FlowError",
    "FlowResult",
    "FlowStatus",
    "RetryPolicy",
    "StepDefinition",
    "StepError",
    "StepResult",
    "StepStatus",
    "StepType",
]
