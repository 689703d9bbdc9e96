"""
Executor module - runtime engine for flows.

This module contains the execution components:
- binding: argument binding for plain handler callables
- handlers: step executors, one per handler kind and composite step type
- dispatcher: step-to-executor resolution
- engine: FlowExecution, the per-execution control loop
- manager: FlowEngine, registration, admission and control
- listeners: lifecycle notifications
"""

from pysimpleflow.executor.binding import bind_arguments, coerce_value
from pysimpleflow.executor.dispatcher import ExecutorHandle, StepDispatcher
from pysimpleflow.executor.engine import FlowExecution
from pysimpleflow.executor.handlers import (
    BeanStepExecutor,
    BranchRun,
    ConditionalStepExecutor,
    ConditionNodeStepExecutor,
    ExecutableNodeStepExecutor,
    LoopStepExecutor,
    ParallelStepExecutor,
    StepExecutor,
    StepRuntime,
    SubFlowStepExecutor,
    default_executors,
)
from pysimpleflow.executor.listeners import FlowListener, ListenerGroup
from pysimpleflow.executor.manager import ExecutionHandle, FlowEngine

__all__ = [
    # Engine
    "FlowEngine",
    "FlowExecution",
    "ExecutionHandle",
    # Dispatch
    "StepDispatcher",
    "ExecutorHandle",
    "bind_arguments",
    "coerce_value",
    # Executors
    "StepExecutor",
    "StepRuntime",
    "BranchRun",
    "BeanStepExecutor",
    "ExecutableNodeStepExecutor",
    "ConditionNodeStepExecutor",
    "ConditionalStepExecutor",
    "ParallelStepExecutor",
    "LoopStepExecutor",
    "SubFlowStepExecutor",
    "default_executors",
    # Listeners
    "FlowListener",
    "ListenerGroup",
]
