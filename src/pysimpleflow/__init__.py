"""
pysimpleflow: a flow execution engine for Python.

Flows are declared as steps plus dependencies, validated once at
registration (no unknown references, no cycles) and executed in a
deterministic topological order. Steps are bound to registered handlers:
plain objects ("beans"), executable nodes or condition nodes. Conditional,
parallel, loop and sub-flow steps compose other steps.

Design Pattern: Façade Pattern
This module re-exports the pieces most programs need, hiding the layout
of models, core, executor and storage.

Example:
    ```python
    import asyncio
    from pysimpleflow import FlowBuilder, FlowEngine, HandlerRegistry

    class Payments:
        def charge(self, amount: int) -> dict:
            return {"charged": amount}

    async def main():
        registry = HandlerRegistry().register_bean("payments", Payments())
        flow = (
            FlowBuilder("orders")
            .step("validate", bean="payments", method="charge")
            .step("notify", bean="payments", method="charge", depends_on=["validate"])
            .build()
        )

        async with FlowEngine(registry) as engine:
            engine.register(flow)
            result = await engine.execute("orders", {"amount": 10})
            print(result.status, result.output)

    asyncio.run(main())
    ```
"""

from pysimpleflow.config import EngineConfig
from pysimpleflow.core import (
    ConditionEvaluationError,
    ConditionEvaluator,
    ConditionNode,
    ExecutableNode,
    FlowBuilder,
    FlowContext,
    HandlerRegistry,
    SimpleEvalConditionEvaluator,
    StepHandler,
    resolve,
)
from pysimpleflow.executor import (
    ExecutionHandle,
    FlowEngine,
    FlowExecution,
    FlowListener,
    StepExecutor,
    StepRuntime,
)
from pysimpleflow.models import (
    BranchCase,
    BranchConfig,
    ErrorKind,
    ExecutionStatus,
    FlowDefinition,
    FlowError,
    FlowResult,
    FlowStatus,
    RetryPolicy,
    StepDefinition,
    StepError,
    StepResult,
    StepStatus,
    StepType,
)
from pysimpleflow.storage import (
    ExecutionStore,
    InMemoryExecutionStore,
    NullExecutionStore,
    SqliteExecutionStore,
    StorageError,
)

__version__ = "0.1.0"

__all__ = [
    # Definitions
    "FlowDefinition",
    "StepDefinition",
    "StepType",
    "BranchConfig",
    "BranchCase",
    "FlowBuilder",
    "resolve",
    # Handlers
    "HandlerRegistry",
    "StepHandler",
    "ExecutableNode",
    "ConditionNode",
    "StepExecutor",
    "StepRuntime",
    # Conditions
    "ConditionEvaluator",
    "SimpleEvalConditionEvaluator",
    "ConditionEvaluationError",
    # Execution
    "FlowEngine",
    "FlowExecution",
    "ExecutionHandle",
    "FlowContext",
    "FlowListener",
    "EngineConfig",
    "RetryPolicy",
    # Results
    "FlowResult",
    "StepResult",
    "FlowStatus",
    "StepStatus",
    "ExecutionStatus",
    # Errors
    "FlowError",
    "StepError",
    "ErrorKind",
    # Storage
    "ExecutionStore",
    "InMemoryExecutionStore",
    "NullExecutionStore",
    "SqliteExecutionStore",
    "StorageError",
]
