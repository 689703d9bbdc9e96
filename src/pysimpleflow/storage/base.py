"""
ExecutionStore - abstract interface for execution history backends.

ExecutionStore defines the target interface that storage adapters
implement (in-memory, SQLite). The engine calls it after every terminal
state transition: once per recorded step and once per finished flow.

The engine does not require a store. NullExecutionStore is the default,
and every write failure is logged by the engine and otherwise ignored, so
persistence problems never fail an execution. Callers that need history
after an execution has left the engine's active table read it back from
the store.
"""

from abc import ABC, abstractmethod

from pysimpleflow.models import FlowResult, StepResult


class StorageError(Exception):
    """Storage operation failed."""


class ExecutionStore(ABC):
    """Abstract storage interface for execution history.

    Usage:
        store = InMemoryExecutionStore()
        engine = FlowEngine(registry).with_store(store)
        result = await engine.execute("orders", {"amount": 10})
        await store.get_flow_result(result.execution_id)
    """

    @abstractmethod
    async def save_step_result(self, execution_id: str, flow_id: str, result: StepResult) -> None:
        """Record a terminal step result (a step id may be saved more than once, e.g. in loops)."""

    @abstractmethod
    async def save_flow_result(self, result: FlowResult) -> None:
        """Record the final result of an execution."""

    @abstractmethod
    async def get_flow_result(self, execution_id: str) -> FlowResult | None:
        """Return the stored flow result, or None if the execution is unknown."""

    @abstractmethod
    async def get_step_results(self, execution_id: str) -> list[StepResult]:
        """Return every saved step result of an execution, in save order."""

    async def list_executions(self, flow_id: str) -> list[str]:
        """Return ids of finished executions of a flow, oldest first."""
        return []

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
        return None


class NullExecutionStore(ExecutionStore):
    """Store that keeps nothing."""

    async def save_step_result(self, execution_id: str, flow_id: str, result: StepResult) -> None:
        return None

    async def save_flow_result(self, result: FlowResult) -> None:
        return None

    async def get_flow_result(self, execution_id: str) -> FlowResult | None:
        return None

    async def get_step_results(self, execution_id: str) -> list[StepResult]:
        return []

    def __repr__(self) -> str:
        return "NullExecutionStore()"
