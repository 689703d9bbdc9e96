"""In-memory execution store.

InMemoryExecutionStore adapts plain dictionaries to the ExecutionStore
interface. It is immediately usable after __init__ and is meant for tests
and short-lived processes.
"""

import asyncio

from pysimpleflow.models import FlowResult, StepResult
from pysimpleflow.storage.base import ExecutionStore


class InMemoryExecutionStore(ExecutionStore):
    """In-memory storage.

    Can be substituted for SqliteExecutionStore without changing client code.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        # {execution_id: [StepResult, ...]} in save order
        self._step_results: dict[str, list[StepResult]] = {}
        # {execution_id: FlowResult}
        self._flow_results: dict[str, FlowResult] = {}
        # {flow_id: [execution_id, ...]}
        self._executions_by_flow: dict[str, list[str]] = {}

    def __repr__(self) -> str:
        return f"InMemoryExecutionStore(executions={len(self._flow_results)})"

    async def save_step_result(self, execution_id: str, flow_id: str, result: StepResult) -> None:
        async with self._lock:
            self._step_results.setdefault(execution_id, []).append(result)

    async def save_flow_result(self, result: FlowResult) -> None:
        async with self._lock:
            if result.execution_id not in self._flow_results:
                self._executions_by_flow.setdefault(result.flow_id, []).append(
                    result.execution_id
                )
            self._flow_results[result.execution_id] = result

    async def get_flow_result(self, execution_id: str) -> FlowResult | None:
        async with self._lock:
            return self._flow_results.get(execution_id)

    async def get_step_results(self, execution_id: str) -> list[StepResult]:
        async with self._lock:
            return list(self._step_results.get(execution_id, ()))

    async def list_executions(self, flow_id: str) -> list[str]:
        async with self._lock:
            return list(self._executions_by_flow.get(flow_id, ()))

    async def reset(self) -> None:
        """Drop everything (test helper)."""
        async with self._lock:
            self._step_results.clear()
            self._flow_results.clear()
            self._executions_by_flow.clear()
