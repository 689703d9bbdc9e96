"""
FlowEngine - registration, admission and control of flow executions.

The engine owns:
- the flow registry (id → validated FlowDefinition, last write wins)
- the active-execution table used by stop/pause/resume/status
- the worker pools that run blocking handlers
- the admission semaphore and bounded queue for asynchronous executions

Executions leave the active table as soon as they finish; status() then
reports NOT_FOUND and history is read from the configured store.
"""

import asyncio
import logging
import threading
from collections.abc import Generator, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from uuid_extensions import uuid7

from pysimpleflow.config import EngineConfig
from pysimpleflow.core.conditions import ConditionEvaluator, SimpleEvalConditionEvaluator
from pysimpleflow.core.context import FlowContext
from pysimpleflow.core.registry import HandlerRegistry
from pysimpleflow.executor.dispatcher import StepDispatcher
from pysimpleflow.executor.engine import FlowExecution
from pysimpleflow.executor.listeners import FlowListener, ListenerGroup
from pysimpleflow.models import (
    ExecutionStatus,
    FlowDefinition,
    FlowError,
    FlowResult,
)
from pysimpleflow.storage.base import ExecutionStore, NullExecutionStore

logger = logging.getLogger(__name__)

DEFAULT_POOL = "default"


@dataclass
class ActiveExecution:
    """Bookkeeping for one execution in the active table."""

    execution_id: str
    flow: FlowDefinition
    context: FlowContext
    execution: FlowExecution
    task: asyncio.Task | None = None
    result: FlowResult | None = None
    admitted: asyncio.Event = field(default_factory=asyncio.Event)


class ExecutionHandle:
    """Handle for an execution submitted with execute_async().

    Composition - the handle HAS-A task, it is not the task.

    Usage:
        handle = engine.execute_async("orders", {"amount": 10})
        engine.pause(handle.execution_id)
        engine.resume(handle.execution_id)
        result = await handle
    """

    def __init__(self, engine: "FlowEngine", execution_id: str, flow_id: str, task: asyncio.Task):
        self._engine = engine
        self.execution_id = execution_id
        self.flow_id = flow_id
        self._task = task

    def __repr__(self) -> str:
        state = "done" if self._task.done() else "running"
        return f"ExecutionHandle(execution_id={self.execution_id!r}, flow_id={self.flow_id!r}, {state})"

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        """Request cooperative cancellation (same as FlowEngine.stop)."""
        return self._engine.stop(self.execution_id)

    async def result(self) -> FlowResult:
        """Wait for the execution to finish and return its FlowResult."""
        return await asyncio.shield(self._task)

    def __await__(self) -> Generator[Any, None, FlowResult]:
        return self.result().__await__()


class FlowEngine:
    """Runs registered flows.

    Design Patterns:
    - Facade: one entry point over registry, dispatcher, execution and storage
    - Builder: with_store(), with_listener() ... for configuration

    Usage:
        registry = HandlerRegistry().register_bean("payments", PaymentService())
        engine = FlowEngine(registry).with_store(InMemoryExecutionStore())
        engine.register(flow)

        result = await engine.execute("orders", {"amount": 1500})

        handle = engine.execute_async("orders", {"amount": 20})
        engine.pause(handle.execution_id)
        ...
        await engine.shutdown()
    """

    def __init__(
        self,
        registry: HandlerRegistry | None = None,
        config: EngineConfig | None = None,
        *,
        store: ExecutionStore | None = None,
        evaluator: ConditionEvaluator | None = None,
    ):
        """Create an engine.

        All dependencies passed explicitly, no globals.

        Args:
            registry: Handlers available to steps (empty registry if omitted)
            config: Engine configuration (defaults if omitted)
            store: Execution history backend (nothing kept if omitted)
            evaluator: Condition evaluator (simpleeval-based if omitted)
        """
        self.registry = registry or HandlerRegistry()
        self.config = config or EngineConfig()
        self._store: ExecutionStore = store or NullExecutionStore()
        self._evaluator: ConditionEvaluator = evaluator or SimpleEvalConditionEvaluator()
        self._dispatcher = StepDispatcher(self.registry)
        self._listeners = ListenerGroup()

        self._flows: dict[str, FlowDefinition] = {}
        self._flows_lock = threading.Lock()
        self._active: dict[str, ActiveExecution] = {}
        self._active_lock = threading.Lock()

        self._pools: dict[str, ThreadPoolExecutor] = {
            DEFAULT_POOL: ThreadPoolExecutor(
                max_workers=self.config.worker_threads,
                thread_name_prefix=self.config.thread_name_prefix,
            )
        }

        # Created lazily so the engine can be built outside a running loop
        self._admission: asyncio.Semaphore | None = None
        self._queued = 0

        # Keep references so submitted executions are not garbage collected
        self._background_tasks: set[asyncio.Task] = set()
        self._shutdown = False

    def __repr__(self) -> str:
        return (
            f"FlowEngine(flows={self.registered_flow_count}, "
            f"active={self.active_execution_count}, store={self._store!r})"
        )

    # =========================================================================
    # Builder
    # =========================================================================

    def with_store(self, store: ExecutionStore) -> "FlowEngine":
        self._store = store
        return self

    def with_listener(self, listener: FlowListener) -> "FlowEngine":
        self._listeners.add(listener)
        return self

    def with_evaluator(self, evaluator: ConditionEvaluator) -> "FlowEngine":
        self._evaluator = evaluator
        return self

    def with_max_concurrent_executions(self, max_concurrent: int) -> "FlowEngine":
        """Limit how many asynchronous executions run at once.

        Executions over the limit wait in the queue (bounded by
        queue_capacity) until a slot becomes free.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.config = self.config.with_overrides(max_concurrent_executions=max_concurrent)
        self._admission = None
        return self

    def with_thread_pool(self, name: str, max_workers: int) -> "FlowEngine":
        """Add a named pool; flows select it with FlowDefinition.thread_pool."""
        previous = self._pools.get(name)
        self._pools[name] = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"{self.config.thread_name_prefix}{name}-"
        )
        if previous is not None:
            previous.shutdown(wait=False)
        return self

    def remove_listener(self, listener: FlowListener) -> bool:
        return self._listeners.remove(listener)

    # =========================================================================
    # Flow registry
    # =========================================================================

    def register(self, flow: FlowDefinition) -> str:
        """Validate and register a flow definition.

        Re-registering an id replaces the previous definition; executions
        already running keep the definition they started with.

        Raises:
            FlowError: DEFINITION kind when the flow is invalid (e.g. cyclic)
        """
        flow.validate()
        with self._flows_lock:
            replaced = flow.id in self._flows
            self._flows[flow.id] = flow
        logger.info(
            f"{'Replaced' if replaced else 'Registered'} flow '{flow.id}' "
            f"(version={flow.version}, steps={len(flow.steps)})"
        )
        return flow.id

    def unregister(self, flow_id: str) -> bool:
        with self._flows_lock:
            removed = self._flows.pop(flow_id, None) is not None
        if removed:
            logger.info(f"Unregistered flow '{flow_id}'")
        return removed

    def get_flow(self, flow_id: str) -> FlowDefinition | None:
        with self._flows_lock:
            return self._flows.get(flow_id)

    @property
    def flow_ids(self) -> list[str]:
        with self._flows_lock:
            return list(self._flows)

    @property
    def registered_flow_count(self) -> int:
        with self._flows_lock:
            return len(self._flows)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(
        self, flow: FlowDefinition | str, variables: Mapping[str, Any] | None = None
    ) -> FlowResult:
        """Run a flow to completion and return its result.

        Step failures are reported in the result, never raised.

        Raises:
            FlowError: ENGINE kind for an unknown flow id or after shutdown
        """
        active = self._prepare(flow, variables)
        try:
            active.result = await active.execution.run()
            return active.result
        finally:
            self._untrack(active.execution_id)

    def execute_async(
        self, flow: FlowDefinition | str, variables: Mapping[str, Any] | None = None
    ) -> ExecutionHandle:
        """Submit a flow and return immediately with its execution id.

        Must be called from a running event loop. The execution is queued
        until an admission slot is free.

        Raises:
            FlowError: ENGINE kind for an unknown flow id, after shutdown,
                or when the queue is full
        """
        if self._queued >= self.config.queue_capacity:
            raise FlowError.engine(
                f"Execution queue is full ({self.config.queue_capacity} waiting)"
            )
        active = self._prepare(flow, variables)
        self._queued += 1

        task = asyncio.create_task(
            self._run_admitted(active), name=f"flow-execution-{active.execution_id}"
        )
        active.task = task
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        logger.debug(f"Execution {active.execution_id} queued for flow '{active.flow.id}'")
        return ExecutionHandle(self, active.execution_id, active.flow.id, task)

    async def run(
        self, flow: FlowDefinition | str, variables: Mapping[str, Any] | None = None
    ) -> FlowResult | ExecutionHandle:
        """Execute a flow in the mode it declares (FlowDefinition.sync)."""
        definition = self._lookup(flow)
        if definition.sync:
            return await self.execute(definition, variables)
        return self.execute_async(definition, variables)

    def _lookup(self, flow: FlowDefinition | str) -> FlowDefinition:
        if isinstance(flow, FlowDefinition):
            return flow
        definition = self.get_flow(flow)
        if definition is None:
            raise FlowError.engine(f"Flow not found: {flow}", flow_id=flow)
        return definition

    def _prepare(
        self, flow: FlowDefinition | str, variables: Mapping[str, Any] | None
    ) -> ActiveExecution:
        if self._shutdown:
            raise FlowError.engine("Engine is shut down")
        definition = self._lookup(flow)
        if isinstance(flow, FlowDefinition):
            # Unregistered definitions are validated on every run
            definition.validate()

        execution_id = str(uuid7())
        context = FlowContext(execution_id, definition.id, definition.name, variables)
        execution = FlowExecution(
            definition,
            context,
            self._dispatcher,
            evaluator=self._evaluator,
            config=self.config,
            store=self._store,
            listeners=self._listeners,
            flow_lookup=self.get_flow,
            worker_pool=self._pool_for(definition),
        )
        active = ActiveExecution(execution_id, definition, context, execution)
        with self._active_lock:
            self._active[execution_id] = active
        return active

    def _pool_for(self, flow: FlowDefinition) -> ThreadPoolExecutor:
        if flow.thread_pool and flow.thread_pool in self._pools:
            return self._pools[flow.thread_pool]
        if flow.thread_pool:
            logger.warning(
                f"Flow '{flow.id}' selects unknown thread pool '{flow.thread_pool}', "
                f"using '{DEFAULT_POOL}'"
            )
        return self._pools[DEFAULT_POOL]

    async def _run_admitted(self, active: ActiveExecution) -> FlowResult:
        if self._admission is None:
            self._admission = asyncio.Semaphore(self.config.max_concurrent_executions)
        admission = self._admission
        try:
            async with admission:
                self._queued -= 1
                active.admitted.set()
                active.result = await active.execution.run()
                return active.result
        finally:
            if not active.admitted.is_set():
                # Cancelled while still waiting for a slot
                self._queued -= 1
            self._untrack(active.execution_id)

    def _untrack(self, execution_id: str) -> None:
        with self._active_lock:
            self._active.pop(execution_id, None)

    def _get_active(self, execution_id: str) -> ActiveExecution | None:
        with self._active_lock:
            return self._active.get(execution_id)

    # =========================================================================
    # Control
    # =========================================================================

    def stop(self, execution_id: str) -> bool:
        """Request cancellation; the current step finishes first.

        Returns:
            True if the execution was active, False otherwise
        """
        active = self._get_active(execution_id)
        if active is None:
            return False
        active.context.cancel()
        logger.info(f"Execution {execution_id} cancellation requested")
        return True

    def pause(self, execution_id: str) -> bool:
        """Pause before the next step starts.

        Returns:
            False if the execution is unknown, finished or cancelled
        """
        active = self._get_active(execution_id)
        if active is None or active.result is not None:
            return False
        paused = active.context.pause()
        if paused:
            logger.info(f"Execution {execution_id} pause requested")
        return paused

    def resume(self, execution_id: str) -> bool:
        active = self._get_active(execution_id)
        if active is None or active.result is not None:
            return False
        resumed = active.context.resume()
        if resumed:
            logger.info(f"Execution {execution_id} resumed")
        return resumed

    def status(self, execution_id: str) -> ExecutionStatus:
        """Status of an execution still in the active table.

        Finished executions are removed from the table, so NOT_FOUND is
        returned for them as well as for ids never seen.
        """
        active = self._get_active(execution_id)
        if active is None:
            return ExecutionStatus.NOT_FOUND
        if active.result is not None:
            return ExecutionStatus.from_flow_status(active.result.status)
        if active.context.is_cancelled:
            return ExecutionStatus.CANCELLED
        if active.context.is_paused:
            return ExecutionStatus.PAUSED
        return ExecutionStatus.RUNNING

    @property
    def active_execution_count(self) -> int:
        with self._active_lock:
            return len(self._active)

    def active_execution_ids(self) -> list[str]:
        with self._active_lock:
            return list(self._active)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def is_healthy(self) -> bool:
        return not self._shutdown

    async def shutdown(self) -> None:
        """Cancel active executions, wait for them, then release worker pools.

        Explicit shutdown, not relying on GC. The store is owned by the
        caller and is not closed here.
        """
        if self._shutdown:
            return
        self._shutdown = True
        with self._active_lock:
            active = list(self._active.values())
        logger.info(f"Engine shutting down ({len(active)} active executions)")

        for entry in active:
            entry.context.cancel()

        if self._background_tasks:
            await asyncio.gather(*tuple(self._background_tasks), return_exceptions=True)
        await self._listeners.drain()

        for pool in self._pools.values():
            pool.shutdown(wait=False, cancel_futures=True)
        logger.info("Engine shut down")

    async def __aenter__(self) -> "FlowEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    async def history(self, execution_id: str) -> FlowResult | None:
        """Read a finished execution's result back from the store."""
        return await self._store.get_flow_result(execution_id)
