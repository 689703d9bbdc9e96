"""
Execution of a single flow run.

FlowExecution drives one execution end-to-end:

1. Take the cached topological order of the flow
2. For each step: observe cancellation, wait out a pause, evaluate the
   guard, dispatch with the retry/timeout policy, record the result
3. Stop at the first non-skippable failure, timeout or cancellation
4. Build the FlowResult, persist it and notify listeners

States: RUNNING → {PAUSED ⇄ RUNNING} → {SUCCESS, FAILED, TIMEOUT, CANCELLED}

Pause and cancellation are cooperative and checked between steps; an
in-flight step always completes first. Nested step lists (branches,
parallel groups, loop bodies) go through the same per-step algorithm.

With FlowDefinition.parallel (or EngineConfig.parallel_enabled) the
top-level steps run in waves instead: every step whose dependencies all
have a terminal result runs concurrently, bounded by max_parallelism, and
the wave is joined before the next one starts.
"""

import asyncio
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from concurrent.futures import Executor
from datetime import UTC, datetime
from typing import Any

from pysimpleflow.config import EngineConfig
from pysimpleflow.core.conditions import ConditionEvaluator, evaluate_condition
from pysimpleflow.core.context import FlowContext
from pysimpleflow.executor.binding import is_async_callable
from pysimpleflow.executor.dispatcher import ExecutorHandle, StepDispatcher
from pysimpleflow.executor.handlers import BranchRun
from pysimpleflow.executor.listeners import ListenerGroup
from pysimpleflow.models import (
    ErrorKind,
    FlowDefinition,
    FlowError,
    FlowResult,
    FlowStatus,
    RetryPolicy,
    StepDefinition,
    StepError,
    StepResult,
    StepStatus,
)
from pysimpleflow.storage.base import ExecutionStore, NullExecutionStore

logger = logging.getLogger(__name__)

FlowLookup = Callable[[str], FlowDefinition | None]


class FlowExecution:
    """
    One run of a flow against one context.

    Also serves as the StepRuntime handed to step executors, so nested
    steps share the execution's recording, policy and worker pool.

    Usage:
        execution = FlowExecution(flow, context, dispatcher, evaluator=evaluator)
        result = await execution.run()
    """

    def __init__(
        self,
        flow: FlowDefinition,
        context: FlowContext,
        dispatcher: StepDispatcher,
        *,
        evaluator: ConditionEvaluator,
        config: EngineConfig | None = None,
        store: ExecutionStore | None = None,
        listeners: ListenerGroup | None = None,
        flow_lookup: FlowLookup | None = None,
        worker_pool: Executor | None = None,
        sub_flow_stack: tuple[str, ...] = (),
        nested: bool = False,
    ):
        self.flow = flow
        self.context = context
        self._dispatcher = dispatcher
        self._evaluator = evaluator
        self._config = config or EngineConfig()
        self._store = store or NullExecutionStore()
        self._listeners = listeners or ListenerGroup()
        self._flow_lookup = flow_lookup
        self._worker_pool = worker_pool
        self._sub_flow_stack = sub_flow_stack
        self._nested = nested

        self._results: dict[str, StepResult] = {}
        self._error: StepError | None = None
        self._status: FlowStatus | None = None

    @property
    def execution_id(self) -> str:
        return self.context.execution_id

    @property
    def status(self) -> FlowStatus | None:
        """Final status once run() has finished, else None."""
        return self._status

    @property
    def recorded_results(self) -> dict[str, StepResult]:
        return dict(self._results)

    def __repr__(self) -> str:
        return f"FlowExecution(execution_id={self.execution_id!r}, flow_id={self.flow.id!r})"

    # =========================================================================
    # Flow level
    # =========================================================================

    async def run(self) -> FlowResult:
        """Run the flow to a terminal state. Never raises for step-level problems."""
        flow, ctx = self.flow, self.context
        label = "Sub-flow" if self._nested else "Execution"
        logger.info(f"{label} {self.execution_id} started: flow={flow.id} version={flow.version}")

        if not self._nested:
            self._listeners.notify("on_flow_start", self.execution_id, flow, ctx.get_all())

        try:
            order = flow.execution_order
            if flow.parallel or self._config.parallel_enabled:
                status = await self._run_waves(order)
            else:
                status = await self._run_sequential(order)
        except Exception as e:
            logger.error(f"{label} {self.execution_id} aborted by engine error: {e}")
            self._error = StepError.from_exception(e, ErrorKind.ENGINE)
            status = FlowStatus.FAILED

        if status is FlowStatus.CANCELLED and self._error is None:
            self._error = StepError(kind=ErrorKind.CANCELLATION, message="Execution cancelled")

        ctx.error = self._error
        ctx.current_step_id = None
        ctx.mark_finished()
        self._status = status

        result = FlowResult(
            execution_id=self.execution_id,
            flow_id=flow.id,
            flow_name=flow.name,
            status=status,
            started_at=ctx.started_at,
            ended_at=ctx.ended_at,
            step_results=self._results,
            output=ctx.get_all(),
            error=self._error,
        )

        message = (
            f"{label} {self.execution_id} finished: flow={flow.id} status={status} "
            f"steps={result.total_steps} duration={result.duration_ms}ms"
        )
        if status is FlowStatus.SUCCESS:
            logger.info(message)
        else:
            logger.warning(f"{message} error={result.error_message}")

        if not self._nested:
            await self._persist(self._store.save_flow_result(result), "flow result")
            hook = "on_flow_complete" if status is FlowStatus.SUCCESS else "on_flow_failed"
            self._listeners.notify(hook, result)
        return result

    async def _run_sequential(self, order: Sequence[str]) -> FlowStatus:
        for step_id in order:
            step = self.flow.get_step(step_id)
            result = await self._run_step(step, self.context)
            outcome = self._judge(step, result)
            if outcome is not None:
                return outcome
        return FlowStatus.SUCCESS

    async def _run_waves(self, order: Sequence[str]) -> FlowStatus:
        limit = asyncio.Semaphore(self._config.max_parallelism)
        pending = list(order)
        terminal: set[str] = set()

        async def guarded(step: StepDefinition) -> StepResult | None:
            async with limit:
                return await self._run_step(step, self.context)

        while pending:
            if self.context.is_cancelled:
                return FlowStatus.CANCELLED

            ready = [
                step_id
                for step_id in pending
                if all(dep in terminal for dep in self.flow.dependencies_of(step_id))
            ]
            if not ready:
                raise FlowError.definition(
                    "Deadlock: no steps ready but not all completed", flow_id=self.flow.id
                )
            logger.debug(f"Execution {self.execution_id}: running wave {ready}")

            steps = [self.flow.get_step(step_id) for step_id in ready]
            results = await asyncio.gather(*(guarded(step) for step in steps))

            outcome: FlowStatus | None = None
            for step, result in zip(steps, results, strict=True):
                pending.remove(step.id)
                terminal.add(step.id)
                judged = self._judge(step, result)
                if judged is not None and outcome is None:
                    outcome = judged
            if outcome is not None:
                return outcome
        return FlowStatus.SUCCESS

    def _judge(self, step: StepDefinition, result: StepResult | None) -> FlowStatus | None:
        """Map a step result to the flow status it forces, or None to continue."""
        if result is None or result.status is StepStatus.CANCELLED:
            return FlowStatus.CANCELLED
        if result.is_failed and not step.skip_on_error:
            self._error = result.error
            if result.status is StepStatus.TIMEOUT:
                return FlowStatus.TIMEOUT
            return FlowStatus.FAILED
        return None

    # =========================================================================
    # Step level
    # =========================================================================

    async def _run_step(self, step: StepDefinition, ctx: FlowContext) -> StepResult | None:
        """
        Run one step with the full per-step algorithm.

        Returns:
            The recorded result, or None if cancellation was observed before
            the step started (nothing is recorded then)
        """
        if ctx.is_cancelled:
            return None
        if ctx.is_paused:
            logger.info(f"Execution {self.execution_id} paused before step '{step.id}'")
        if not await ctx.wait_while_paused():
            return None

        if step.condition and not step.type.is_conditional:
            if not self.evaluate(step.condition, self.condition_names(step, ctx)):
                logger.debug(f"Step '{step.id}' skipped: condition {step.condition!r} is false")
                result = StepResult.skipped(step, f"condition '{step.condition}' evaluated false")
                await self._record(ctx, result)
                return result

        ctx.current_step_id = step.id
        result = await self._dispatch_with_policy(step, ctx)
        if result.is_failed and step.skip_on_error:
            result = result.with_metadata(continued=True)
        await self._record(ctx, result)
        return result

    async def _dispatch_with_policy(self, step: StepDefinition, ctx: FlowContext) -> StepResult:
        try:
            handle = self._dispatcher.resolve(step)
        except FlowError as e:
            logger.error(f"Step '{step.id}' could not be dispatched: {e.message}")
            return StepResult.failure(step, datetime.now(UTC), StepError.from_exception(e))

        if handle.source == "type" and step.type.is_composite:
            # Nested steps carry their own bound and retries; pauses between them must not count
            policy = RetryPolicy(max_retries=0)
            timeout_ms = None
        else:
            policy = RetryPolicy.for_step(step, self._config)
            timeout_ms = (
                step.timeout_ms if step.timeout_ms is not None else self._config.default_timeout_ms
            )
        ctx.reset_retry(step.id)

        while True:
            result = await self._attempt(handle, ctx, timeout_ms)
            if not result.is_failed:
                break

            retries = ctx.retry_count(step.id)
            if retries >= policy.max_retries:
                if policy.allows_retry:
                    logger.warning(f"Step '{step.id}' failed after {retries} retries")
                break

            retry = ctx.increment_retry(step.id)
            delay_ms = policy.delay_for_attempt(retry) or 0
            logger.info(
                f"Retrying step '{step.id}' ({retry}/{policy.max_retries}) "
                f"in {delay_ms}ms after {result.status}: {result.error}"
            )
            if not await ctx.control.sleep(delay_ms / 1000):
                result = StepResult.cancelled(
                    step, result.started_at, reason="cancelled while waiting to retry"
                )
                break

        return result.with_retry_count(ctx.retry_count(step.id))

    async def _attempt(
        self, handle: ExecutorHandle, ctx: FlowContext, timeout_ms: int | None
    ) -> StepResult:
        step = handle.step
        started = datetime.now(UTC)
        invocation = self._dispatcher.invoke(handle, ctx, self)
        if not timeout_ms:
            return await invocation
        try:
            return await asyncio.wait_for(invocation, timeout=timeout_ms / 1000)
        except TimeoutError:
            # Blocking handlers keep running on their worker thread; only the wait is abandoned
            error = StepError(
                kind=ErrorKind.TIMEOUT, message=f"Step '{step.id}' exceeded {timeout_ms}ms"
            )
            return StepResult.failure(step, started, error, executor_name=handle.executor_name)

    async def _record(self, ctx: FlowContext, result: StepResult) -> None:
        ctx.record_step_result(result)
        if ctx is not self.context:
            self.context.record_step_result(result)
        self._results[result.step_id] = result

        if result.is_failed:
            logger.error(f"Step '{result.step_id}' {result.status}: {result.error}")
        else:
            logger.debug(
                f"Step '{result.step_id}' {result.status} in {result.duration_ms}ms "
                f"(retries={result.retry_count})"
            )

        if not self._nested:
            await self._persist(
                self._store.save_step_result(self.execution_id, self.flow.id, result),
                f"step result '{result.step_id}'",
            )
            self._listeners.notify("on_step_complete", self.execution_id, result)

    async def _persist(self, write: Awaitable[None], what: str) -> None:
        try:
            await write
        except Exception as e:
            logger.error(f"Execution {self.execution_id}: failed to save {what}: {e}")

    # =========================================================================
    # StepRuntime
    # =========================================================================

    def condition_names(self, step: StepDefinition, context: FlowContext) -> dict[str, Any]:
        """Names visible to conditions: context variables, overridden by step parameters."""
        return {**context.get_all(), **step.parameters}

    def evaluate(self, expression: str | None, names: Mapping[str, Any]) -> bool:
        return evaluate_condition(self._evaluator, expression, names)

    def evaluate_value(self, expression: str, names: Mapping[str, Any]) -> Any:
        return self._evaluator.evaluate(expression, names)

    async def run_steps(self, steps: Sequence[StepDefinition], context: FlowContext) -> BranchRun:
        run = BranchRun()
        for step in steps:
            result = await self._run_step(step, context)
            if result is None:
                run.cancelled = True
                return run
            run.results.append(result)
            if result.status is StepStatus.CANCELLED:
                run.cancelled = True
                return run
            if result.is_failed and not step.skip_on_error:
                run.failure = result
                return run
        return run

    async def run_concurrently(
        self, steps: Sequence[StepDefinition], context: FlowContext
    ) -> BranchRun:
        limit = asyncio.Semaphore(self._config.max_parallelism)

        async def guarded(step: StepDefinition) -> StepResult | None:
            async with limit:
                return await self._run_step(step, context)

        results = await asyncio.gather(*(guarded(step) for step in steps))

        run = BranchRun()
        for step, result in zip(steps, results, strict=True):
            if result is None:
                run.cancelled = True
                continue
            run.results.append(result)
            if result.status is StepStatus.CANCELLED:
                run.cancelled = True
            elif result.is_failed and not step.skip_on_error and run.failure is None:
                run.failure = result
        return run

    async def run_sub_flow(self, flow_id: str, context: FlowContext) -> FlowResult:
        if flow_id == self.flow.id or flow_id in self._sub_flow_stack:
            raise FlowError.execution(
                f"Recursive sub-flow '{flow_id}' (call chain: "
                f"{' -> '.join((*self._sub_flow_stack, self.flow.id, flow_id))})",
                flow_id=self.flow.id,
            )
        flow = self._flow_lookup(flow_id) if self._flow_lookup else None
        if flow is None:
            raise FlowError.dispatch(f"Sub-flow '{flow_id}' is not registered", flow_id=flow_id)

        nested = FlowExecution(
            flow,
            context,
            self._dispatcher,
            evaluator=self._evaluator,
            config=self._config,
            flow_lookup=self._flow_lookup,
            worker_pool=self._worker_pool,
            sub_flow_stack=(*self._sub_flow_stack, self.flow.id),
            nested=True,
        )
        return await nested.run()

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call a handler: coroutines are awaited, blocking callables go to the worker pool."""
        if is_async_callable(func):
            return await func(*args, **kwargs)
        loop = asyncio.get_running_loop()
        value = await loop.run_in_executor(
            self._worker_pool, functools.partial(func, *args, **kwargs)
        )
        if inspect.isawaitable(value):
            value = await value
        return value
