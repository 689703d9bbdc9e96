"""
Step executors: the handler families the dispatcher chooses from.

Every executor receives the resolved ExecutorHandle, the context the step
runs in and a StepRuntime. The runtime is the engine's side of the
contract: it evaluates conditions, runs nested step lists with the same
per-step algorithm (guards, retries, timeouts, recording), runs registered
sub-flows and moves blocking calls onto the worker pool.

Families:
- BeanStepExecutor: call a registered service bean or function
- ExecutableNodeStepExecutor: validate → prepare → execute → cleanup
- ConditionNodeStepExecutor: evaluate a boolean node
- ConditionalStepExecutor: select exactly one branch and run it
- ParallelStepExecutor: run sub-steps concurrently, then join
- LoopStepExecutor: run sub-steps once per collection item
- SubFlowStepExecutor: run another registered flow in an isolated scope

Executors report failures by raising; the dispatcher turns any exception
into a Failed StepResult.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from pysimpleflow.core.context import FlowContext
from pysimpleflow.executor.binding import bind_arguments
from pysimpleflow.models import (
    ErrorKind,
    FlowError,
    FlowResult,
    FlowStatus,
    StepDefinition,
    StepError,
    StepResult,
    StepType,
)

if TYPE_CHECKING:
    from pysimpleflow.executor.dispatcher import ExecutorHandle

logger = logging.getLogger(__name__)


@dataclass
class BranchRun:
    """Outcome of running a nested list of steps.

    Attributes:
        results: Results in recording order
        failure: First result that stopped the list (FAILED/TIMEOUT, not skip_on_error)
        cancelled: Whether cancellation was observed
    """

    results: list[StepResult] = field(default_factory=list)
    failure: StepResult | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.failure is None and not self.cancelled

    @property
    def step_ids(self) -> list[str]:
        return [r.step_id for r in self.results]


class StepRuntime(Protocol):
    """Engine services available to step executors."""

    def condition_names(self, step: StepDefinition, context: FlowContext) -> dict[str, Any]: ...

    def evaluate(self, expression: str | None, names: Mapping[str, Any]) -> bool: ...

    def evaluate_value(self, expression: str, names: Mapping[str, Any]) -> Any: ...

    async def run_steps(
        self, steps: Sequence[StepDefinition], context: FlowContext
    ) -> BranchRun: ...

    async def run_concurrently(
        self, steps: Sequence[StepDefinition], context: FlowContext
    ) -> BranchRun: ...

    async def run_sub_flow(self, flow_id: str, context: FlowContext) -> FlowResult: ...

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any: ...


def _now() -> datetime:
    return datetime.now(UTC)


class StepExecutor(ABC):
    """
    A handler family.

    Subclass and register with HandlerRegistry.register_executor() to add a
    custom family; steps select it through StepDefinition.executor.
    Returning something other than a StepResult counts as success with that
    value as the step's result.
    """

    name: str = "custom"

    @abstractmethod
    async def execute(
        self, handle: ExecutorHandle, context: FlowContext, runtime: StepRuntime
    ) -> StepResult | Any:
        """Run the step."""

    def complete(
        self,
        step: StepDefinition,
        context: FlowContext,
        value: Any,
        started_at: datetime,
        extra_output: Mapping[str, Any] | None = None,
    ) -> StepResult:
        """
        Record a handler's return value.

        The value is stored in the context as "<step id>_result" and in the
        step output under "result".
        """
        if isinstance(value, StepResult):
            return value
        if value is not None:
            context.set(f"{step.id}_result", value)
        output = {"result": value}
        if extra_output:
            output.update(extra_output)
        return StepResult.success(step, started_at, output, executor_name=self.name)

    def branch_result(
        self,
        step: StepDefinition,
        run: BranchRun,
        started_at: datetime,
        output: Mapping[str, Any],
        what: str,
    ) -> StepResult:
        """Turn the outcome of a nested run into this step's result."""
        if run.cancelled:
            return StepResult.cancelled(step, started_at, reason=f"cancelled inside {what}")
        if run.failure is not None:
            nested = run.failure
            detail = nested.error.message if nested.error else str(nested.status)
            error = StepError(
                kind=ErrorKind.EXECUTION,
                message=f"{what} step '{nested.step_id}' {str(nested.status).lower()}: {detail}",
            )
            return StepResult.failure(
                step, started_at, error, output=output, executor_name=self.name
            )
        return StepResult.success(step, started_at, output, executor_name=self.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


# =============================================================================
# Bean and node families
# =============================================================================


class BeanStepExecutor(StepExecutor):
    """Calls the bean method resolved by the dispatcher."""

    name = "bean"

    async def execute(self, handle, context, runtime):
        started = _now()
        if handle.canonical:
            value = await runtime.call(handle.call, context)
        else:
            args, kwargs = bind_arguments(handle.call, context)
            value = await runtime.call(handle.call, *args, **kwargs)
        return self.complete(handle.step, context, value, started)


def node_context(step: StepDefinition, context: FlowContext) -> dict[str, Any]:
    """Build the dict a node works on: variables, parameters, reserved keys."""
    data = context.get_all()
    data.update(step.parameters)
    data.update(
        {
            "_executionId": context.execution_id,
            "_flowId": context.flow_id,
            "_flowName": context.flow_name,
            "_currentStepId": step.id,
            "_startTime": context.started_at.isoformat(),
        }
    )
    return data


class ExecutableNodeStepExecutor(StepExecutor):
    """Runs an ExecutableNode's lifecycle and copies its writes back."""

    name = "executable-node"

    async def execute(self, handle, context, runtime):
        step, node = handle.step, handle.target
        started = _now()
        data = node_context(step, context)

        if not await runtime.call(node.validate, data):
            raise FlowError.execution(
                f"Node '{node.name}' rejected the input of step '{step.id}'", step_id=step.id
            )

        await runtime.call(node.prepare, data)
        try:
            value = await runtime.call(node.execute, data)
        finally:
            try:
                await runtime.call(node.cleanup, data)
            except Exception as e:
                logger.warning(f"Cleanup of node '{node.name}' failed for step '{step.id}': {e}")

        params = step.parameters
        for key, item in data.items():
            if key.startswith("_"):
                continue
            if key in params and item is params[key]:
                continue
            context.set(key, item)

        return self.complete(step, context, value, started, {"node": node.name})


class ConditionNodeStepExecutor(StepExecutor):
    """Evaluates a ConditionNode and stores the boolean outcome."""

    name = "condition-node"

    async def execute(self, handle, context, runtime):
        step, node = handle.step, handle.target
        started = _now()
        data = node_context(step, context)

        if not await runtime.call(node.validate, data):
            raise FlowError.execution(
                f"Condition node '{node.name}' rejected the input of step '{step.id}'",
                step_id=step.id,
            )
        await runtime.call(node.prepare, data)
        outcome = bool(await runtime.call(node.evaluate, data))

        context.set("conditionResult", outcome)
        context.set(f"{step.id}_result", outcome)
        return StepResult.success(
            step,
            started,
            {"conditionResult": outcome, "result": outcome, "node": node.name},
            executor_name=self.name,
        )


# =============================================================================
# Structural families
# =============================================================================


class ConditionalStepExecutor(StepExecutor):
    """
    Selects exactly one branch and runs it in the current context.

    Boolean form: the condition (or, for SCRIPT_CONDITIONAL, the "script"
    parameter) picks true_steps or false_steps. Multi-case form: the first
    case whose condition holds wins; otherwise the default branch runs; with
    no default and no match the step is a successful no-op.
    """

    name = "conditional"

    async def execute(self, handle, context, runtime):
        step = handle.step
        branches = step.branches
        started = _now()
        names = runtime.condition_names(step, context)

        selected: Sequence[StepDefinition] = ()
        label: str | None = None
        outcome: bool | None = None

        if branches.is_multi_case:
            for index, case in enumerate(branches.cases):
                if runtime.evaluate(case.condition, names):
                    selected, label = case.steps, f"case:{index}"
                    break
            else:
                if branches.default_steps:
                    selected, label = branches.default_steps, "default"
        else:
            expression = step.condition
            if step.type is StepType.SCRIPT_CONDITIONAL:
                expression = step.parameters.get("script") or expression
            outcome = runtime.evaluate(expression, names)
            selected = branches.true_steps if outcome else branches.false_steps
            label = "true" if outcome else "false"

        logger.debug(f"Conditional step '{step.id}' selected branch {label}")
        if not selected:
            return StepResult.success(
                step,
                started,
                {"branch": label, "conditionResult": outcome, "executed_steps": []},
                executor_name=self.name,
            )

        run = await runtime.run_steps(selected, context)
        output = {"branch": label, "conditionResult": outcome, "executed_steps": run.step_ids}
        return self.branch_result(step, run, started, output, "branch")


class ParallelStepExecutor(StepExecutor):
    """Runs sub-steps concurrently on the shared context and joins."""

    name = "parallel"

    async def execute(self, handle, context, runtime):
        step = handle.step
        started = _now()
        run = await runtime.run_concurrently(step.sub_steps, context)
        output = {
            "executed_steps": run.step_ids,
            "failed_steps": [r.step_id for r in run.results if r.is_failed],
        }
        return self.branch_result(step, run, started, output, "parallel")


class LoopStepExecutor(StepExecutor):
    """
    Runs sub-steps once per item of a collection.

    Parameters:
        collection: Variable name, expression, or a literal list
        item_var: Name the current item is bound to (default "item")
        index_var: Name the current index is bound to (default "index")
        max_iterations: Upper bound on the collection size (default 10000)

    Each iteration runs in a child context; the per-iteration results of the
    sub-steps are collected under the "results" output.
    """

    name = "loop"

    DEFAULT_MAX_ITERATIONS = 10_000

    def _items(self, step: StepDefinition, context: FlowContext, runtime: StepRuntime) -> list:
        ref = step.parameters["collection"]
        if isinstance(ref, str):
            if context.contains(ref):
                value = context.get(ref)
            else:
                value = runtime.evaluate_value(ref, runtime.condition_names(step, context))
        else:
            value = ref

        if value is None:
            raise FlowError.execution(
                f"Loop collection '{ref}' of step '{step.id}' is not set", step_id=step.id
            )
        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            raise FlowError.execution(
                f"Loop collection '{ref}' of step '{step.id}' is not a collection "
                f"({type(value).__name__})",
                step_id=step.id,
            )
        return list(value)

    async def execute(self, handle, context, runtime):
        step = handle.step
        params = step.parameters
        started = _now()

        items = self._items(step, context, runtime)
        limit = int(params.get("max_iterations", self.DEFAULT_MAX_ITERATIONS))
        if len(items) > limit:
            raise FlowError.execution(
                f"Loop step '{step.id}' has {len(items)} items, more than max_iterations={limit}",
                step_id=step.id,
            )

        item_var = params.get("item_var", "item")
        index_var = params.get("index_var", "index")
        collected: list[dict[str, Any]] = []

        for index, item in enumerate(items):
            child = context.create_child_context(step.id)
            child.set(item_var, item)
            child.set(index_var, index)

            run = await runtime.run_steps(step.sub_steps, child)
            if not run.succeeded:
                output = {"results": collected, "iterations": index}
                return self.branch_result(step, run, started, output, f"iteration {index}")

            collected.append({r.step_id: r.output.get("result") for r in run.results})

        context.set(f"{step.id}_result", collected)
        return StepResult.success(
            step,
            started,
            {"results": collected, "iterations": len(items)},
            executor_name=self.name,
        )


class SubFlowStepExecutor(StepExecutor):
    """
    Runs a registered flow in an isolated child context.

    On success the child's variables are merged back into the caller's
    context; on failure nothing is merged.
    """

    name = "sub-flow"

    async def execute(self, handle, context, runtime):
        step = handle.step
        flow_id = step.parameters["flow"]
        started = _now()

        child = context.create_child_context(step.id)
        result = await runtime.run_sub_flow(flow_id, child)
        output = {
            "flow_id": flow_id,
            "status": result.status.value,
            "output": dict(result.output),
            "executed_steps": list(result.step_results),
        }

        if result.status is FlowStatus.SUCCESS:
            context.merge_child(child)
            return StepResult.success(step, started, output, executor_name=self.name)
        if result.status is FlowStatus.CANCELLED:
            return StepResult.cancelled(step, started, reason=f"sub-flow '{flow_id}' cancelled")

        error = StepError(
            kind=ErrorKind.EXECUTION,
            message=f"Sub-flow '{flow_id}' finished with {result.status}: "
            f"{result.error_message or 'no error recorded'}",
        )
        return StepResult.failure(step, started, error, output=output, executor_name=self.name)


def default_executors() -> dict[str, StepExecutor]:
    """Built-in families keyed by the names steps may reference explicitly."""
    return {
        executor.name: executor
        for executor in (
            BeanStepExecutor(),
            ExecutableNodeStepExecutor(),
            ConditionNodeStepExecutor(),
            ConditionalStepExecutor(),
            ParallelStepExecutor(),
            LoopStepExecutor(),
            SubFlowStepExecutor(),
        )
    }


__all__ = [
    "BeanStepExecutor",
    "BranchRun",
    "ConditionNodeStepExecutor",
    "ConditionalStepExecutor",
    "ExecutableNodeStepExecutor",
    "LoopStepExecutor",
    "ParallelStepExecutor",
    "StepExecutor",
    "StepRuntime",
    "SubFlowStepExecutor",
    "default_executors",
]
