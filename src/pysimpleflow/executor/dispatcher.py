"""
Step dispatch: choose the handler for a step, then invoke it.

Resolution precedence (first match wins):

1. An explicit executor key on the step (custom executors from the
   registry, then the built-in family names)
2. A "node" parameter: an executable node, then a condition node, else
   "node not found"
3. A "bean" parameter: a bean implementing StepHandler is called through
   its canonical execute(context); otherwise the named method (default
   "execute", or the bean itself when it is a plain callable) is called
   with arguments bound from the context
4. The step's declared type picks the default family

Resolution errors raise FlowError(DISPATCH) from resolve(); dispatch()
and invoke() never raise for step-level problems, they return a Failed
StepResult instead.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pysimpleflow.core.context import FlowContext
from pysimpleflow.core.nodes import ConditionNode, ExecutableNode, StepHandler
from pysimpleflow.core.registry import HandlerRegistry
from pysimpleflow.executor.handlers import StepExecutor, StepRuntime, default_executors
from pysimpleflow.models import FlowError, StepDefinition, StepError, StepResult, StepType

logger = logging.getLogger(__name__)

_TYPE_FAMILIES: dict[StepType, str] = {
    StepType.CONDITIONAL: "conditional",
    StepType.SCRIPT_CONDITIONAL: "conditional",
    StepType.PARALLEL: "parallel",
    StepType.LOOP: "loop",
    StepType.SUB_FLOW: "sub-flow",
}


@dataclass(frozen=True)
class ExecutorHandle:
    """
    A resolved step: which executor runs it, and against what.

    Attributes:
        step: The step definition
        executor: Handler family that runs it
        source: Which precedence rule matched ("executor", "node", "bean", "type")
        target: Bound node or bean instance, if any
        call: Bean callable, if any
        canonical: Whether `call` is a StepHandler.execute(context) entrypoint
    """

    step: StepDefinition
    executor: StepExecutor
    source: str
    target: Any = None
    call: Callable[..., Any] | None = None
    canonical: bool = False

    @property
    def executor_name(self) -> str:
        return self.executor.name


def resolve_bean_method(bean: Any, method: str | None, bean_name: str) -> Callable[..., Any]:
    """
    Find the callable to invoke on a bean.

    Raises:
        FlowError: DISPATCH error if the method does not exist
    """
    if method is None:
        execute = getattr(bean, "execute", None)
        if callable(execute):
            return execute
        if callable(bean):
            return bean
        raise FlowError.dispatch(
            f"Bean '{bean_name}' has no 'execute' method and is not callable; "
            "declare a 'method' parameter"
        )

    func = getattr(bean, method, None)
    if not callable(func):
        raise FlowError.dispatch(f"Method '{method}' not found on bean '{bean_name}'")
    return func


class StepDispatcher:
    """
    Resolves and invokes step handlers.

    Usage:
        dispatcher = StepDispatcher(registry)
        handle = dispatcher.resolve(step)
        result = await dispatcher.invoke(handle, context, runtime)
    """

    def __init__(self, registry: HandlerRegistry):
        self._registry = registry
        self._builtins = default_executors()

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    def resolve(self, step: StepDefinition) -> ExecutorHandle:
        """
        Pick the handler for a step.

        Raises:
            FlowError: DISPATCH error if no handler can be resolved
        """
        try:
            return self._resolve(step)
        except FlowError as e:
            if e.step_id is None:
                e.step_id = step.id
            raise

    def _resolve(self, step: StepDefinition) -> ExecutorHandle:
        if step.executor:
            custom = self._registry.get_executor(step.executor)
            if custom is not None:
                return ExecutorHandle(step, custom, "executor")
            if step.executor in ("bean", "executable-node", "condition-node"):
                handle = self._resolve_binding(step)
                if handle is None or handle.executor.name != step.executor:
                    raise FlowError.dispatch(
                        f"Executor '{step.executor}' requires a matching node or bean binding"
                    )
                return handle
            builtin = self._builtins.get(step.executor)
            if builtin is None:
                raise FlowError.dispatch(f"Executor '{step.executor}' not found")
            return ExecutorHandle(step, builtin, "executor")

        handle = self._resolve_binding(step)
        if handle is not None:
            return handle

        family = _TYPE_FAMILIES.get(step.type)
        if family is not None:
            return ExecutorHandle(step, self._builtins[family], "type")

        raise FlowError.dispatch(
            f"No handler bound to {step.type} step '{step.id}': "
            "declare an executor, a 'node' or a 'bean' parameter"
        )

    def _resolve_binding(self, step: StepDefinition) -> ExecutorHandle | None:
        params = step.parameters

        node_name = params.get("node")
        if node_name:
            node = self._registry.get_executable_node(node_name)
            if node is not None:
                return ExecutorHandle(step, self._builtins["executable-node"], "node", target=node)
            condition = self._registry.get_condition_node(node_name)
            if condition is not None:
                return ExecutorHandle(
                    step, self._builtins["condition-node"], "node", target=condition
                )
            raise FlowError.dispatch(f"Node not found: {node_name}")

        bean_name = params.get("bean")
        if bean_name:
            bean = self._registry.get_bean(bean_name)
            if bean is None:
                raise FlowError.dispatch(f"Bean not found: {bean_name}")
            if isinstance(bean, ExecutableNode):
                return ExecutorHandle(step, self._builtins["executable-node"], "bean", target=bean)
            if isinstance(bean, ConditionNode):
                return ExecutorHandle(step, self._builtins["condition-node"], "bean", target=bean)

            method = params.get("method")
            if method is None and isinstance(bean, StepHandler):
                return ExecutorHandle(
                    step,
                    self._builtins["bean"],
                    "bean",
                    target=bean,
                    call=bean.execute,
                    canonical=True,
                )
            func = resolve_bean_method(bean, method, bean_name)
            return ExecutorHandle(step, self._builtins["bean"], "bean", target=bean, call=func)

        return None

    async def invoke(
        self, handle: ExecutorHandle, context: FlowContext, runtime: StepRuntime
    ) -> StepResult:
        """
        Run a resolved step once.

        Any exception raised by the handler becomes a Failed StepResult.
        Cancellation of the surrounding task (timeouts, shutdown) propagates.
        """
        step = handle.step
        started = datetime.now(UTC)
        try:
            result = await handle.executor.execute(handle, context, runtime)
        except Exception as e:
            error = StepError.from_exception(e)
            logger.debug(f"Step '{step.id}' raised {error.exception_type}: {error.message}")
            return StepResult.failure(step, started, error, executor_name=handle.executor_name)

        if not isinstance(result, StepResult):
            result = handle.executor.complete(step, context, result, started)
        return result

    async def dispatch(
        self, step: StepDefinition, context: FlowContext, runtime: StepRuntime
    ) -> StepResult:
        """Resolve and invoke in one call; resolution failures become Failed results."""
        started = datetime.now(UTC)
        try:
            handle = self.resolve(step)
        except FlowError as e:
            logger.warning(f"Dispatch failed for step '{step.id}': {e.message}")
            return StepResult.failure(step, started, StepError.from_exception(e))
        return await self.invoke(handle, context, runtime)
