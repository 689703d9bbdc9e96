"""Capabilities a bound handler can implement.

StepHandler is the canonical single-entrypoint for service beans: when a
bean implements it, the dispatcher calls execute(context) directly instead
of resolving a method by name.

ExecutableNode and ConditionNode are the two "node" capabilities. They work
on a plain dict built from the context variables, the step parameters and a
few reserved "_"-prefixed keys, which keeps nodes independent of the
engine's types.

Any of these methods may be a coroutine function; blocking implementations
run on the engine's worker pool.
"""

from abc import ABC, abstractmethod
from typing import Any


class StepHandler(ABC):
    """Bean with a canonical entrypoint.

    Example:
        class ReserveStock(StepHandler):
            async def execute(self, context):
                context.set("reserved", True)
                return {"sku": context.get("sku")}
    """

    @abstractmethod
    def execute(self, context: Any) -> Any:
        """Run the step against the FlowContext; the return value becomes the result."""


class ExecutableNode(ABC):
    """Node with a validate → prepare → execute → cleanup lifecycle.

    Keys written into the dict that do not start with "_" are copied back
    into the flow context after execution.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def description(self) -> str:
        return ""

    def validate(self, context: dict[str, Any]) -> bool:
        return True

    def prepare(self, context: dict[str, Any]) -> None:
        return None

    @abstractmethod
    def execute(self, context: dict[str, Any]) -> Any:
        """Do the work; the return value becomes the step result."""

    def cleanup(self, context: dict[str, Any]) -> None:
        return None


class ConditionNode(ABC):
    """Node that evaluates to a boolean.

    The outcome is stored in the context as "conditionResult" and
    "<step id>_result".
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    def validate(self, context: dict[str, Any]) -> bool:
        return True

    def prepare(self, context: dict[str, Any]) -> None:
        return None

    @abstractmethod
    def evaluate(self, context: dict[str, Any]) -> bool:
        """Decide the condition."""
