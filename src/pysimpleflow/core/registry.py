"""Name → implementation bindings used by the step dispatcher.

The registry replaces reflective class/method lookup: configuration names a
bean, node or executor by string, and the application binds that string to
an object at startup.

It is an explicit object handed to the engine, not a process-wide
singleton. Reads are lock-free against copy-on-write snapshots, writes are
serialized, so registering while executions are running is safe for
concurrent readers.
"""

import logging
import threading
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pysimpleflow.core.nodes import ConditionNode, ExecutableNode

if TYPE_CHECKING:
    from pysimpleflow.executor.handlers import StepExecutor

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Beans, nodes and custom executors, keyed by name.

    Usage:
        registry = HandlerRegistry()
        registry.register_bean("orderService", OrderService())
        registry.register_executable_node("score", ScoreNode())
        registry.register_condition_node("isVip", VipCheck())

        engine = FlowEngine(registry)
    """

    def __init__(self):
        self._write_lock = threading.Lock()
        self._beans: MappingProxyType[str, Any] = MappingProxyType({})
        self._executable_nodes: MappingProxyType[str, ExecutableNode] = MappingProxyType({})
        self._condition_nodes: MappingProxyType[str, ConditionNode] = MappingProxyType({})
        self._executors: MappingProxyType[str, StepExecutor] = MappingProxyType({})

    def __repr__(self) -> str:
        return (
            f"HandlerRegistry(beans={len(self._beans)}, "
            f"executable_nodes={len(self._executable_nodes)}, "
            f"condition_nodes={len(self._condition_nodes)}, executors={len(self._executors)})"
        )

    @staticmethod
    def _check_name(name: str) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Registration name cannot be empty")

    def _put(self, attr: str, name: str, value: Any) -> None:
        self._check_name(name)
        if value is None:
            raise ValueError(f"Cannot register None under '{name}'")
        with self._write_lock:
            updated = dict(getattr(self, attr))
            updated[name] = value
            setattr(self, attr, MappingProxyType(updated))

    def _drop(self, attr: str, name: str) -> bool:
        with self._write_lock:
            current = getattr(self, attr)
            if name not in current:
                return False
            updated = dict(current)
            del updated[name]
            setattr(self, attr, MappingProxyType(updated))
            return True

    # =========================================================================
    # Registration
    # =========================================================================

    def register_bean(self, name: str, bean: Any) -> "HandlerRegistry":
        """Bind a service object or plain callable to a bean name."""
        self._put("_beans", name, bean)
        logger.debug(f"Registered bean: {name} -> {type(bean).__name__}")
        return self

    def register_executable_node(self, name: str, node: ExecutableNode) -> "HandlerRegistry":
        if not isinstance(node, ExecutableNode):
            raise TypeError(f"{type(node).__name__} does not implement ExecutableNode")
        self._put("_executable_nodes", name, node)
        logger.debug(f"Registered executable node: {name}")
        return self

    def register_condition_node(self, name: str, node: ConditionNode) -> "HandlerRegistry":
        if not isinstance(node, ConditionNode):
            raise TypeError(f"{type(node).__name__} does not implement ConditionNode")
        self._put("_condition_nodes", name, node)
        logger.debug(f"Registered condition node: {name}")
        return self

    def register_executor(self, key: str, executor: "StepExecutor") -> "HandlerRegistry":
        """Bind a custom StepExecutor; steps select it via StepDefinition.executor."""
        self._put("_executors", key, executor)
        logger.debug(f"Registered step executor: {key} -> {type(executor).__name__}")
        return self

    def unregister(self, name: str) -> bool:
        """Remove a name from every table. Returns True if anything was removed."""
        removed = False
        for attr in ("_beans", "_executable_nodes", "_condition_nodes", "_executors"):
            removed = self._drop(attr, name) or removed
        return removed

    def clear(self) -> None:
        with self._write_lock:
            self._beans = MappingProxyType({})
            self._executable_nodes = MappingProxyType({})
            self._condition_nodes = MappingProxyType({})
            self._executors = MappingProxyType({})

    # =========================================================================
    # Lookup
    # =========================================================================

    def get_bean(self, name: str) -> Any | None:
        return self._beans.get(name)

    def get_executable_node(self, name: str) -> ExecutableNode | None:
        return self._executable_nodes.get(name)

    def get_condition_node(self, name: str) -> ConditionNode | None:
        return self._condition_nodes.get(name)

    def get_executor(self, key: str) -> "StepExecutor | None":
        return self._executors.get(key)

    def has_bean(self, name: str) -> bool:
        return name in self._beans

    @property
    def bean_names(self) -> list[str]:
        return list(self._beans)

    @property
    def node_names(self) -> list[str]:
        return [*self._executable_nodes, *self._condition_nodes]

    @property
    def executor_keys(self) -> list[str]:
        return list(self._executors)
