"""Core building blocks: dependency resolution, execution context,
condition evaluation, handler capabilities and the handler registry.
"""

from pysimpleflow.core.builder import FlowBuilder
from pysimpleflow.core.conditions import (
    ConditionEvaluationError,
    ConditionEvaluator,
    SimpleEvalConditionEvaluator,
    evaluate_condition,
)
from pysimpleflow.core.context import ExecutionControl, FlowContext
from pysimpleflow.core.nodes import ConditionNode, ExecutableNode, StepHandler
from pysimpleflow.core.registry import HandlerRegistry
from pysimpleflow.core.resolver import (
    GraphSummary,
    execution_levels,
    find_cycle,
    format_levels,
    resolve,
    summarize,
)

__all__ = [
    "ConditionEvaluationError",
    "ConditionEvaluator",
    "ConditionNode",
    "ExecutableNode",
    "ExecutionControl",
    "FlowBuilder",
    "FlowContext",
    "GraphSummary",
    "HandlerRegistry",
    "SimpleEvalConditionEvaluator",
    "StepHandler",
    "evaluate_condition",
    "execution_levels",
    "find_cycle",
    "format_levels",
    "resolve",
    "summarize",
]
