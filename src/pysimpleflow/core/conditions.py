"""Condition evaluation for guards and branch selection.

The engine depends only on the ConditionEvaluator protocol:
evaluate(expression, variables) -> value. The default implementation uses
simpleeval, which evaluates a safe subset of Python expressions without
exec/eval. JEXL-style operators (&&, ||, !) and the literals true, false
and null are translated so definitions written for the JVM loaders keep
working.

evaluate_condition() applies the engine's truth rules on top of any
evaluator: an empty expression is true, a non-boolean value is judged by
its truthiness, and any failure to evaluate counts as false.
"""

import logging
import re
from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from simpleeval import EvalWithCompoundTypes

logger = logging.getLogger(__name__)


class ConditionEvaluationError(Exception):
    """Expression could not be evaluated.

    Raised by evaluators; never propagated past evaluate_condition().
    """

    def __init__(self, expression: str, message: str):
        super().__init__(f"Failed to evaluate {expression!r}: {message}")
        self.expression = expression


@runtime_checkable
class ConditionEvaluator(Protocol):
    """Evaluates an expression against a snapshot of variables."""

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> Any: ...


# String literals are matched first so operators inside quotes stay untouched
_OPERATORS = re.compile(
    r"""(?P<literal>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")"""
    r"|(?P<and>&&)|(?P<or>\|\|)|(?P<not>!(?!=))"
)
_REPLACEMENTS = {"and": " and ", "or": " or ", "not": " not "}

LITERALS: dict[str, Any] = {"true": True, "false": False, "null": None}


def normalize_expression(expression: str) -> str:
    """Translate JEXL-style boolean operators into Python syntax, outside string literals."""

    def replace(match: re.Match) -> str:
        if match.lastgroup == "literal":
            return match.group()
        return _REPLACEMENTS[match.lastgroup]

    return _OPERATORS.sub(replace, expression).strip()


def _contains(container: Any, item: Any) -> bool:
    return container is not None and item in container


def _is_empty(value: Any) -> bool:
    return value is None or (hasattr(value, "__len__") and len(value) == 0)


DEFAULT_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "bool": bool,
    "contains": _contains,
    "empty": _is_empty,
    "float": float,
    "int": int,
    "len": len,
    "lower": lambda s: str(s).lower(),
    "max": max,
    "min": min,
    "round": round,
    "str": str,
    "upper": lambda s: str(s).upper(),
}


class SimpleEvalConditionEvaluator:
    """
    ConditionEvaluator backed by simpleeval.

    Variables are exposed as names; dict values support both `a["b"]` and
    `a.b` access.

    Usage:
        evaluator = SimpleEvalConditionEvaluator()
        evaluator.evaluate("amount > 1000 && region == 'eu'", {"amount": 1500, "region": "eu"})
        # True
    """

    def __init__(self, functions: Mapping[str, Callable[..., Any]] | None = None):
        self._functions = dict(DEFAULT_FUNCTIONS)
        if functions:
            self._functions.update(functions)

    def with_function(self, name: str, func: Callable[..., Any]) -> "SimpleEvalConditionEvaluator":
        """Expose an extra function to expressions (builder pattern)."""
        self._functions[name] = func
        return self

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> Any:
        text = normalize_expression(expression)
        names = {**LITERALS, **variables}
        evaluator = EvalWithCompoundTypes(names=names, functions=self._functions)
        try:
            return evaluator.eval(text)
        except Exception as e:
            raise ConditionEvaluationError(expression, f"{type(e).__name__}: {e}") from e


def evaluate_condition(
    evaluator: ConditionEvaluator, expression: str | None, variables: Mapping[str, Any]
) -> bool:
    """
    Evaluate a guard or branch condition with the engine's truth rules.

    Args:
        evaluator: Expression backend
        expression: Condition text; empty or None means "always true"
        variables: Names visible to the expression

    Returns:
        The boolean outcome; False if evaluation failed for any reason
    """
    if expression is None or not expression.strip():
        return True
    try:
        value = evaluator.evaluate(expression, variables)
    except Exception as e:
        logger.warning(f"Condition evaluation failed, treating as false: {e}")
        return False
    if isinstance(value, bool):
        return value
    return bool(value)
