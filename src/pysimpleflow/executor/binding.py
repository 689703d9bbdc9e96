"""Argument binding for bean methods.

A bean method is called with arguments chosen from its signature:

- no parameters: called without arguments
- a single parameter typed FlowContext (or named "context"/"ctx"):
  receives the context
- a single parameter typed as a mapping (or named "variables"): receives a
  snapshot of the variables
- otherwise every parameter is filled from the context variable with the
  same name, coerced to the annotated primitive type

Coercion never raises: a value that cannot be converted, or a missing
variable without a declared default, becomes the type's default
(0, 0.0, False, or None for anything else).
"""

import inspect
import logging
import types
import typing
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any

from pysimpleflow.core.context import FlowContext

logger = logging.getLogger(__name__)

PRIMITIVE_DEFAULTS: dict[type, Any] = {int: 0, float: 0.0, bool: False, str: None}

_CONTEXT_NAMES = frozenset({"context", "ctx"})
_MAPPING_NAMES = frozenset({"variables"})
_MAPPING_TYPES = (dict, Mapping, MutableMapping)
_TRUE = frozenset({"true", "yes", "on", "1"})
_FALSE = frozenset({"false", "no", "off", "0", ""})


def is_async_callable(func: Any) -> bool:
    """Check for coroutine functions, including objects with an async __call__."""
    if inspect.iscoroutinefunction(func):
        return True
    call = getattr(func, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


def _type_hints(func: Callable[..., Any]) -> dict[str, Any]:
    try:
        return typing.get_type_hints(func)
    except Exception:
        # Unresolvable forward references; fall back to raw annotations
        return dict(getattr(func, "__annotations__", {}) or {})


def _unwrap_optional(annotation: Any) -> Any:
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _is_context(param: inspect.Parameter, annotation: Any) -> bool:
    if isinstance(annotation, type) and issubclass(annotation, FlowContext):
        return True
    return annotation in (inspect.Parameter.empty, Any) and param.name in _CONTEXT_NAMES


def _is_mapping(param: inspect.Parameter, annotation: Any) -> bool:
    target = typing.get_origin(annotation) or annotation
    if target in _MAPPING_TYPES:
        return True
    return annotation is inspect.Parameter.empty and param.name in _MAPPING_NAMES


def primitive_default(annotation: Any) -> Any:
    return PRIMITIVE_DEFAULTS.get(_unwrap_optional(annotation))


def coerce_value(value: Any, annotation: Any, name: str = "") -> Any:
    """
    Convert a variable to the annotated primitive type.

    Non-primitive annotations pass the value through unchanged.
    """
    target = _unwrap_optional(annotation)
    if target not in PRIMITIVE_DEFAULTS:
        return value
    if value is None:
        return PRIMITIVE_DEFAULTS[target]
    if isinstance(value, target) and not (target is not bool and isinstance(value, bool)):
        return value

    try:
        if target is bool:
            if isinstance(value, str):
                text = value.strip().lower()
                if text in _TRUE:
                    return True
                if text in _FALSE:
                    return False
                raise ValueError(value)
            return bool(value)
        if target is int:
            if isinstance(value, str):
                text = value.strip()
                try:
                    return int(text)
                except ValueError:
                    return int(float(text))
            return int(value)
        if target is float:
            return float(value)
        return str(value)
    except (TypeError, ValueError, OverflowError):
        logger.warning(
            f"Cannot convert parameter '{name}' value {value!r} to {target.__name__}, "
            f"using default {PRIMITIVE_DEFAULTS[target]!r}"
        )
        return PRIMITIVE_DEFAULTS[target]


def bind_arguments(
    func: Callable[..., Any], context: FlowContext
) -> tuple[list[Any], dict[str, Any]]:
    """
    Choose the arguments for a bean method.

    Returns:
        (positional args, keyword args) to call `func` with
    """
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        # Builtins without a signature get the context
        return [context], {}

    params = [
        p
        for p in signature.parameters.values()
        if p.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
    ]
    if not params:
        return [], {}

    hints = _type_hints(func)

    def annotation_of(param: inspect.Parameter) -> Any:
        return hints.get(param.name, param.annotation)

    if len(params) == 1:
        only = params[0]
        if _is_context(only, annotation_of(only)):
            return [context], {}
        if _is_mapping(only, annotation_of(only)):
            return [context.get_all()], {}

    args: list[Any] = []
    kwargs: dict[str, Any] = {}
    for param in params:
        annotation = annotation_of(param)
        if _is_context(param, annotation):
            value = context
        elif context.contains(param.name):
            value = coerce_value(context.get(param.name), annotation, param.name)
        elif param.default is not inspect.Parameter.empty:
            value = param.default
        elif _is_mapping(param, annotation):
            value = context.get_all()
        else:
            value = primitive_default(annotation)

        if param.kind is inspect.Parameter.POSITIONAL_ONLY:
            args.append(value)
        else:
            kwargs[param.name] = value
    return args, kwargs
