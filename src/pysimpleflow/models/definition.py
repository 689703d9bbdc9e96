"""Immutable flow and step definitions.

A FlowDefinition is produced by a front-end (in-code builder, mapping
loader, annotation scanner), registered once with the engine and never
mutated afterwards. Replacing a flow means registering a new definition
under the same id.

Collections handed to the constructors are copied into tuples and read-only
mappings, so a definition cannot be changed through a reference the caller
kept.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from functools import cached_property
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pysimpleflow.models.errors import FlowError
from pysimpleflow.models.status import StepType

if TYPE_CHECKING:
    from pysimpleflow.core.resolver import GraphSummary


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


def _steps(values: Sequence[Any] | None) -> tuple[StepDefinition, ...]:
    if not values:
        return ()
    return tuple(
        v if isinstance(v, StepDefinition) else StepDefinition.from_mapping(v) for v in values
    )


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass(frozen=True)
class BranchCase:
    """One (condition, steps) pair of a multi-case conditional."""

    condition: str
    steps: tuple[StepDefinition, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "steps", _steps(self.steps))


@dataclass(frozen=True)
class BranchConfig:
    """Branch lists of a conditional step.

    Either the boolean pair (true_steps / false_steps) or an ordered list of
    cases plus an optional default branch. Cases win when both are given.
    """

    true_steps: tuple[StepDefinition, ...] = ()
    false_steps: tuple[StepDefinition, ...] = ()
    cases: tuple[BranchCase, ...] = ()
    default_steps: tuple[StepDefinition, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "true_steps", _steps(self.true_steps))
        object.__setattr__(self, "false_steps", _steps(self.false_steps))
        object.__setattr__(self, "default_steps", _steps(self.default_steps))
        object.__setattr__(
            self,
            "cases",
            tuple(
                c
                if isinstance(c, BranchCase)
                else BranchCase(condition=c["condition"], steps=c.get("steps", ()))
                for c in self.cases
            ),
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> BranchConfig:
        """Build branches from a loader mapping (snake_case or camelCase keys)."""
        return cls(
            true_steps=_pick(data, "true_steps", "trueSteps", default=()),
            false_steps=_pick(data, "false_steps", "falseSteps", default=()),
            cases=_pick(data, "cases", default=()),
            default_steps=_pick(data, "default_steps", "defaultSteps", "default", default=()),
        )

    @property
    def is_multi_case(self) -> bool:
        return bool(self.cases)

    @property
    def is_empty(self) -> bool:
        return not (self.true_steps or self.false_steps or self.cases or self.default_steps)

    def iter_steps(self) -> Iterator[StepDefinition]:
        """Yield every step of every branch, in declaration order."""
        yield from self.true_steps
        yield from self.false_steps
        for case in self.cases:
            yield from case.steps
        yield from self.default_steps


@dataclass(frozen=True)
class StepDefinition:
    """
    One unit of work within a flow.

    Attributes:
        id: Unique within the flow, nested steps included
        name: Display name (defaults to id)
        type: Declared kind; selects the default handler family
        description: Free text
        executor: Explicit executor key, highest dispatch precedence
        parameters: Handler binding and configuration ("node", "bean",
            "method", "script", "collection", "flow", ...)
        condition: Guard expression; for conditional types, the branch selector
        sub_steps: Nested steps of PARALLEL and LOOP steps
        branches: Branch lists of conditional steps
        timeout_ms: Bound for a single invocation attempt of a leaf step
        max_retries: Retries after a failed attempt (None uses the engine default)
        retry_delay_ms: Delay between attempts (None uses the engine default)
        skip_on_error: Continue the flow when this step fails
        properties: Free-form metadata, not interpreted by the engine
    """

    id: str
    name: str = ""
    type: StepType = StepType.SIMPLE
    description: str = ""
    executor: str | None = None
    parameters: Mapping[str, Any] = field(default_factory=dict)
    condition: str | None = None
    sub_steps: tuple[StepDefinition, ...] = ()
    branches: BranchConfig | None = None
    timeout_ms: int | None = None
    max_retries: int | None = None
    retry_delay_ms: int | None = None
    skip_on_error: bool = False
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.type, str):
            object.__setattr__(self, "type", StepType(self.type.upper()))
        if not self.name:
            object.__setattr__(self, "name", self.id)
        object.__setattr__(self, "parameters", _freeze(self.parameters))
        object.__setattr__(self, "properties", _freeze(self.properties))
        object.__setattr__(self, "sub_steps", _steps(self.sub_steps))

        branches = self.branches
        if branches is None and isinstance(self.parameters.get("conditional"), Mapping):
            branches = self.parameters["conditional"]
        if isinstance(branches, Mapping):
            branches = BranchConfig.from_mapping(branches)
        object.__setattr__(self, "branches", branches)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> StepDefinition:
        """Build a step from the mapping shape produced by front-end loaders."""
        branches = data.get("branches")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            type=data.get("type", StepType.SIMPLE),
            description=data.get("description", ""),
            executor=data.get("executor"),
            parameters=data.get("parameters", {}),
            condition=data.get("condition"),
            sub_steps=_pick(data, "sub_steps", "subSteps", default=()),
            branches=branches,
            timeout_ms=_pick(data, "timeout_ms", "timeoutMs"),
            max_retries=_pick(data, "max_retries", "maxRetries"),
            retry_delay_ms=_pick(data, "retry_delay_ms", "retryDelayMs"),
            skip_on_error=bool(_pick(data, "skip_on_error", "skipOnError", default=False)),
            properties=data.get("properties", {}),
        )

    def iter_nested(self) -> Iterator[StepDefinition]:
        """Yield every nested step, depth first."""
        nested: list[StepDefinition] = list(self.sub_steps)
        if self.branches is not None:
            nested.extend(self.branches.iter_steps())
        for child in nested:
            yield child
            yield from child.iter_nested()

    def validate(self, flow_id: str | None = None) -> None:
        """Check the step's shape.

        Raises:
            FlowError: DEFINITION error describing the first problem found
        """

        def fail(message: str) -> None:
            raise FlowError.definition(message, flow_id=flow_id, step_id=self.id or None)

        if not isinstance(self.id, str) or not self.id.strip():
            fail("Step id must be a non-empty string")

        for attr in ("timeout_ms", "max_retries", "retry_delay_ms"):
            value = getattr(self, attr)
            if value is not None and value < 0:
                fail(f"Step '{self.id}' has negative {attr}: {value}")

        if self.type.is_conditional:
            if self.branches is None or self.branches.is_empty:
                fail(
                    f"Conditional step '{self.id}' must declare true/false branches "
                    "or a list of cases"
                )
        elif self.type is StepType.PARALLEL:
            if not self.sub_steps:
                fail(f"Parallel step '{self.id}' has no sub-steps")
        elif self.type is StepType.LOOP:
            if not self.sub_steps:
                fail(f"Loop step '{self.id}' has no sub-steps")
            if not self.parameters.get("collection"):
                fail(f"Loop step '{self.id}' must declare a 'collection' parameter")
        elif self.type is StepType.SUB_FLOW:
            if not self.parameters.get("flow"):
                fail(f"Sub-flow step '{self.id}' must declare a 'flow' parameter")

        for child in self.sub_steps:
            child.validate(flow_id)
        if self.branches is not None:
            for child in self.branches.iter_steps():
                child.validate(flow_id)


@dataclass(frozen=True)
class FlowDefinition:
    """
    A named, versioned set of steps with dependencies.

    Attributes:
        id: Unique registration key
        name: Display name (defaults to id)
        version: Free-form version label
        description: Free text
        steps: Top-level steps in declaration order
        dependencies: step id → ids of the steps it depends on
        properties: Free-form metadata
        sync: Whether Engine.run() awaits the result or returns a handle
        thread_pool: Named worker pool for blocking handlers
        parallel: Run independent steps concurrently instead of one by one

    Example:
        flow = FlowDefinition(
            id="orders",
            steps=(StepDefinition("a"), StepDefinition("b"), StepDefinition("c")),
            dependencies={"b": ["a"], "c": ["a"]},
        )
        flow.execution_order  # ("a", "b", "c")
    """

    id: str
    name: str = ""
    version: str = "1.0"
    description: str = ""
    steps: tuple[StepDefinition, ...] = ()
    dependencies: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    properties: Mapping[str, Any] = field(default_factory=dict)
    sync: bool = True
    thread_pool: str | None = None
    parallel: bool = False

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, "name", self.id)
        object.__setattr__(self, "steps", _steps(self.steps))
        object.__setattr__(
            self,
            "dependencies",
            MappingProxyType(
                {
                    step_id: (deps,) if isinstance(deps, str) else tuple(deps)
                    for step_id, deps in (self.dependencies or {}).items()
                }
            ),
        )
        object.__setattr__(self, "properties", _freeze(self.properties))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> FlowDefinition:
        """
        Build a flow from the mapping shape produced by front-end loaders.

        Dependencies may be given as a top-level "dependencies" map or per
        step as "depends_on"; both are merged.
        """
        dependencies: dict[str, list[str]] = {
            k: [v] if isinstance(v, str) else list(v)
            for k, v in (data.get("dependencies") or {}).items()
        }
        for step in data.get("steps", ()):
            if isinstance(step, Mapping):
                declared = _pick(step, "depends_on", "dependsOn", default=())
                if isinstance(declared, str):
                    declared = [declared]
                for dep in declared:
                    dependencies.setdefault(step["id"], [])
                    if dep not in dependencies[step["id"]]:
                        dependencies[step["id"]].append(dep)

        return cls(
            id=data["id"],
            name=data.get("name", ""),
            version=str(data.get("version", "1.0")),
            description=data.get("description", ""),
            steps=data.get("steps", ()),
            dependencies=dependencies,
            properties=data.get("properties", {}),
            sync=bool(data.get("sync", True)),
            thread_pool=_pick(data, "thread_pool", "threadPoolName"),
            parallel=bool(data.get("parallel", False)),
        )

    @cached_property
    def _step_index(self) -> dict[str, StepDefinition]:
        return {step.id: step for step in self.steps}

    @property
    def step_ids(self) -> tuple[str, ...]:
        return tuple(step.id for step in self.steps)

    def get_step(self, step_id: str) -> StepDefinition | None:
        """Look up a top-level step by id."""
        return self._step_index.get(step_id)

    def dependencies_of(self, step_id: str) -> tuple[str, ...]:
        return self.dependencies.get(step_id, ())

    @cached_property
    def execution_order(self) -> tuple[str, ...]:
        """Topological order of the top-level steps, computed once.

        Raises:
            FlowError: DEFINITION error if the dependency graph is invalid
        """
        from pysimpleflow.core.resolver import resolve

        return tuple(resolve(self.step_ids, self.dependencies, flow_id=self.id))

    def levels(self) -> list[list[str]]:
        """Group steps by dependency depth; steps in one level are independent."""
        from pysimpleflow.core.resolver import execution_levels

        return execution_levels(self.step_ids, self.dependencies)

    def summary(self) -> GraphSummary:
        from pysimpleflow.core.resolver import summarize

        return summarize(self.step_ids, self.dependencies)

    def validate(self) -> None:
        """
        Check the whole definition before it is accepted.

        Checks, in order: non-empty id, non-empty step list, step shapes,
        unique step ids (nested steps included), dependency references and
        acyclicity.

        Raises:
            FlowError: DEFINITION error describing the first problem found
        """
        if not isinstance(self.id, str) or not self.id.strip():
            raise FlowError.definition("Flow id must be a non-empty string")
        if not self.steps:
            raise FlowError.definition(f"Flow '{self.id}' has no steps", flow_id=self.id)

        seen: set[str] = set()
        for step in self.steps:
            step.validate(self.id)
            for candidate in (step, *step.iter_nested()):
                if candidate.id in seen:
                    raise FlowError.definition(
                        f"Duplicate step id '{candidate.id}' in flow '{self.id}'",
                        flow_id=self.id,
                        step_id=candidate.id,
                    )
                seen.add(candidate.id)

        # Populates the cached order; raises on unknown references or cycles
        _ = self.execution_order

    def __repr__(self) -> str:
        return f"FlowDefinition(id={self.id!r}, version={self.version!r}, steps={len(self.steps)})"
