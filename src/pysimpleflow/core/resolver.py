"""
Dependency resolution for flow steps.

Validates the step dependency graph and produces a deterministic
topological order:

1. Reference check: every dependency names a declared step
2. Cycle detection: depth-first traversal with a recursion stack
3. Ordering: Kahn's algorithm, with ties broken by declaration order

The functions take plain step ids and a dependency mapping, so they can be
used (and property-tested) without building definitions.

**Example**:
```python
resolve(["a", "b", "c"], {"b": ["a"], "c": ["a"]})
# ['a', 'b', 'c']

execution_levels(["a", "b", "c"], {"b": ["a"], "c": ["a"]})
# [['a'], ['b', 'c']]
```
"""

import heapq
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from pysimpleflow.models.errors import FlowError

Dependencies = Mapping[str, Iterable[str]]


def validate_graph(
    step_ids: Sequence[str], dependencies: Dependencies, *, flow_id: str | None = None
) -> None:
    """
    Check that ids are unique and every dependency refers to a declared step.

    **Raises**:
        FlowError: DEFINITION error for duplicates or unknown references
    """
    declared: set[str] = set()
    for step_id in step_ids:
        if step_id in declared:
            raise FlowError.definition(
                f"Duplicate step id '{step_id}'", flow_id=flow_id, step_id=step_id
            )
        declared.add(step_id)

    for step_id, deps in dependencies.items():
        if step_id not in declared:
            raise FlowError.definition(
                f"Dependencies declared for unknown step '{step_id}'",
                flow_id=flow_id,
                step_id=step_id,
            )
        for dep in deps:
            if dep not in declared:
                raise FlowError.definition(
                    f"Step '{step_id}' depends on non-existent step '{dep}'",
                    flow_id=flow_id,
                    step_id=step_id,
                )


def find_cycle(step_ids: Sequence[str], dependencies: Dependencies) -> list[str] | None:
    """
    Look for a dependency cycle.

    Depth-first traversal from every step in declaration order, keeping a
    "visiting" set (the recursion stack) and a "visited" set. Reaching a
    step that is still being visited closes a cycle.

    **Returns**:
        The cycle as a path that starts and ends on the same step id, or
        None if the graph is acyclic
    """
    visited: set[str] = set()
    visiting: list[str] = []
    on_stack: set[str] = set()

    def visit(step_id: str) -> list[str] | None:
        visiting.append(step_id)
        on_stack.add(step_id)

        for dep in dependencies.get(step_id, ()):
            if dep in on_stack:
                return visiting[visiting.index(dep) :] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle

        on_stack.discard(step_id)
        visiting.pop()
        visited.add(step_id)
        return None

    for step_id in step_ids:
        if step_id not in visited:
            cycle = visit(step_id)
            if cycle:
                return cycle
    return None


def resolve(
    step_ids: Sequence[str], dependencies: Dependencies, *, flow_id: str | None = None
) -> list[str]:
    """
    Produce a topological order of the steps.

    When several steps are ready at the same time, the one declared first
    runs first, so the order is stable for a given definition.

    **Args**:
        step_ids: Step ids in declaration order
        dependencies: step id → ids it depends on
        flow_id: Used for error context only

    **Returns**:
        Every step id exactly once, each after all of its dependencies

    **Raises**:
        FlowError: DEFINITION error for an empty step list, unknown
            references or a dependency cycle
    """
    if not step_ids:
        raise FlowError.definition("Flow has no steps", flow_id=flow_id)

    validate_graph(step_ids, dependencies, flow_id=flow_id)

    cycle = find_cycle(step_ids, dependencies)
    if cycle:
        raise FlowError.definition(
            f"Cycle detected in dependency graph: {' -> '.join(cycle)}",
            flow_id=flow_id,
            step_id=cycle[0],
        )

    position = {step_id: index for index, step_id in enumerate(step_ids)}
    in_degree = {step_id: 0 for step_id in step_ids}
    dependents: dict[str, list[str]] = {step_id: [] for step_id in step_ids}
    for step_id, deps in dependencies.items():
        for dep in set(deps):
            in_degree[step_id] += 1
            dependents[dep].append(step_id)

    ready = [position[s] for s in step_ids if in_degree[s] == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        step_id = step_ids[heapq.heappop(ready)]
        order.append(step_id)
        for dependent in dependents[step_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, position[dependent])

    # Unreachable after find_cycle, kept as a guard against inconsistent input
    if len(order) != len(step_ids):
        raise FlowError.definition(
            "Deadlock: not every step could be ordered. Possible cycle in dependency graph.",
            flow_id=flow_id,
        )
    return order


def calculate_depths(step_ids: Sequence[str], dependencies: Dependencies) -> dict[str, int]:
    """
    Calculate the depth of each step (distance from a root).

    Roots have depth 0, their dependents depth 1, and so on. Assumes an
    acyclic graph; steps on a cycle are left out.
    """
    depths: dict[str, int] = {}

    changed = True
    while changed:
        changed = False
        for step_id in step_ids:
            if step_id in depths:
                continue
            dep_depths = [depths.get(dep) for dep in dependencies.get(step_id, ())]
            if all(d is not None for d in dep_depths):
                depths[step_id] = max(dep_depths, default=-1) + 1
                changed = True

    return depths


def execution_levels(step_ids: Sequence[str], dependencies: Dependencies) -> list[list[str]]:
    """
    Group steps by depth.

    Steps in the same level have no dependency on each other and may run
    concurrently; within a level, declaration order is kept.
    """
    depths = calculate_depths(step_ids, dependencies)
    if not depths:
        return []
    levels: list[list[str]] = [[] for _ in range(max(depths.values()) + 1)]
    for step_id in step_ids:
        if step_id in depths:
            levels[depths[step_id]].append(step_id)
    return levels


@dataclass(frozen=True)
class GraphSummary:
    """
    Summary information about a dependency graph.

    **Attributes**:
        total_steps: Total number of steps
        roots: Steps without dependencies
        leaves: Steps nothing depends on
        max_depth: Depth of the deepest step
    """

    total_steps: int
    roots: tuple[str, ...]
    leaves: tuple[str, ...]
    max_depth: int

    @property
    def root_count(self) -> int:
        return len(self.roots)

    @property
    def leaf_count(self) -> int:
        return len(self.leaves)


def summarize(step_ids: Sequence[str], dependencies: Dependencies) -> GraphSummary:
    """Compute roots, leaves and maximum depth of the graph."""
    depended_on: set[str] = set()
    for deps in dependencies.values():
        depended_on.update(deps)

    depths = calculate_depths(step_ids, dependencies)
    return GraphSummary(
        total_steps=len(step_ids),
        roots=tuple(s for s in step_ids if not tuple(dependencies.get(s, ()))),
        leaves=tuple(s for s in step_ids if s not in depended_on),
        max_depth=max(depths.values(), default=0),
    )


def format_levels(step_ids: Sequence[str], dependencies: Dependencies) -> str:
    """
    Render the execution levels as text.

    **Example output**:
    ```
    Level 0: [validate]
             ↓
    Level 1: [reserve] [charge] (2 independent steps)
    ```
    """
    levels = execution_levels(step_ids, dependencies)
    lines: list[str] = []
    for index, level in enumerate(levels):
        note = f" ({len(level)} independent steps)" if len(level) > 1 else ""
        lines.append(f"Level {index}: [{'] ['.join(level)}]{note}")
        if index < len(levels) - 1:
            lines.append("         ↓")
    return "\n".join(lines)
