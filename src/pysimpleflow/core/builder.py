"""Fluent construction of flow definitions in code."""

from typing import Any

from pysimpleflow.models import BranchCase, BranchConfig, FlowDefinition, StepDefinition, StepType


class FlowBuilder:
    """Builder for FlowDefinition.

    Usage:
        flow = (
            FlowBuilder("loan")
            .name("Loan approval")
            .step("validate", bean="loanService", method="validate")
            .conditional(
                "route",
                condition="amount > 1000",
                true_steps=[StepDefinition("riskAssess", parameters={"bean": "risk"})],
                false_steps=[StepDefinition("autoApprove", parameters={"bean": "approver"})],
                depends_on=["validate"],
            )
            .build()
        )
    """

    def __init__(self, flow_id: str):
        self._id = flow_id
        self._name = ""
        self._version = "1.0"
        self._description = ""
        self._steps: list[StepDefinition] = []
        self._dependencies: dict[str, list[str]] = {}
        self._properties: dict[str, Any] = {}
        self._sync = True
        self._thread_pool: str | None = None
        self._parallel = False

    def name(self, name: str) -> "FlowBuilder":
        self._name = name
        return self

    def version(self, version: str) -> "FlowBuilder":
        self._version = version
        return self

    def description(self, description: str) -> "FlowBuilder":
        self._description = description
        return self

    def with_property(self, key: str, value: Any) -> "FlowBuilder":
        self._properties[key] = value
        return self

    def sync(self, sync: bool = True) -> "FlowBuilder":
        self._sync = sync
        return self

    def thread_pool(self, name: str) -> "FlowBuilder":
        self._thread_pool = name
        return self

    def parallel(self, parallel: bool = True) -> "FlowBuilder":
        """Run independent steps concurrently."""
        self._parallel = parallel
        return self

    def add(self, step: StepDefinition, depends_on: list[str] | None = None) -> "FlowBuilder":
        """Append a prebuilt step."""
        self._steps.append(step)
        if depends_on:
            self.depends_on(step.id, *depends_on)
        return self

    def step(
        self,
        step_id: str,
        *,
        bean: str | None = None,
        method: str | None = None,
        node: str | None = None,
        depends_on: list[str] | None = None,
        parameters: dict[str, Any] | None = None,
        **fields: Any,
    ) -> "FlowBuilder":
        """
        Append a step.

        `bean`, `method` and `node` are shorthands for the matching
        parameters; other keyword arguments are StepDefinition fields.
        """
        params = dict(parameters or {})
        for key, value in (("bean", bean), ("method", method), ("node", node)):
            if value is not None:
                params[key] = value
        return self.add(StepDefinition(step_id, parameters=params, **fields), depends_on)

    def conditional(
        self,
        step_id: str,
        *,
        condition: str | None = None,
        true_steps: list[StepDefinition] | None = None,
        false_steps: list[StepDefinition] | None = None,
        cases: list[tuple[str, list[StepDefinition]]] | None = None,
        default_steps: list[StepDefinition] | None = None,
        depends_on: list[str] | None = None,
        **fields: Any,
    ) -> "FlowBuilder":
        """Append a CONDITIONAL step; `cases` is a list of (condition, steps) pairs."""
        branches = BranchConfig(
            true_steps=tuple(true_steps or ()),
            false_steps=tuple(false_steps or ()),
            cases=tuple(BranchCase(c, tuple(s)) for c, s in (cases or ())),
            default_steps=tuple(default_steps or ()),
        )
        step = StepDefinition(
            step_id, type=StepType.CONDITIONAL, condition=condition, branches=branches, **fields
        )
        return self.add(step, depends_on)

    def depends_on(self, step_id: str, *dependencies: str) -> "FlowBuilder":
        declared = self._dependencies.setdefault(step_id, [])
        for dep in dependencies:
            if dep not in declared:
                declared.append(dep)
        return self

    def build(self) -> FlowDefinition:
        """Create the definition. Validation happens at registration."""
        return FlowDefinition(
            id=self._id,
            name=self._name,
            version=self._version,
            description=self._description,
            steps=tuple(self._steps),
            dependencies=self._dependencies,
            properties=self._properties,
            sync=self._sync,
            thread_pool=self._thread_pool,
            parallel=self._parallel,
        )
