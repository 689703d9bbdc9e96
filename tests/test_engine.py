"""
Tests for flow execution semantics.

These tests run complete flows through FlowEngine.execute() and check:
- Sequential order, guards and failure handling
- Conditional branches (boolean and multi-case)
- Retry and timeout policy
- Composite steps: parallel, loop, sub-flow
- Wave scheduling of independent steps
"""

import asyncio
import time

import pytest

from conftest import Flaky, Sleeper
from pysimpleflow import (
    ErrorKind,
    FlowBuilder,
    FlowContext,
    FlowDefinition,
    FlowStatus,
    StepDefinition,
    StepHandler,
    StepStatus,
    StepType,
)


def svc(step_id: str, method: str, **fields) -> StepDefinition:
    """Step bound to a method of the shared recorder bean."""
    params = {"bean": "svc", "method": method, **fields.pop("parameters", {})}
    return StepDefinition(step_id, parameters=params, **fields)


class Timed:
    """Async bean that records when its call started and ended."""

    def __init__(self, key: str, spans: dict, seconds: float = 0.1):
        self.key = key
        self.spans = spans
        self.seconds = seconds

    async def work(self) -> str:
        started = time.monotonic()
        await asyncio.sleep(self.seconds)
        self.spans[self.key] = (started, time.monotonic())
        return "done"


def timed_steps(registry, *step_ids: str) -> tuple[dict, list[StepDefinition]]:
    """One Timed bean per step, all writing into a shared spans dict."""
    spans: dict[str, tuple[float, float]] = {}
    steps = []
    for step_id in step_ids:
        registry.register_bean(f"timed-{step_id}", Timed(step_id, spans))
        steps.append(
            StepDefinition(step_id, parameters={"bean": f"timed-{step_id}", "method": "work"})
        )
    return spans, steps


class Math:
    def double(self, item: int) -> int:
        return item * 2

    def label(self, item: str, index: int) -> str:
        return f"{index}:{item}"


class SetVariable(StepHandler):
    def __init__(self, key: str, value):
        self.key = key
        self.value = value

    async def execute(self, context: FlowContext):
        context.set(self.key, self.value)
        return self.value


# ==============================================================================
# Sequential execution
# ==============================================================================


@pytest.mark.asyncio
async def test_steps_run_in_topological_order(engine, recorder):
    flow = FlowDefinition(
        id="orders",
        steps=(svc("notify", "notify"), svc("validate", "validate"), svc("auto", "auto_approve")),
        dependencies={"notify": ["auto"], "auto": ["validate"]},
    )
    engine.register(flow)

    result = await engine.execute("orders", {"amount": 5})

    assert result.status is FlowStatus.SUCCESS
    assert recorder.calls == ["validate", "autoApprove", "notify"]
    assert result.executed_step_ids == ["validate", "auto", "notify"]
    assert result.output["validate_result"] == "validated 5"
    assert result.output["amount"] == 5
    assert result.error is None


@pytest.mark.asyncio
async def test_false_guard_skips_step_and_continues(engine, recorder):
    flow = FlowDefinition(
        id="guarded",
        steps=(
            svc("validate", "validate"),
            svc("notify", "notify", condition="amount > limit", parameters={"limit": 10}),
            svc("approve", "auto_approve"),
        ),
        dependencies={"notify": ["validate"], "approve": ["notify"]},
    )
    engine.register(flow)

    result = await engine.execute("guarded", {"amount": 5})

    assert result.status is FlowStatus.SUCCESS
    skipped = result.get_step_result("notify")
    assert skipped.status is StepStatus.SKIPPED
    assert "evaluated false" in skipped.metadata["skip_reason"]
    assert recorder.calls == ["validate", "autoApprove"]
    assert result.skipped_steps == 1


@pytest.mark.asyncio
async def test_unevaluable_guard_counts_as_false(engine, recorder):
    flow = FlowDefinition(id="f", steps=(svc("notify", "notify", condition="nope > 1"),))
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.SUCCESS
    assert result.get_step_result("notify").is_skipped
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_failure_halts_flow(engine, recorder):
    flow = FlowDefinition(
        id="f",
        steps=(svc("validate", "validate"), svc("explode", "explode"), svc("notify", "notify")),
        dependencies={"explode": ["validate"], "notify": ["explode"]},
    )
    engine.register(flow)

    result = await engine.execute("f", {"amount": 1})

    assert result.status is FlowStatus.FAILED
    assert recorder.calls == ["validate", "explode"]
    assert result.get_step_result("notify") is None
    assert result.error.kind is ErrorKind.EXECUTION
    assert result.error_message == "boom"
    assert result.failed_steps == 1


@pytest.mark.asyncio
async def test_skip_on_error_continues(engine, recorder):
    flow = FlowDefinition(
        id="f",
        steps=(svc("explode", "explode", skip_on_error=True), svc("notify", "notify")),
        dependencies={"notify": ["explode"]},
    )
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.SUCCESS
    failed = result.get_step_result("explode")
    assert failed.status is StepStatus.FAILED
    assert failed.metadata["continued"] is True
    assert recorder.calls == ["explode", "notify"]


@pytest.mark.asyncio
async def test_unbound_step_fails_without_retry(engine):
    flow = FlowDefinition(id="f", steps=(StepDefinition("orphan", max_retries=3),))
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.FAILED
    orphan = result.get_step_result("orphan")
    assert orphan.error.kind is ErrorKind.DISPATCH
    assert orphan.retry_count == 0


# ==============================================================================
# Conditional steps
# ==============================================================================


def loan_flow() -> FlowDefinition:
    return (
        FlowBuilder("loan")
        .add(svc("validate", "validate"))
        .conditional(
            "route",
            condition="amount > 1000",
            true_steps=[svc("riskAssess", "risk_assess")],
            false_steps=[svc("autoApprove", "auto_approve")],
            depends_on=["validate"],
        )
        .add(svc("notify", "notify"), depends_on=["route"])
        .build()
    )


@pytest.mark.asyncio
async def test_large_loan_takes_true_branch(engine, recorder):
    engine.register(loan_flow())

    result = await engine.execute("loan", {"amount": 1500})

    assert result.status is FlowStatus.SUCCESS
    route = result.get_step_result("route")
    assert route.output["branch"] == "true"
    assert route.output["conditionResult"] is True
    assert route.output["executed_steps"] == ["riskAssess"]
    assert recorder.calls == ["validate", "riskAssess", "notify"]
    assert result.executed_step_ids == ["validate", "riskAssess", "route", "notify"]
    assert result.output["riskAssess_result"] == "high"


@pytest.mark.asyncio
async def test_small_loan_takes_false_branch(engine, recorder):
    engine.register(loan_flow())

    result = await engine.execute("loan", {"amount": 200})

    assert result.get_step_result("route").output["executed_steps"] == ["autoApprove"]
    assert recorder.calls == ["validate", "autoApprove", "notify"]


@pytest.mark.asyncio
async def test_failing_branch_fails_conditional(engine, recorder):
    flow = (
        FlowBuilder("f")
        .conditional("route", condition="true", true_steps=[svc("explode", "explode")])
        .build()
    )
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.FAILED
    assert result.get_step_result("route").status is StepStatus.FAILED
    assert "explode" in result.error_message


@pytest.mark.parametrize(
    ("tier", "expected_branch", "expected_calls"),
    [
        ("gold", "case:0", ["riskAssess"]),
        ("silver", "case:1", ["autoApprove"]),
        ("bronze", "default", ["notify"]),
    ],
)
@pytest.mark.asyncio
async def test_multi_case_first_match_wins(engine, recorder, tier, expected_branch, expected_calls):
    flow = (
        FlowBuilder("tiers")
        .conditional(
            "route",
            cases=[
                ("tier == 'gold'", [svc("riskAssess", "risk_assess")]),
                ("tier == 'silver' || tier == 'gold'", [svc("autoApprove", "auto_approve")]),
            ],
            default_steps=[svc("notify", "notify")],
        )
        .build()
    )
    engine.register(flow)

    result = await engine.execute("tiers", {"tier": tier, "amount": 1})

    assert result.get_step_result("route").output["branch"] == expected_branch
    assert recorder.calls == expected_calls


@pytest.mark.asyncio
async def test_multi_case_without_match_or_default_is_noop(engine, recorder):
    flow = (
        FlowBuilder("f")
        .conditional("route", cases=[("tier == 'gold'", [svc("notify", "notify")])])
        .build()
    )
    engine.register(flow)

    result = await engine.execute("f", {"tier": "none"})

    assert result.status is FlowStatus.SUCCESS
    assert result.get_step_result("route").output["executed_steps"] == []
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_script_conditional_uses_script_parameter(engine, recorder):
    step = StepDefinition(
        "route",
        type=StepType.SCRIPT_CONDITIONAL,
        parameters={
            "script": "len(items) > 2",
            "conditional": {
                "trueSteps": [{"id": "many", "parameters": {"bean": "svc", "method": "notify"}}],
                "falseSteps": [
                    {"id": "few", "parameters": {"bean": "svc", "method": "auto_approve"}}
                ],
            },
        },
    )
    engine.register(FlowDefinition(id="f", steps=(step,)))

    result = await engine.execute("f", {"items": [1, 2, 3]})

    assert result.get_step_result("route").output["executed_steps"] == ["many"]
    assert recorder.calls == ["notify"]


# ==============================================================================
# Retry and timeout
# ==============================================================================


@pytest.mark.asyncio
async def test_retry_until_success(engine):
    flaky = Flaky(failures=2)
    engine.registry.register_bean("flaky", flaky)
    flow = FlowDefinition(
        id="f",
        steps=(StepDefinition("call", parameters={"bean": "flaky"}, max_retries=2),),
    )
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.SUCCESS
    assert flaky.attempts == 3
    call = result.get_step_result("call")
    assert call.retry_count == 2
    assert call.output["result"] == 3


@pytest.mark.asyncio
async def test_retry_budget_exhausted(engine):
    flaky = Flaky(failures=10)
    engine.registry.register_bean("flaky", flaky)
    flow = FlowDefinition(
        id="f",
        steps=(StepDefinition("call", parameters={"bean": "flaky"}, max_retries=2),),
    )
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.FAILED
    assert flaky.attempts == 3
    call = result.get_step_result("call")
    assert call.retry_count == 2
    assert call.error.message == "attempt 3 failed"


@pytest.mark.asyncio
async def test_retry_delay_is_applied(engine):
    flaky = Flaky(failures=1)
    engine.registry.register_bean("flaky", flaky)
    flow = FlowDefinition(
        id="f",
        steps=(
            StepDefinition(
                "call", parameters={"bean": "flaky"}, max_retries=1, retry_delay_ms=100
            ),
        ),
    )
    engine.register(flow)

    started = time.monotonic()
    result = await engine.execute("f")

    assert result.status is FlowStatus.SUCCESS
    assert time.monotonic() - started >= 0.09


@pytest.mark.asyncio
async def test_timeout_aborts_flow(engine, recorder):
    sleeper = Sleeper(seconds=1.0)
    engine.registry.register_bean("sleeper", sleeper)
    flow = FlowDefinition(
        id="f",
        steps=(
            StepDefinition("slow", parameters={"bean": "sleeper"}, timeout_ms=50),
            svc("notify", "notify"),
        ),
        dependencies={"notify": ["slow"]},
    )
    engine.register(flow)

    started = time.monotonic()
    result = await engine.execute("f")

    assert time.monotonic() - started < 0.9
    assert result.status is FlowStatus.TIMEOUT
    slow = result.get_step_result("slow")
    assert slow.status is StepStatus.TIMEOUT
    assert slow.error.kind is ErrorKind.TIMEOUT
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_timeouts_are_retried(engine):
    sleeper = Sleeper(seconds=1.0)
    engine.registry.register_bean("sleeper", sleeper)
    flow = FlowDefinition(
        id="f",
        steps=(
            StepDefinition(
                "slow", parameters={"bean": "sleeper"}, timeout_ms=20, max_retries=2
            ),
        ),
    )
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.TIMEOUT
    assert sleeper.runs == 3
    assert result.get_step_result("slow").retry_count == 2


@pytest.mark.asyncio
async def test_composite_step_is_not_retried_as_a_whole(engine, recorder):
    flaky = Flaky(failures=100)
    engine.registry.register_bean("flaky", flaky)
    flow = (
        FlowBuilder("f")
        .conditional(
            "route",
            condition="true",
            true_steps=[
                svc("notify", "notify"),
                StepDefinition("call", parameters={"bean": "flaky"}, max_retries=1),
            ],
            max_retries=3,
            timeout_ms=10,
        )
        .build()
    )
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.FAILED
    # Only the nested step's own retry ran; the succeeded step ran once
    assert recorder.calls == ["notify"]
    assert flaky.attempts == 2
    assert result.get_step_result("call").retry_count == 1
    assert result.get_step_result("route").retry_count == 0


# ==============================================================================
# Composite steps
# ==============================================================================


@pytest.mark.asyncio
async def test_parallel_step_runs_sub_steps_concurrently(engine):
    _, sub_steps = timed_steps(engine.registry, "x", "y", "z")
    flow = FlowDefinition(
        id="f", steps=(StepDefinition("fan", type=StepType.PARALLEL, sub_steps=sub_steps),)
    )
    engine.register(flow)

    started = time.monotonic()
    result = await engine.execute("f")
    elapsed = time.monotonic() - started

    assert result.status is FlowStatus.SUCCESS
    assert elapsed < 0.25
    assert sorted(result.get_step_result("fan").output["executed_steps"]) == ["x", "y", "z"]
    assert {result.output[f"{s}_result"] for s in "xyz"} == {"done"}


@pytest.mark.asyncio
async def test_parallel_step_fails_when_a_branch_fails(engine, recorder):
    flow = FlowDefinition(
        id="f",
        steps=(
            StepDefinition(
                "fan",
                type=StepType.PARALLEL,
                sub_steps=(svc("explode", "explode"), svc("notify", "notify")),
            ),
        ),
    )
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.FAILED
    fan = result.get_step_result("fan")
    assert fan.output["failed_steps"] == ["explode"]
    assert sorted(recorder.calls) == ["explode", "notify"]


@pytest.mark.asyncio
async def test_loop_runs_sub_steps_per_item(engine):
    engine.registry.register_bean("math", Math())
    flow = FlowDefinition(
        id="f",
        steps=(
            StepDefinition(
                "each",
                type=StepType.LOOP,
                parameters={"collection": "items"},
                sub_steps=(
                    StepDefinition("double", parameters={"bean": "math", "method": "double"}),
                    StepDefinition("label", parameters={"bean": "math", "method": "label"}),
                ),
            ),
        ),
    )
    engine.register(flow)

    result = await engine.execute("f", {"items": [1, 2, 3]})

    assert result.status is FlowStatus.SUCCESS
    each = result.get_step_result("each")
    assert each.output["iterations"] == 3
    assert each.output["results"] == [
        {"double": 2, "label": "0:1"},
        {"double": 4, "label": "1:2"},
        {"double": 6, "label": "2:3"},
    ]
    assert result.output["each_result"] == each.output["results"]
    # Iteration variables stay in the iteration scope
    assert "item" not in result.output


@pytest.mark.asyncio
async def test_loop_collection_expression_and_limit(engine):
    engine.registry.register_bean("math", Math())
    body = (StepDefinition("double", parameters={"bean": "math", "method": "double"}),)
    flow = FlowDefinition(
        id="f",
        steps=(
            StepDefinition(
                "each",
                type=StepType.LOOP,
                parameters={"collection": "order['lines']", "max_iterations": 2},
                sub_steps=body,
            ),
        ),
    )
    engine.register(flow)

    ok = await engine.execute("f", {"order": {"lines": [5, 6]}})
    assert ok.get_step_result("each").output["results"] == [{"double": 10}, {"double": 12}]

    too_many = await engine.execute("f", {"order": {"lines": [1, 2, 3]}})
    assert too_many.status is FlowStatus.FAILED
    assert "max_iterations=2" in too_many.error_message


@pytest.mark.asyncio
async def test_sub_flow_merges_child_variables(engine, recorder):
    engine.registry.register_bean("enricher", SetVariable("enriched", True))
    child = FlowDefinition(
        id="child", steps=(StepDefinition("enrich", parameters={"bean": "enricher"}),)
    )
    parent = FlowDefinition(
        id="parent",
        steps=(
            svc("validate", "validate"),
            StepDefinition("call", type=StepType.SUB_FLOW, parameters={"flow": "child"}),
            svc("notify", "notify"),
        ),
        dependencies={"call": ["validate"], "notify": ["call"]},
    )
    engine.register(child)
    engine.register(parent)

    result = await engine.execute("parent", {"amount": 3})

    assert result.status is FlowStatus.SUCCESS
    call = result.get_step_result("call")
    assert call.output["status"] == "SUCCESS"
    assert call.output["executed_steps"] == ["enrich"]
    assert result.output["enriched"] is True
    assert result.get_step_result("enrich") is None
    assert recorder.calls == ["validate", "notify"]


@pytest.mark.asyncio
async def test_failed_sub_flow_does_not_merge(engine):
    engine.registry.register_bean("marker", SetVariable("marked", True))
    child = FlowDefinition(
        id="bad-child",
        steps=(StepDefinition("mark", parameters={"bean": "marker"}), svc("explode", "explode")),
        dependencies={"explode": ["mark"]},
    )
    parent = FlowDefinition(
        id="parent",
        steps=(StepDefinition("call", type=StepType.SUB_FLOW, parameters={"flow": "bad-child"}),),
    )
    engine.register(child)
    engine.register(parent)

    result = await engine.execute("parent")

    assert result.status is FlowStatus.FAILED
    assert "Sub-flow 'bad-child'" in result.error_message
    assert "marked" not in result.output


@pytest.mark.asyncio
async def test_recursive_sub_flow_is_rejected(engine):
    flow = FlowDefinition(
        id="selfish",
        steps=(StepDefinition("again", type=StepType.SUB_FLOW, parameters={"flow": "selfish"}),),
    )
    engine.register(flow)

    result = await engine.execute("selfish")

    assert result.status is FlowStatus.FAILED
    assert "Recursive sub-flow" in result.error_message


@pytest.mark.asyncio
async def test_unknown_sub_flow_fails(engine):
    flow = FlowDefinition(
        id="f",
        steps=(StepDefinition("call", type=StepType.SUB_FLOW, parameters={"flow": "ghost"}),),
    )
    engine.register(flow)

    result = await engine.execute("f")

    assert result.status is FlowStatus.FAILED
    assert "not registered" in result.error_message


# ==============================================================================
# Wave scheduling
# ==============================================================================


@pytest.mark.asyncio
async def test_parallel_flow_runs_independent_steps_together(engine):
    spans, (a, b, c, join) = timed_steps(engine.registry, "a", "b", "c", "join")
    flow = (
        FlowBuilder("fan-in")
        .parallel()
        .add(a)
        .add(b)
        .add(c)
        .add(join, depends_on=["a", "b", "c"])
        .build()
    )
    engine.register(flow)

    started = time.monotonic()
    result = await engine.execute("fan-in")
    elapsed = time.monotonic() - started

    assert result.status is FlowStatus.SUCCESS
    assert elapsed < 0.35
    join_started = spans["join"][0]
    for dep in ("a", "b", "c"):
        assert spans[dep][1] <= join_started
    assert result.executed_step_ids[-1] == "join"


@pytest.mark.asyncio
async def test_parallel_flow_stops_after_failed_wave(engine, recorder):
    flow = (
        FlowBuilder("f")
        .parallel()
        .add(svc("explode", "explode"))
        .add(svc("validate", "validate"))
        .add(svc("notify", "notify"), depends_on=["explode", "validate"])
        .build()
    )
    engine.register(flow)

    result = await engine.execute("f", {"amount": 1})

    assert result.status is FlowStatus.FAILED
    assert sorted(recorder.calls) == ["explode", "validate"]
    assert result.get_step_result("notify") is None
