"""
Tests for execution stores.

The same contract is checked against the in-memory and SQLite adapters;
SQLite-specific behaviour (files, reconnecting, the connection guard) is
tested separately.
"""

from datetime import UTC, datetime, timedelta

import pytest

from pysimpleflow import (
    ErrorKind,
    FlowDefinition,
    FlowEngine,
    FlowResult,
    FlowStatus,
    InMemoryExecutionStore,
    NullExecutionStore,
    SqliteExecutionStore,
    StepDefinition,
    StepError,
    StepResult,
    StepStatus,
    StorageError,
)

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def step_result(step_id: str, status: StepStatus = StepStatus.SUCCESS, **fields) -> StepResult:
    return StepResult(
        step_id=step_id,
        step_name=step_id,
        status=status,
        started_at=T0,
        ended_at=T0 + timedelta(milliseconds=15),
        **fields,
    )


def flow_result(execution_id: str, flow_id: str = "orders", offset_s: int = 0, **fields) -> FlowResult:
    started = T0 + timedelta(seconds=offset_s)
    fields.setdefault("status", FlowStatus.SUCCESS)
    return FlowResult(
        execution_id=execution_id,
        flow_id=flow_id,
        flow_name=flow_id.title(),
        started_at=started,
        ended_at=started + timedelta(milliseconds=250),
        **fields,
    )


@pytest.fixture(params=["memory", "sqlite"])
async def store(request):
    if request.param == "memory":
        yield InMemoryExecutionStore()
        return
    sqlite_store = await SqliteExecutionStore.in_memory()
    yield sqlite_store
    await sqlite_store.close()


# ==============================================================================
# Shared contract
# ==============================================================================


@pytest.mark.asyncio
async def test_unknown_execution(store):
    assert await store.get_flow_result("missing") is None
    assert await store.get_step_results("missing") == []
    assert await store.list_executions("orders") == []


@pytest.mark.asyncio
async def test_step_results_keep_save_order(store):
    # A loop saves the same step id repeatedly
    for step_id in ("validate", "charge", "charge", "notify"):
        await store.save_step_result("e1", "orders", step_result(step_id))
    await store.save_step_result("e2", "orders", step_result("other"))

    saved = await store.get_step_results("e1")
    assert [r.step_id for r in saved] == ["validate", "charge", "charge", "notify"]


@pytest.mark.asyncio
async def test_step_result_fields_survive(store):
    original = step_result(
        "charge",
        StepStatus.TIMEOUT,
        output={"result": {"amount": 10}},
        error=StepError(kind=ErrorKind.TIMEOUT, message="Step 'charge' exceeded 50ms"),
        retry_count=2,
        executor_name="bean",
        metadata={"continued": True},
    )
    await store.save_step_result("e1", "orders", original)

    (loaded,) = await store.get_step_results("e1")
    assert loaded.status is StepStatus.TIMEOUT
    assert loaded.output["result"] == {"amount": 10}
    assert loaded.error.kind is ErrorKind.TIMEOUT
    assert loaded.retry_count == 2
    assert loaded.executor_name == "bean"
    assert loaded.metadata["continued"] is True
    assert loaded.duration_ms == 15


@pytest.mark.asyncio
async def test_flow_result_is_upserted(store):
    await store.save_flow_result(flow_result("e1", status=FlowStatus.FAILED))
    await store.save_flow_result(
        flow_result(
            "e1",
            status=FlowStatus.SUCCESS,
            step_results={"a": step_result("a")},
            output={"amount": 5},
        )
    )

    loaded = await store.get_flow_result("e1")
    assert loaded.status is FlowStatus.SUCCESS
    assert loaded.output == {"amount": 5}
    assert list(loaded.step_results) == ["a"]
    assert await store.list_executions("orders") == ["e1"]


@pytest.mark.asyncio
async def test_list_executions_by_flow(store):
    await store.save_flow_result(flow_result("e1", offset_s=0))
    await store.save_flow_result(flow_result("e2", offset_s=1))
    await store.save_flow_result(flow_result("x1", flow_id="refunds"))

    assert await store.list_executions("orders") == ["e1", "e2"]
    assert await store.list_executions("refunds") == ["x1"]


@pytest.mark.asyncio
async def test_flow_error_survives(store):
    error = StepError(kind=ErrorKind.EXECUTION, message="boom", exception_type="RuntimeError")
    await store.save_flow_result(flow_result("e1", status=FlowStatus.FAILED, error=error))

    loaded = await store.get_flow_result("e1")
    assert loaded.error == error
    assert loaded.error_message == "boom"


# ==============================================================================
# SQLite specifics
# ==============================================================================


@pytest.mark.asyncio
async def test_sqlite_requires_connect():
    store = SqliteExecutionStore(":memory:")
    with pytest.raises(StorageError, match="Not connected"):
        await store.get_flow_result("e1")
    with pytest.raises(StorageError):
        await store.save_step_result("e1", "orders", step_result("a"))


@pytest.mark.asyncio
async def test_sqlite_file_survives_reconnect(temp_db_path):
    store = SqliteExecutionStore(str(temp_db_path))
    await store.connect()
    await store.save_step_result("e1", "orders", step_result("a"))
    await store.save_flow_result(flow_result("e1"))
    await store.close()

    reopened = SqliteExecutionStore(str(temp_db_path))
    await reopened.connect()
    try:
        assert (await reopened.get_flow_result("e1")).flow_name == "Orders"
        assert [r.step_id for r in await reopened.get_step_results("e1")] == ["a"]
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_sqlite_connect_is_idempotent(sqlite_memory_store):
    await sqlite_memory_store.connect()
    await sqlite_memory_store.save_flow_result(flow_result("e1"))
    assert await sqlite_memory_store.get_flow_result("e1") is not None


@pytest.mark.asyncio
async def test_sqlite_stores_unserializable_output_as_text(sqlite_memory_store):
    class Receipt:
        def __str__(self):
            return "receipt-42"

    await sqlite_memory_store.save_step_result(
        "e1", "orders", step_result("a", output={"result": Receipt()})
    )
    (loaded,) = await sqlite_memory_store.get_step_results("e1")
    assert loaded.output["result"] == "receipt-42"


@pytest.mark.asyncio
async def test_null_store_keeps_nothing():
    store = NullExecutionStore()
    await store.save_flow_result(flow_result("e1"))
    assert await store.get_flow_result("e1") is None
    assert await store.list_executions("orders") == []


# ==============================================================================
# Engine integration
# ==============================================================================


@pytest.mark.asyncio
async def test_engine_writes_history_to_sqlite(registry, sqlite_memory_store):
    flow = FlowDefinition(
        id="orders",
        steps=(
            StepDefinition("validate", parameters={"bean": "svc", "method": "validate"}),
            StepDefinition(
                "skipped", condition="amount > 1000", parameters={"bean": "svc", "method": "notify"}
            ),
            StepDefinition("explode", parameters={"bean": "svc", "method": "explode"}),
        ),
        dependencies={"skipped": ["validate"], "explode": ["skipped"]},
    )

    async with FlowEngine(registry).with_store(sqlite_memory_store) as engine:
        engine.register(flow)
        result = await engine.execute("orders", {"amount": 10})
        history = await engine.history(result.execution_id)

    assert result.status is FlowStatus.FAILED
    assert history.status is FlowStatus.FAILED
    assert history.error.message == "boom"
    assert history.output["validate_result"] == "validated 10"

    steps = await sqlite_memory_store.get_step_results(result.execution_id)
    assert [(s.step_id, s.status) for s in steps] == [
        ("validate", StepStatus.SUCCESS),
        ("skipped", StepStatus.SKIPPED),
        ("explode", StepStatus.FAILED),
    ]
    assert await sqlite_memory_store.list_executions("orders") == [result.execution_id]
