"""
Pytest configuration and fixtures for pysimpleflow tests.

Provides reusable fixtures for stores, registries, engines and a few
service beans shared across test modules.
"""

import asyncio
import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from pysimpleflow import (
    EngineConfig,
    FlowContext,
    FlowEngine,
    HandlerRegistry,
    InMemoryExecutionStore,
    SqliteExecutionStore,
    StepHandler,
)


@pytest.fixture
async def in_memory_store() -> AsyncGenerator[InMemoryExecutionStore, None]:
    """In-memory store with automatic cleanup."""
    store = InMemoryExecutionStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteExecutionStore, None]:
    """SQLite in-memory store with automatic cleanup."""
    store = await SqliteExecutionStore.in_memory()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    yield tmpdir / "history.db"
    shutil.rmtree(tmpdir, ignore_errors=True)


# Service beans reused across tests


class Recorder:
    """Bean that records the order in which its methods ran."""

    def __init__(self):
        self.calls: list[str] = []

    def validate(self, amount: int) -> str:
        self.calls.append("validate")
        return f"validated {amount}"

    def risk_assess(self, amount: int) -> str:
        self.calls.append("riskAssess")
        return "high" if amount > 1000 else "low"

    def auto_approve(self) -> str:
        self.calls.append("autoApprove")
        return "approved"

    def notify(self) -> str:
        self.calls.append("notify")
        return "sent"

    def explode(self):
        self.calls.append("explode")
        raise RuntimeError("boom")


class Flaky(StepHandler):
    """Canonical handler that fails a fixed number of times before succeeding."""

    def __init__(self, failures: int):
        self.failures = failures
        self.attempts = 0

    async def execute(self, context: FlowContext):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError(f"attempt {self.attempts} failed")
        return self.attempts


class Sleeper(StepHandler):
    """Canonical handler that sleeps, for timeout and control tests."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.runs = 0

    async def execute(self, context: FlowContext):
        self.runs += 1
        await asyncio.sleep(self.seconds)
        return self.runs


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def registry(recorder: Recorder) -> HandlerRegistry:
    """Registry with the recorder bean registered as "svc"."""
    return HandlerRegistry().register_bean("svc", recorder)


@pytest.fixture
def fast_config() -> EngineConfig:
    """Config with no retry delay so retry tests stay fast."""
    return EngineConfig(default_retry_delay_ms=0, default_timeout_ms=5_000)


@pytest.fixture
async def engine(registry: HandlerRegistry, fast_config: EngineConfig, in_memory_store):
    """Engine over the shared registry and an in-memory store."""
    engine = FlowEngine(registry, fast_config, store=in_memory_store)
    yield engine
    await engine.shutdown()
