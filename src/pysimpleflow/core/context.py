"""Execution context: variables and control state of one running flow.

FlowContext is owned by exactly one execution. Step handlers read and write
its variables, possibly from worker threads when blocking handlers run on
the engine's pool, so every access goes through the context's own lock.

Pause and cancellation are cooperative: the engine checks them between
steps. A paused execution awaits an asyncio.Event instead of polling, and
pause/resume/cancel may be called from any thread.

Child contexts (conditional branches with isolation, loop iterations,
sub-flows) start from a copy of the parent's variables. Their writes stay
local until the engine merges them back with merge_child(). They share the
parent's control state, so stopping or pausing an execution reaches every
nested scope.
"""

import asyncio
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, TypeVar

from pysimpleflow.models import StepError, StepResult

T = TypeVar("T")


class ExecutionControl:
    """Pause and cancel flags shared by a context and its children."""

    def __init__(self):
        self._lock = threading.Lock()
        self._paused = False
        self._cancelled = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def pause(self) -> bool:
        """Request a pause. Returns False if the execution was already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._paused = True
            self._notify()
            return True

    def resume(self) -> bool:
        """Clear a pause. Returns False if the execution was already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._paused = False
            self._notify()
            return True

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            self._notify()

    async def wait_while_paused(self) -> bool:
        """
        Block the calling execution while paused.

        Returns:
            True once running, False if cancelled (before or during the pause)
        """
        while True:
            with self._lock:
                if self._cancelled:
                    return False
                if not self._paused:
                    return True
                if self._wakeup is None:
                    self._loop = asyncio.get_running_loop()
                    self._wakeup = asyncio.Event()
                self._wakeup.clear()
                wakeup = self._wakeup
            await wakeup.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep, waking early on cancellation.

        Returns:
            True if the full delay elapsed, False if cancelled
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds
        while True:
            with self._lock:
                if self._cancelled:
                    return False
                if self._wakeup is None:
                    self._loop = loop
                    self._wakeup = asyncio.Event()
                self._wakeup.clear()
                wakeup = self._wakeup
            remaining = deadline - loop.time()
            if remaining <= 0:
                return True
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=remaining)
            except TimeoutError:
                return not self.is_cancelled

    def _notify(self) -> None:
        # Caller holds self._lock
        if self._wakeup is None or self._loop is None or self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._wakeup.set()
        else:
            self._loop.call_soon_threadsafe(self._wakeup.set)


class FlowContext:
    """
    Variables and state of one running execution.

    Usage:
        ```python
        ctx = FlowContext("exec-1", "orders", variables={"amount": 1500})
        ctx.set("approved", True)
        ctx.get_or_default("region", "eu")
        ctx.get_as("amount", int)
        ```
    """

    def __init__(
        self,
        execution_id: str,
        flow_id: str,
        flow_name: str | None = None,
        variables: Mapping[str, Any] | None = None,
        *,
        parent: "FlowContext | None" = None,
        scope_step_id: str | None = None,
    ):
        self.execution_id = execution_id
        self.flow_id = flow_id
        self.flow_name = flow_name or flow_id
        self.parent = parent
        self.scope_step_id = scope_step_id
        self.started_at = datetime.now(UTC)
        self.ended_at: datetime | None = None

        self._lock = threading.RLock()
        self._variables: dict[str, Any] = dict(variables or {})
        self._step_results: dict[str, StepResult] = {}
        self._retry_counts: dict[str, int] = {}
        self._current_step_id: str | None = None
        self._error: StepError | None = None
        self._control = parent._control if parent is not None else ExecutionControl()

    def __repr__(self) -> str:
        scope = f", scope={self.scope_step_id!r}" if self.scope_step_id else ""
        return f"FlowContext(execution_id={self.execution_id!r}, flow_id={self.flow_id!r}{scope})"

    # =========================================================================
    # Variables
    # =========================================================================

    def get(self, key: str) -> Any:
        """Return the variable, or None if it is not set."""
        with self._lock:
            return self._variables.get(key)

    def get_or_default(self, key: str, default: T) -> Any | T:
        with self._lock:
            return self._variables.get(key, default)

    def get_as(self, key: str, expected: type[T], default: T | None = None) -> T | None:
        """Return the variable if it is an instance of `expected`, else `default`."""
        value = self.get(key)
        if isinstance(value, expected):
            return value
        return default

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._variables[key] = value

    def remove(self, key: str) -> Any:
        """Remove the variable and return its previous value (None if absent)."""
        with self._lock:
            return self._variables.pop(key, None)

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._variables

    __contains__ = contains

    def get_all(self) -> dict[str, Any]:
        """Return a snapshot copy of all variables."""
        with self._lock:
            return dict(self._variables)

    def set_all(self, variables: Mapping[str, Any]) -> None:
        """Set several variables at once (existing keys are overwritten)."""
        with self._lock:
            self._variables.update(variables)

    def clear(self) -> None:
        with self._lock:
            self._variables.clear()

    # =========================================================================
    # Step bookkeeping
    # =========================================================================

    def record_step_result(self, result: StepResult) -> None:
        with self._lock:
            self._step_results[result.step_id] = result

    def get_step_result(self, step_id: str) -> StepResult | None:
        with self._lock:
            return self._step_results.get(step_id)

    @property
    def step_results(self) -> dict[str, StepResult]:
        with self._lock:
            return dict(self._step_results)

    @property
    def current_step_id(self) -> str | None:
        return self._current_step_id

    @current_step_id.setter
    def current_step_id(self, step_id: str | None) -> None:
        self._current_step_id = step_id

    @property
    def error(self) -> StepError | None:
        return self._error

    @error.setter
    def error(self, error: StepError | None) -> None:
        self._error = error

    def retry_count(self, step_id: str) -> int:
        with self._lock:
            return self._retry_counts.get(step_id, 0)

    def increment_retry(self, step_id: str) -> int:
        """Increment and return the retry counter of a step."""
        with self._lock:
            count = self._retry_counts.get(step_id, 0) + 1
            self._retry_counts[step_id] = count
            return count

    def reset_retry(self, step_id: str) -> None:
        with self._lock:
            self._retry_counts.pop(step_id, None)

    @property
    def total_retries(self) -> int:
        with self._lock:
            return sum(self._retry_counts.values())

    # =========================================================================
    # Control
    # =========================================================================

    @property
    def control(self) -> ExecutionControl:
        return self._control

    @property
    def is_cancelled(self) -> bool:
        return self._control.is_cancelled

    @property
    def is_paused(self) -> bool:
        return self._control.is_paused

    def cancel(self) -> None:
        self._control.cancel()

    def pause(self) -> bool:
        return self._control.pause()

    def resume(self) -> bool:
        return self._control.resume()

    async def wait_while_paused(self) -> bool:
        return await self._control.wait_while_paused()

    # =========================================================================
    # Scoping
    # =========================================================================

    def create_child_context(self, step_id: str) -> "FlowContext":
        """
        Create an isolated scope seeded with a copy of the current variables.

        Writes to the child are invisible here until merge_child() is called.
        """
        return FlowContext(
            self.execution_id,
            self.flow_id,
            self.flow_name,
            self.get_all(),
            parent=self,
            scope_step_id=step_id,
        )

    def merge_child(self, child: "FlowContext", keys: list[str] | None = None) -> None:
        """Copy a child's variables back into this context.

        Args:
            child: Context created by create_child_context()
            keys: Only merge these keys (all variables when None)
        """
        variables = child.get_all()
        if keys is not None:
            variables = {k: variables[k] for k in keys if k in variables}
        self.set_all(variables)

    def mark_finished(self) -> None:
        self.ended_at = datetime.now(UTC)
