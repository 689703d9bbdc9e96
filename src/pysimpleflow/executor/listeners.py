"""Monitoring hooks.

Listeners are notified at flow start, after every recorded step and at
flow completion. Delivery is fire-and-forget: each notification runs as a
background task, so a slow or failing listener can neither block nor fail
an execution. Exceptions are logged and dropped.
"""

import asyncio
import inspect
import logging
from typing import Any

from pysimpleflow.models import FlowDefinition, FlowResult, StepResult

logger = logging.getLogger(__name__)


class FlowListener:
    """Base class with no-op hooks; override what you need.

    Hooks may be plain or async methods.

    Example:
        class Audit(FlowListener):
            async def on_step_complete(self, execution_id, result):
                await audit_log.write(execution_id, result.step_id, result.status)
    """

    def on_flow_start(self, execution_id: str, flow: FlowDefinition, variables: dict) -> Any:
        return None

    def on_step_complete(self, execution_id: str, result: StepResult) -> Any:
        return None

    def on_flow_complete(self, result: FlowResult) -> Any:
        return None

    def on_flow_failed(self, result: FlowResult) -> Any:
        return None


class ListenerGroup:
    """Fans notifications out to registered listeners as tracked background tasks."""

    def __init__(self):
        self._listeners: list[FlowListener] = []
        # Keep references so pending notifications are not garbage collected
        self._background_tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._listeners)

    def add(self, listener: FlowListener) -> None:
        self._listeners.append(listener)

    def remove(self, listener: FlowListener) -> bool:
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    @property
    def pending(self) -> int:
        return len(self._background_tasks)

    def notify(self, hook: str, *args: Any) -> None:
        """Schedule `hook(*args)` on every listener without waiting."""
        for listener in tuple(self._listeners):
            task = asyncio.create_task(self._deliver(listener, hook, args))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

    async def _deliver(self, listener: FlowListener, hook: str, args: tuple) -> None:
        try:
            outcome = getattr(listener, hook)(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Listener {type(listener).__name__}.{hook} failed: {e}")

    async def drain(self) -> None:
        """Wait for pending notifications to finish."""
        if self._background_tasks:
            await asyncio.gather(*tuple(self._background_tasks), return_exceptions=True)
