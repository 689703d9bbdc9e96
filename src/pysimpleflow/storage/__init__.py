"""Execution history backends."""

from pysimpleflow.storage.base import ExecutionStore, NullExecutionStore, StorageError
from pysimpleflow.storage.memory import InMemoryExecutionStore
from pysimpleflow.storage.sqlite import SqliteExecutionStore

__all__ = [
    "ExecutionStore",
    "InMemoryExecutionStore",
    "NullExecutionStore",
    "SqliteExecutionStore",
    "StorageError",
]
