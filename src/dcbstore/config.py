"""Store configuration.

Settings come from keyword arguments or the environment:
- DCB_PATH: database file, or ":memory:" for the in-process backend
- DCB_STRATEGY: "serialized" (default) or "serializable"
- DCB_BUSY_TIMEOUT_MS: how long SQLite waits for its write lock
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from .backends.memory import InMemoryBackend
from .backends.sqlite import SqliteBackend
from .constants import (
    BUSY_TIMEOUT_MS,
    DEFAULT_DB_FILENAME,
    DEFAULT_STRATEGY,
    ENV_BUSY_TIMEOUT,
    ENV_DB_PATH,
    ENV_STRATEGY,
    MEMORY_DB_PATH,
    READ_BATCH_SIZE,
)
from .store import EventStore

WriteStrategy = Literal["serialized", "serializable"]


class StoreSettings(BaseModel):
    """How and where the event log is stored."""

    db_path: str = DEFAULT_DB_FILENAME
    strategy: WriteStrategy = DEFAULT_STRATEGY
    busy_timeout_ms: int = Field(default=BUSY_TIMEOUT_MS, ge=0)
    read_batch_size: int = Field(default=READ_BATCH_SIZE, ge=1)

    @property
    def in_memory(self) -> bool:
        return self.db_path == MEMORY_DB_PATH

    @classmethod
    def from_env(cls, **overrides) -> "StoreSettings":
        """Build settings from DCB_* environment variables.

        Explicit keyword overrides win over the environment; None values
        are ignored so CLI options can be passed straight through.
        """
        values: dict = {}
        if env_path := os.environ.get(ENV_DB_PATH):
            values["db_path"] = env_path
        if env_strategy := os.environ.get(ENV_STRATEGY):
            values["strategy"] = env_strategy.strip().lower()
        if env_timeout := os.environ.get(ENV_BUSY_TIMEOUT):
            values["busy_timeout_ms"] = env_timeout
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def open_store(settings: StoreSettings | None = None) -> EventStore:
    """Create an EventStore for the given settings (default: from env)."""
    if settings is None:
        settings = StoreSettings.from_env()

    if settings.in_memory:
        return EventStore(InMemoryBackend())

    backend = SqliteBackend(
        Path(settings.db_path),
        strategy=settings.strategy,
        busy_timeout_ms=settings.busy_timeout_ms,
        read_batch_size=settings.read_batch_size,
    )
    return EventStore(backend)
