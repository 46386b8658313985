"""Shared defaults for dcbstore.

Every tunable lives here so the store, the backends and the CLI agree.
"""

# ─────────────────────────────────────────────────────────────────────────────
# Storage
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_DB_FILENAME = "events.db"
MEMORY_DB_PATH = ":memory:"  # selects the in-process backend
SCHEMA_VERSION = 1

# SQLite waits this long for the write lock before giving up
BUSY_TIMEOUT_MS = 30_000

# Rows fetched per round-trip by lazy reads
READ_BATCH_SIZE = 256

# ─────────────────────────────────────────────────────────────────────────────
# Write strategies
# ─────────────────────────────────────────────────────────────────────────────

STRATEGY_SERIALIZED = "serialized"  # one writer at a time (BEGIN IMMEDIATE)
STRATEGY_SERIALIZABLE = "serializable"  # optimistic, backend detects conflicts
WRITE_STRATEGIES = (STRATEGY_SERIALIZED, STRATEGY_SERIALIZABLE)
DEFAULT_STRATEGY = STRATEGY_SERIALIZED

# ─────────────────────────────────────────────────────────────────────────────
# Environment
# ─────────────────────────────────────────────────────────────────────────────

ENV_DB_PATH = "DCB_PATH"
ENV_STRATEGY = "DCB_STRATEGY"
ENV_BUSY_TIMEOUT = "DCB_BUSY_TIMEOUT_MS"
