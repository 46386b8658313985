"""Exception types for the event store.

A denied append condition is not an error: it comes back as an
AppendResult with status "denied". The exceptions below cover malformed
input, storage failures, and callers who opt into exceptions through
AppendResult.raise_for_status().
"""


class DCBError(Exception):
    """Base class for all event store errors."""


class EventValidationError(DCBError, ValueError):
    """Raised when appended events or queries are malformed.

    Always raised before the backend is touched, so nothing is written.
    """


class StorageError(DCBError):
    """Raised on fatal storage problems (I/O, corrupt rows, schema mismatch).

    Never retried by the store.
    """


class ConditionDeniedError(DCBError):
    """The append condition matched events newer than the caller's position."""

    def __init__(self, after: int, observed: int | None) -> None:
        self.after = after
        self.observed = observed
        super().__init__(f"append condition denied: after={after}, observed={observed}")


class TransientConflictError(DCBError):
    """The backend aborted the transaction because of a concurrent writer.

    The outcome is inconclusive; re-read and retry.
    """
