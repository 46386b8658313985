"""Core data models for the event store.

Uses Pydantic v2 for validation, ULID for sortable unique event IDs.
"""

import base64
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from ulid import ULID


def generate_id() -> str:
    """Generate a ULID (sortable, unique identifier)."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def _encode_bytes(value: bytes | None) -> str | None:
    if value is None:
        return None
    return base64.b64encode(value).decode("ascii")


def _decode_bytes(value: str | bytes | None) -> bytes | None:
    if value is None or isinstance(value, bytes):
        return value
    return base64.b64decode(value)


class NewEvent(BaseModel):
    """An event as submitted by a caller, before the store assigns a position.

    Field checks are left to the store so malformed input raises
    EventValidationError rather than a pydantic error.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    type: str
    tags: dict[str, str] = Field(default_factory=dict)
    data: bytes = b""
    metadata: bytes | None = None


class Event(BaseModel):
    """A persisted event. Immutable once the store has assigned its sequence."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    id: str = Field(default_factory=generate_id)
    type: str
    tags: dict[str, str] = Field(default_factory=dict)
    data: bytes = b""
    metadata: bytes | None = None
    recorded_at: datetime = Field(default_factory=utc_now)

    def to_dict(self) -> dict:
        """Serialize for JSON transport; payloads are base64-encoded."""
        return {
            "sequence": self.sequence,
            "id": self.id,
            "type": self.type,
            "tags": dict(sorted(self.tags.items())),
            "data": _encode_bytes(self.data),
            "metadata": _encode_bytes(self.metadata),
            "recordedAt": self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        """Deserialize from the form produced by to_dict()."""
        recorded_at = data.get("recordedAt")
        if isinstance(recorded_at, str):
            recorded_at = datetime.fromisoformat(recorded_at)
        elif recorded_at is None:
            recorded_at = utc_now()

        return cls(
            sequence=data["sequence"],
            id=data.get("id") or generate_id(),
            type=data["type"],
            tags=data.get("tags", {}),
            data=_decode_bytes(data.get("data")) or b"",
            metadata=_decode_bytes(data.get("metadata")),
            recorded_at=recorded_at,
        )


class Query(BaseModel):
    """Type/tag predicate selecting a subset of the log.

    An event matches when its type is one of `types` (if any are given) and
    it carries every tag in `tags` with exactly that value. A query with
    neither types nor tags matches every event.
    """

    model_config = ConfigDict(frozen=True)

    types: frozenset[str] | None = None
    tags: dict[str, str] | None = None

    @field_validator("types", mode="before")
    @classmethod
    def _empty_types_mean_any(cls, value):
        # A bare string is one type name, not a collection of characters
        if isinstance(value, str):
            raise ValueError("types must be a collection of type names, not a string")
        if isinstance(value, (list, tuple, set, frozenset)) and not value:
            return None
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _empty_tags_mean_any(cls, value):
        if isinstance(value, dict) and not value:
            return None
        return value

    @property
    def matches_all(self) -> bool:
        return self.types is None and self.tags is None

    @classmethod
    def all(cls) -> "Query":
        """Query matching every event in the log."""
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> "Query":
        """Build from the wire form {"types": [...], "tags": {...}}."""
        return cls(types=data.get("types"), tags=data.get("tags"))

    def to_dict(self) -> dict:
        """Serialize for JSON transport."""
        result: dict = {}
        if self.types is not None:
            result["types"] = sorted(self.types)
        if self.tags is not None:
            result["tags"] = dict(sorted(self.tags.items()))
        return result


class AppendCondition(BaseModel):
    """Fail the append if any event matching the query has sequence > after."""

    model_config = ConfigDict(frozen=True)

    fail_if_events_match: Query
    after: int = Field(default=0, ge=0)


AppendStatus = Literal[
    "appended",  # batch committed
    "denied",    # condition matched newer events, nothing written
    "conflict",  # backend aborted the transaction, nothing written, retry
]


class AppendResult(BaseModel):
    """Outcome of an append attempt.

    Only "appended" carries a range. "denied" and "conflict" are expected
    outcomes under concurrent load and are returned, not raised.
    """

    model_config = ConfigDict(frozen=True)

    status: AppendStatus
    range: tuple[int, int] | None = None
    observed: int | None = None  # high-water mark seen when denied
    after: int | None = None

    @property
    def appended(self) -> bool:
        return self.status == "appended"

    @property
    def denied(self) -> bool:
        return self.status == "denied"

    @property
    def conflict(self) -> bool:
        return self.status == "conflict"

    @classmethod
    def success(cls, first: int, last: int) -> "AppendResult":
        return cls(status="appended", range=(first, last))

    @classmethod
    def rejected(cls, after: int, observed: int) -> "AppendResult":
        return cls(status="denied", after=after, observed=observed)

    @classmethod
    def transient(cls) -> "AppendResult":
        return cls(status="conflict")

    def raise_for_status(self) -> "AppendResult":
        """Raise for denied/conflict outcomes, return self when appended."""
        from .errors import ConditionDeniedError, TransientConflictError

        if self.status == "denied":
            raise ConditionDeniedError(self.after or 0, self.observed)
        if self.status == "conflict":
            raise TransientConflictError("transaction aborted by a concurrent writer")
        return self
