"""Change records produced by correlation and the delivery envelope."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from bson import Timestamp


@dataclass(slots=True)
class ChangeRecord:
    """One oplog operation on a document within a batch window."""

    op: str
    ts: Timestamp
    payload: dict[str, Any] | None = None  # update modifier, only for "u"

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "o": self.payload, "ts": self.ts}


@dataclass(slots=True)
class ChangeHistory:
    """All operations seen for one document id in a batch, in arrival order."""

    id: Any
    op: str
    ts: Timestamp
    changes: list[ChangeRecord] = field(default_factory=list)

    def record(self, op: str, ts: Timestamp, payload: dict[str, Any] | None) -> None:
        self.op = op
        self.ts = ts
        self.changes.append(
            ChangeRecord(op=op, ts=ts, payload=payload if op == "u" else None)
        )


@dataclass(slots=True)
class ResolvedChangeEvent:
    """Latest operation for a document paired with its current snapshot.

    ``snapshot`` is read from the live collection, so it reflects the newest
    state of the document rather than the state at ``ts``.  It is None when
    the document no longer exists.
    """

    op: str | None
    snapshot: dict[str, Any] | None
    id: Any
    ts: Timestamp | None
    changes: list[ChangeRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": self.op,
            "obj": self.snapshot,
            "_id": self.id,
            "ts": self.ts,
            "changes": [c.to_dict() for c in self.changes],
        }


@dataclass(slots=True)
class OutputEnvelope:
    """Delivery wrapper around one handler-produced payload."""

    correlation_id: dict[str, Any]
    event_source_timestamp: int | None
    emit_timestamp: int
    payload: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlation_id": dict(self.correlation_id),
            "event_source_timestamp": self.event_source_timestamp,
            "timestamp": self.emit_timestamp,
            "payload": self.payload,
        }
