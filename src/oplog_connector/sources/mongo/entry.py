"""Decoding of raw ``local.oplog.rs`` documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from bson import Timestamp

OP_NAMES: dict[str, str] = {
    "i": "insert",
    "u": "update",
    "d": "delete",
    "c": "command",
    "n": "noop",
}


def op_name(op: str | None) -> str | None:
    """Normalized operation name; unknown codes pass through unchanged."""
    if op is None:
        return None
    return OP_NAMES.get(op, op)


@dataclass(slots=True)
class RawLogEntry:
    """One oplog entry in flight between the reader and the correlator."""

    op: str
    ts: Timestamp
    id: Any  # o._id, falling back to o2._id; None for commands
    payload: dict[str, Any] | None  # full doc (insert), modifier (update)
    namespace: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_oplog(cls, doc: dict[str, Any]) -> RawLogEntry:
        op = doc.get("op", "")
        o = doc.get("o") or {}
        o2 = doc.get("o2") or {}
        doc_id = o.get("_id")
        if doc_id is None:
            doc_id = o2.get("_id")
        return cls(
            op=op,
            ts=doc["ts"],
            id=doc_id,
            payload=o if op in ("i", "u") else None,
            namespace=doc.get("ns", ""),
            raw=doc,
        )

    @property
    def has_id(self) -> bool:
        return self.id is not None
