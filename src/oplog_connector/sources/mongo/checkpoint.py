"""Oplog checkpoint parsing, formatting and resolution.

A checkpoint is a ``bson.Timestamp``: seconds since the epoch plus an
increment that orders operations within the same second.  Stored checkpoints
are the decimal string of the packed 64-bit value ``(time << 32) | inc``.
"""

from __future__ import annotations

import re
import time
from collections.abc import Mapping
from typing import Any

import structlog
from bson import Timestamp

from oplog_connector.config.models import ConnectorConfig
from oplog_connector.errors import CheckpointError

logger = structlog.get_logger()

# Reference prefixes used by checkpoint tables, e.g. "queue:orders"
_REF_PREFIX = re.compile(r"^(?:queue|system|bot|source):", re.IGNORECASE)
_PAIR = re.compile(r"^\s*(\d+)\s*[:,]\s*(\d+)\s*$")


def checkpoint_key(source: str) -> str:
    """Short form of a source identifier used as a fallback lookup key."""
    return _REF_PREFIX.sub("", source.strip())


def parse_checkpoint(value: Any) -> Timestamp:
    """Parse a stored checkpoint into a ``bson.Timestamp``.

    Accepts a ``Timestamp``, a packed 64-bit integer (or its decimal string),
    a ``"time:inc"`` string, or an extended-JSON ``{"$timestamp": {"t", "i"}}``
    / ``{"t", "i"}`` mapping.
    """
    if isinstance(value, Timestamp):
        return value
    if isinstance(value, bool):
        msg = f"Cannot parse checkpoint from {value!r}"
        raise CheckpointError(msg)
    if isinstance(value, int):
        return _from_packed(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _from_packed(int(text))
        pair = _PAIR.match(text)
        if pair:
            return Timestamp(int(pair.group(1)), int(pair.group(2)))
    if isinstance(value, Mapping):
        inner = value.get("$timestamp", value)
        if isinstance(inner, Mapping) and "t" in inner:
            return Timestamp(int(inner["t"]), int(inner.get("i", 0)))
    msg = f"Cannot parse checkpoint from {value!r}"
    raise CheckpointError(msg)


def _from_packed(value: int) -> Timestamp:
    if value < 0 or value >= 1 << 64:
        msg = f"Checkpoint {value} is outside the 64-bit timestamp range"
        raise CheckpointError(msg)
    return Timestamp(value >> 32, value & 0xFFFFFFFF)


def checkpoint_to_string(ts: Timestamp) -> str:
    """Serialize a checkpoint to its packed decimal string."""
    return str((ts.time << 32) | ts.inc)


def checkpoint_to_ms(ts: Timestamp) -> int:
    """Millisecond value of a checkpoint: whole seconds plus the increment."""
    return ts.time * 1000 + ts.inc


def lookup_checkpoint(config: ConnectorConfig) -> Any | None:
    """Find the raw stored checkpoint for ``config.source``, if any."""
    if not config.source or not config.checkpoint:
        return None
    table = config.checkpoint
    entry = table.get(config.source)
    if entry is None:
        entry = table.get(checkpoint_key(config.source))
    if isinstance(entry, Mapping) and "checkpoint" in entry:
        return entry["checkpoint"]
    return entry


def resolve_checkpoint(
    config: ConnectorConfig, *, now: float | None = None
) -> Timestamp:
    """Compute the oplog read position for *config*.

    A missing checkpoint is the normal first-run case and yields the current
    wall-clock second with increment 0.
    """
    stored = lookup_checkpoint(config)
    if stored is None:
        ts = Timestamp(int(time.time() if now is None else now), 0)
        logger.info("checkpoint.defaulted_to_now", source=config.source, ts=str(ts))
        return ts
    ts = parse_checkpoint(stored)
    logger.info(
        "checkpoint.resolved",
        source=config.source,
        checkpoint=checkpoint_to_string(ts),
    )
    return ts
