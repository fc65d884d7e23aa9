"""Envelope sink protocol.

A sink receives every envelope the connector emits, in order.  New delivery
targets implement this protocol to plug into the CLI runner.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from oplog_connector.pipeline.events import OutputEnvelope


@runtime_checkable
class EnvelopeSink(Protocol):
    """Protocol that every envelope sink must satisfy."""

    @property
    def last_delivered(self) -> str | None:
        """Checkpoint string of the newest envelope durably delivered."""
        ...

    async def start(self) -> None:
        """Initialize resources (connections, HTTP clients, etc.)."""
        ...

    async def write(self, envelope: OutputEnvelope) -> None:
        """Deliver a single envelope."""
        ...

    async def flush(self) -> None:
        """Flush any buffered writes."""
        ...

    async def stop(self) -> None:
        """Release resources."""
        ...

    async def health(self) -> dict[str, Any]:
        """Return a health-check status dict."""
        ...
