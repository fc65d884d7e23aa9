"""Exception hierarchy for the oplog connector.

Transient connectivity faults are never raised to the stream consumer; they
are routed to the reconnection controller.  The types below are the fatal or
configuration-level faults that do surface.
"""

from __future__ import annotations


class ConnectorError(Exception):
    """Base class for all connector faults surfaced to callers."""


class CheckpointError(ConnectorError):
    """A stored checkpoint value could not be parsed."""


class TransformCompileError(ConnectorError):
    """Transform script text failed to compile."""


class CorrelationError(ConnectorError):
    """The bulk document read for a batch failed."""


class HandlerError(ConnectorError):
    """The transform handler raised while processing a change event."""
