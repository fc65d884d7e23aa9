"""Filter stage: admits or rejects raw oplog entries."""

from __future__ import annotations

import structlog

from oplog_connector.sources.mongo.entry import RawLogEntry
from oplog_connector.transform.compiler import TransformUnit

logger = structlog.get_logger()


class FilterStage:
    """Applies a transform unit's filter, one entry in, at most one out.

    A filter that raises rejects only the offending entry.
    """

    def __init__(self, unit: TransformUnit) -> None:
        self._unit = unit
        self.rejected = 0
        self.errors = 0

    @property
    def unit(self) -> TransformUnit:
        return self._unit

    async def admit(self, entry: RawLogEntry) -> bool:
        try:
            passes = await self._unit.filter(entry)
        except Exception as exc:
            self.errors += 1
            logger.error(
                "filter_stage.filter_error",
                op=entry.op,
                ts=str(entry.ts),
                id=str(entry.id),
                error=str(exc),
            )
            return False
        if not passes:
            self.rejected += 1
        return passes
