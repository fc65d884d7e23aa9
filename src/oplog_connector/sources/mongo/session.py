"""Session manager for the oplog and target-database connections.

Opens one client for the replication log database and one for the target
database, builds the namespace/position query and opens the tailing cursor.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

import structlog
from bson import Timestamp, json_util
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import CursorType

from oplog_connector.config.models import ConnectorConfig

logger = structlog.get_logger()

ClientFactory = Callable[..., Any]
FaultCallback = Callable[[str, BaseException | None], None]


def build_query(namespace: str, checkpoint: Timestamp) -> dict[str, Any]:
    """Oplog filter: entries for *namespace* strictly after *checkpoint*."""
    return {"ns": namespace, "ts": {"$gt": checkpoint}}


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class SessionManager:
    """Owns both logical connections and the open oplog cursor.

    Connection failures are not raised: they are logged, the partial session
    is released and *on_fault* is called so the reconnection controller can
    schedule another attempt.
    """

    def __init__(
        self,
        config: ConnectorConfig,
        *,
        on_fault: FaultCallback | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._config = config
        self._on_fault = on_fault
        self._client_factory = client_factory or AsyncIOMotorClient
        self._clients: list[Any] = []
        self.cursor: Any | None = None
        self.database: Any | None = None
        self.collection: Any | None = None
        self.query: dict[str, Any] | None = None

    @property
    def config(self) -> ConnectorConfig:
        return self._config

    @config.setter
    def config(self, value: ConnectorConfig) -> None:
        self._config = value

    @property
    def connected(self) -> bool:
        return self.cursor is not None

    def _client(self) -> Any:
        client = self._client_factory(
            self._config.uri,
            readPreference=self._config.read_preference,
        )
        self._clients.append(client)
        return client

    async def connect(self, checkpoint: Timestamp) -> Any | None:
        """Open both connections and the tailing cursor.

        Returns the cursor, or None when the attempt failed.
        """
        cfg = self._config
        try:
            oplog_client = self._client()
            target_client = self._client()
            await asyncio.gather(
                oplog_client.admin.command("ping"),
                target_client.admin.command("ping"),
            )
            database = target_client[cfg.db]
            collection = database[cfg.collection]
            query = build_query(cfg.namespace, checkpoint)
            logger.info(
                "session.query",
                server=cfg.server,
                query=json_util.dumps(query),
            )
            oplog = oplog_client[cfg.oplog_database][cfg.oplog_collection]
            cursor = oplog.find(
                query,
                cursor_type=CursorType.TAILABLE_AWAIT,
                oplog_replay=True,
                no_cursor_timeout=True,
            )
        except Exception as exc:
            logger.error(
                "session.connect_failed",
                server=cfg.server,
                namespace=cfg.namespace,
                error=str(exc),
            )
            await self.close()
            if self._on_fault is not None:
                self._on_fault("connect_error", exc)
            return None

        self.database = database
        self.collection = collection
        self.query = query
        self.cursor = cursor
        logger.info("session.connected", server=cfg.server, namespace=cfg.namespace)
        return cursor

    async def close(self) -> None:
        """Close the cursor and both clients; safe to call repeatedly."""
        cursor, self.cursor = self.cursor, None
        clients, self._clients = self._clients, []
        self.collection = None
        self.database = None
        if cursor is not None:
            try:
                await _maybe_await(cursor.close())
            except Exception as exc:
                logger.warning("session.cursor_close_failed", error=str(exc))
        for client in clients:
            try:
                await _maybe_await(client.close())
            except Exception as exc:
                logger.warning("session.client_close_failed", error=str(exc))
        if cursor is not None or clients:
            logger.info("session.closed", namespace=self._config.namespace)
