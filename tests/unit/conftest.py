"""In-memory MongoDB stand-ins shared by the unit tests.

``FakeMongo`` plays one replica set: a ``local.oplog.rs`` capped collection
plus ordinary collections.  Writing through :meth:`FakeMongo.insert` and
friends updates the target collection and appends the matching oplog entry,
so tests exercise the connector end to end without a server.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from typing import Any

import pytest
from bson import Timestamp
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

from oplog_connector.config.models import ConnectorConfig

BASE_TIME = 1_700_000_000


def _projected(doc: dict[str, Any], projection: dict[str, int] | None) -> dict[str, Any]:
    if not projection:
        return copy.deepcopy(doc)
    keep = {"_id", *projection}
    return {k: copy.deepcopy(v) for k, v in doc.items() if k in keep}


class FakeTailCursor:
    """Tailable await cursor over the fake oplog.

    Async iteration yields the matching entries written since the last pass
    and then stops while the cursor stays alive, as a tailable cursor does
    when the server returns an empty batch.
    """

    def __init__(self, mongo: FakeMongo, query: dict[str, Any], kwargs: dict[str, Any]):
        self._mongo = mongo
        self.query = query
        self.kwargs = kwargs
        self.alive = True
        self.closed = False
        self.pulls = 0
        self._pos = 0
        self._fail: BaseException | None = None

    def kill(self, exc: BaseException | None = None) -> None:
        if exc is None:
            self.alive = False
        else:
            self._fail = exc

    def __aiter__(self) -> FakeTailCursor:
        return self

    async def __anext__(self) -> dict[str, Any]:
        await asyncio.sleep(0)
        if self._fail is not None:
            exc, self._fail = self._fail, None
            self.alive = False
            raise exc
        oplog = self._mongo.oplog
        ns = self.query["ns"]
        after = self.query["ts"]["$gt"]
        while self.alive and self._pos < len(oplog):
            entry = oplog[self._pos]
            self._pos += 1
            if entry["ns"] == ns and entry["ts"] > after:
                self.pulls += 1
                return copy.deepcopy(entry)
        raise StopAsyncIteration

    async def close(self) -> None:
        self.alive = False
        self.closed = True


class FakeFindCursor:
    def __init__(self, docs: list[dict[str, Any]], fail: BaseException | None):
        self._docs = docs
        self._fail = fail

    def __aiter__(self) -> FakeFindCursor:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self._fail is not None:
            raise self._fail
        if not self._docs:
            raise StopAsyncIteration
        return self._docs.pop(0)


class FakeCollection:
    def __init__(self, mongo: FakeMongo, db: str, name: str):
        self._mongo = mongo
        self.database = db
        self.name = name

    @property
    def docs(self) -> list[dict[str, Any]]:
        return self._mongo.collections.setdefault((self.database, self.name), [])

    def find(
        self, flt: dict[str, Any], projection: dict[str, int] | None = None
    ) -> Any:
        self._mongo.finds.append((flt, projection))
        ((field, cond),) = flt.items()
        wanted = cond["$in"]
        matched = [
            _projected(d, projection) for d in self.docs if d.get(field) in wanted
        ]
        return FakeFindCursor(matched, self._mongo.fail_find)


class FakeOplogCollection(FakeCollection):
    def find(self, flt: dict[str, Any], projection: Any = None, **kwargs: Any) -> Any:
        cursor = FakeTailCursor(self._mongo, flt, kwargs)
        self._mongo.cursors.append(cursor)
        return cursor


class FakeDatabase:
    def __init__(self, mongo: FakeMongo, name: str):
        self._mongo = mongo
        self.name = name

    def __getitem__(self, name: str) -> FakeCollection:
        if (self.name, name) == self._mongo.oplog_location:
            return FakeOplogCollection(self._mongo, self.name, name)
        return FakeCollection(self._mongo, self.name, name)


class FakeAdmin:
    def __init__(self, mongo: FakeMongo):
        self._mongo = mongo

    async def command(self, name: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        if self._mongo.down:
            msg = "No replica set members available"
            raise ServerSelectionTimeoutError(msg)
        return {"ok": 1.0}


class FakeClient:
    def __init__(self, mongo: FakeMongo, uri: str, **kwargs: Any):
        self._mongo = mongo
        self.uri = uri
        self.kwargs = kwargs
        self.admin = FakeAdmin(mongo)
        self.closed = False

    def __getitem__(self, name: str) -> FakeDatabase:
        return FakeDatabase(self._mongo, name)

    def close(self) -> None:
        self.closed = True


class FakeMongo:
    """One fake replica set shared by every client the factory opens."""

    def __init__(self) -> None:
        self.oplog: list[dict[str, Any]] = []
        self.collections: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.clients: list[FakeClient] = []
        self.cursors: list[FakeTailCursor] = []
        self.finds: list[tuple[dict[str, Any], Any]] = []
        self.down = False
        self.oplog_location = ("local", "oplog.rs")
        self.fail_find: BaseException | None = None
        self._inc = 0

    # -- client side ----------------------------------------------------------

    def factory(self, uri: str, **kwargs: Any) -> FakeClient:
        client = FakeClient(self, uri, **kwargs)
        self.clients.append(client)
        return client

    @property
    def cursor(self) -> FakeTailCursor:
        return self.cursors[-1]

    def open_cursors(self) -> list[FakeTailCursor]:
        return [c for c in self.cursors if not c.closed]

    def kill_cursors(self, exc: BaseException | None = None) -> None:
        for cursor in self.open_cursors():
            cursor.kill(exc)

    def drop_connection(self) -> None:
        self.kill_cursors(ConnectionFailure("connection reset by peer"))

    # -- server side ----------------------------------------------------------

    def next_ts(self) -> Timestamp:
        self._inc += 1
        return Timestamp(BASE_TIME, self._inc)

    def docs(self, ns: str) -> list[dict[str, Any]]:
        db, coll = ns.split(".", 1)
        return self.collections.setdefault((db, coll), [])

    def _log(self, op: str, ns: str, o: dict[str, Any], o2: Any = None) -> Timestamp:
        ts = self.next_ts()
        entry: dict[str, Any] = {"ts": ts, "op": op, "ns": ns, "o": o}
        if o2 is not None:
            entry["o2"] = o2
        self.oplog.append(entry)
        return ts

    def insert(self, ns: str, doc: dict[str, Any]) -> Timestamp:
        self.docs(ns).append(copy.deepcopy(doc))
        return self._log("i", ns, copy.deepcopy(doc))

    def update(self, ns: str, doc_id: Any, fields: dict[str, Any]) -> Timestamp:
        for doc in self.docs(ns):
            if doc.get("_id") == doc_id:
                doc.update(copy.deepcopy(fields))
        return self._log("u", ns, {"$set": copy.deepcopy(fields)}, {"_id": doc_id})

    def delete(self, ns: str, doc_id: Any) -> Timestamp:
        docs = self.docs(ns)
        docs[:] = [d for d in docs if d.get("_id") != doc_id]
        return self._log("d", ns, {"_id": doc_id})

    def command(self, ns: str, cmd: dict[str, Any]) -> Timestamp:
        db = ns.split(".", 1)[0]
        return self._log("c", f"{db}.$cmd", cmd)


@pytest.fixture()
def mongo() -> FakeMongo:
    return FakeMongo()


@pytest.fixture()
def make_config() -> Callable[..., ConnectorConfig]:
    def _make(**overrides: Any) -> ConnectorConfig:
        data: dict[str, Any] = {
            "server": "db1:27017",
            "db": "shop",
            "collection": "orders",
            "source": "orders",
            "checkpoint": {"orders": f"{BASE_TIME}:0"},
            "maxSendCount": 50,
            "maxSendDelay": 20,
            "reconnectDelay": 10,
        }
        data.update(overrides)
        return ConnectorConfig.model_validate(data)

    return _make


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture()
def eventually() -> Callable[..., Any]:
    """Poll a predicate until true; fail the test after the timeout."""
    return _eventually
