"""Live replica set fixtures for integration tests.

Start a single-node replica set first, e.g.::

    docker run -d --name mongo-rs -p 27017:27017 mongo:7 --replSet rs0
    docker exec mongo-rs mongosh --eval "rs.initiate()"

``MONGO_URI`` overrides the default connection string.
"""

from __future__ import annotations

import os
import uuid

import pytest
import pytest_asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

MONGO_URI = os.environ.get(
    "MONGO_URI", "mongodb://localhost:27017/?replicaSet=rs0&directConnection=true"
)


@pytest_asyncio.fixture()
async def mongo_client():
    client = AsyncIOMotorClient(MONGO_URI, serverSelectionTimeoutMS=2000)
    try:
        await client.admin.command("ping")
    except PyMongoError as exc:
        client.close()
        pytest.skip(f"No replica set at {MONGO_URI}: {exc}")
    yield client
    client.close()


@pytest_asyncio.fixture()
async def scratch_db(mongo_client):
    name = f"oplog_it_{uuid.uuid4().hex[:8]}"
    yield mongo_client[name]
    await mongo_client.drop_database(name)


@pytest.fixture()
def mongo_uri() -> str:
    return MONGO_URI
