"""Pydantic configuration models for the oplog connector."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

_NAME_PATTERN = re.compile(r"^[^\s.$/\\\"]+$")


class RetryConfig(BaseModel):
    """Retry / backoff configuration."""

    max_attempts: int = Field(default=5, ge=1)
    initial_wait_seconds: float = Field(default=1.0, gt=0)
    max_wait_seconds: float = Field(default=60.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True


class WebhookSinkConfig(BaseModel):
    """Configuration for the webhook (HTTP POST) envelope sink."""

    url: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 30.0
    auth_token: SecretStr | None = None
    retry: RetryConfig = RetryConfig()


class ConnectorConfig(BaseModel, populate_by_name=True):
    """Settings for one connector instance: one collection on one server.

    Field aliases keep the camelCase option names used by existing
    deployments (``maxSendCount``, ``maxSendDelay``) working unchanged.
    """

    server: str = "localhost"
    db: str
    collection: str
    # Checkpoint lookup key.
    source: str | None = None
    # Transform script text; the first non-empty of the three wins.
    code: str | None = None
    mapper: str | None = None
    mappings: str | None = None
    id_column: str = "_id"
    max_send_count: int = Field(default=300, ge=1, alias="maxSendCount")
    # Milliseconds.
    max_send_delay: float = Field(default=500, ge=0, alias="maxSendDelay")
    checkpoint: dict[str, Any] = Field(default_factory=dict)

    # Milliseconds between a fault and the next connection attempt.
    reconnect_delay: float = Field(default=2000, ge=0, alias="reconnectDelay")
    read_preference: str = "secondaryPreferred"
    max_buffered_messages: int = Field(default=1000, ge=1)
    oplog_database: str = "local"
    oplog_collection: str = "oplog.rs"

    @field_validator("db", "collection")
    @classmethod
    def validate_names(cls, v: str) -> str:
        """Reject empty names and characters MongoDB forbids in db names."""
        if not v or not _NAME_PATTERN.match(v.split(".", 1)[0]):
            msg = f"'{v}' is not a valid MongoDB database/collection name"
            raise ValueError(msg)
        return v

    @property
    def script(self) -> str | None:
        """Active transform script text, or None for the identity transform."""
        for text in (self.code, self.mapper, self.mappings):
            if text and text.strip():
                return text
        return None

    @property
    def namespace(self) -> str:
        """Oplog ``ns`` value of the target collection."""
        return f"{self.db}.{self.collection}"

    @property
    def uri(self) -> str:
        """Connection URI for ``server`` (a host[:port] or a full URI)."""
        if self.server.startswith(("mongodb://", "mongodb+srv://")):
            return self.server
        return f"mongodb://{self.server}/"

    def requires_restart(self, other: ConnectorConfig) -> bool:
        """True when *other* targets a different server, db or collection."""
        return (
            self.server != other.server
            or self.db != other.db
            or self.collection != other.collection
        )

    def requires_recompile(self, other: ConnectorConfig) -> bool:
        """True when *other* carries different transform script text."""
        return self.script != other.script


def normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Map alias keys (``maxSendCount``) to field names (``max_send_count``)."""
    aliases = {
        f.alias: name
        for name, f in ConnectorConfig.model_fields.items()
        if f.alias is not None
    }
    return {aliases.get(k, k): v for k, v in data.items()}
