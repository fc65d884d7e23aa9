"""Unit tests for checkpoint parsing and resolution."""

from __future__ import annotations

import pytest
from bson import Timestamp

from oplog_connector.config.models import ConnectorConfig
from oplog_connector.errors import CheckpointError
from oplog_connector.sources.mongo.checkpoint import (
    checkpoint_key,
    checkpoint_to_ms,
    checkpoint_to_string,
    lookup_checkpoint,
    parse_checkpoint,
    resolve_checkpoint,
)

PACKED = (1_700_000_000 << 32) | 7


def _cfg(**kw) -> ConnectorConfig:
    return ConnectorConfig(db="shop", collection="orders", **kw)


class TestParseCheckpoint:
    def test_timestamp_passthrough(self):
        ts = Timestamp(1_700_000_000, 7)
        assert parse_checkpoint(ts) is ts

    def test_packed_int(self):
        assert parse_checkpoint(PACKED) == Timestamp(1_700_000_000, 7)

    def test_packed_decimal_string(self):
        assert parse_checkpoint(str(PACKED)) == Timestamp(1_700_000_000, 7)

    @pytest.mark.parametrize("text", ["1700000000:7", "1700000000,7", " 1700000000 : 7 "])
    def test_pair_string(self, text: str):
        assert parse_checkpoint(text) == Timestamp(1_700_000_000, 7)

    def test_extended_json(self):
        value = {"$timestamp": {"t": 1_700_000_000, "i": 7}}
        assert parse_checkpoint(value) == Timestamp(1_700_000_000, 7)

    def test_bare_mapping(self):
        assert parse_checkpoint({"t": 1_700_000_000}) == Timestamp(1_700_000_000, 0)

    @pytest.mark.parametrize("value", ["yesterday", True, 1.5, [], {"x": 1}])
    def test_unparseable(self, value):
        with pytest.raises(CheckpointError, match="Cannot parse"):
            parse_checkpoint(value)

    def test_out_of_range(self):
        with pytest.raises(CheckpointError, match="64-bit"):
            parse_checkpoint(1 << 64)


class TestFormatting:
    def test_to_string_round_trips(self):
        ts = Timestamp(1_700_000_000, 7)
        assert checkpoint_to_string(ts) == str(PACKED)
        assert parse_checkpoint(checkpoint_to_string(ts)) == ts

    def test_to_ms(self):
        assert checkpoint_to_ms(Timestamp(1_700_000_000, 7)) == 1_700_000_000_007

    def test_strings_order_with_positions(self):
        a = int(checkpoint_to_string(Timestamp(1_700_000_000, 9)))
        b = int(checkpoint_to_string(Timestamp(1_700_000_001, 1)))
        assert a < b


class TestCheckpointKey:
    @pytest.mark.parametrize(
        ("source", "key"),
        [
            ("queue:orders", "orders"),
            ("system:orders", "orders"),
            ("BOT:orders", "orders"),
            ("orders", "orders"),
            ("queue:ns:orders", "ns:orders"),
        ],
    )
    def test_prefix_stripped(self, source: str, key: str):
        assert checkpoint_key(source) == key


class TestLookupCheckpoint:
    def test_no_source(self):
        assert lookup_checkpoint(_cfg(checkpoint={"orders": "1:0"})) is None

    def test_exact_key(self):
        cfg = _cfg(source="queue:orders", checkpoint={"queue:orders": "5:1"})
        assert lookup_checkpoint(cfg) == "5:1"

    def test_short_key_fallback(self):
        cfg = _cfg(source="queue:orders", checkpoint={"orders": "5:1"})
        assert lookup_checkpoint(cfg) == "5:1"

    def test_exact_key_wins(self):
        cfg = _cfg(
            source="queue:orders",
            checkpoint={"orders": "1:0", "queue:orders": "9:0"},
        )
        assert lookup_checkpoint(cfg) == "9:0"

    def test_wrapped_entry(self):
        cfg = _cfg(source="orders", checkpoint={"orders": {"checkpoint": "5:1"}})
        assert lookup_checkpoint(cfg) == "5:1"


class TestResolveCheckpoint:
    def test_missing_defaults_to_now(self):
        ts = resolve_checkpoint(_cfg(source="orders"), now=1_800_000_000.9)
        assert ts == Timestamp(1_800_000_000, 0)

    def test_missing_entry_defaults_to_now(self):
        cfg = _cfg(source="orders", checkpoint={"invoices": "1:0"})
        assert resolve_checkpoint(cfg, now=1_800_000_000) == Timestamp(1_800_000_000, 0)

    def test_stored_value(self):
        cfg = _cfg(source="orders", checkpoint={"orders": str(PACKED)})
        assert resolve_checkpoint(cfg) == Timestamp(1_700_000_000, 7)

    def test_invalid_stored_value_raises(self):
        cfg = _cfg(source="orders", checkpoint={"orders": "garbage"})
        with pytest.raises(CheckpointError):
            resolve_checkpoint(cfg)
