"""
Unit tests for the in-memory grant event stream.

Tests cover:
- Connection lifecycle
- Append positions and key partitioning
- Per-group committed offsets
- Redelivery of uncommitted records on resubscribe
"""

import asyncio

import pytest

from sharing.access_sync.events.base import (
    EventSerializationError,
    EventStreamConnectionError,
    StreamPos,
    StreamRecord,
)
from sharing.access_sync.events.memory import InMemoryEventStream

TOPIC = "grant-changes"


async def take(stream, group_id, count):
    """Read `count` records from a fresh subscription, then close it."""
    records = []
    subscription = stream.subscribe(TOPIC, group_id)
    try:
        while len(records) < count:
            records.append(await asyncio.wait_for(subscription.__anext__(), timeout=2.0))
    finally:
        await subscription.aclose()
    return records


class TestInMemoryEventStream:
    """Tests for InMemoryEventStream."""

    @pytest.fixture
    def stream(self):
        return InMemoryEventStream(num_partitions=4, poll_interval=0.01)

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, stream):
        assert not stream.is_connected
        await stream.connect()
        assert stream.is_connected
        await stream.close()
        assert not stream.is_connected

    @pytest.mark.asyncio
    async def test_append_requires_connection(self, stream):
        with pytest.raises(EventStreamConnectionError):
            await stream.append(TOPIC, "g1", b"{}")

    @pytest.mark.asyncio
    async def test_same_key_same_partition(self, stream):
        await stream.connect()

        first = await stream.append(TOPIC, "g1", b"1")
        second = await stream.append(TOPIC, "g1", b"2")

        assert first.partition == second.partition
        assert second.offset == first.offset + 1
        assert stream.get_record_count(TOPIC) == 2

    @pytest.mark.asyncio
    async def test_subscribe_delivers_everything(self, stream):
        await stream.connect()
        for i in range(6):
            await stream.append(TOPIC, f"g{i}", f"{i}".encode())

        records = await take(stream, "group", 6)

        assert {r.key for r in records} == {f"g{i}" for i in range(6)}

    @pytest.mark.asyncio
    async def test_uncommitted_records_are_redelivered(self, stream):
        await stream.connect()
        await stream.append(TOPIC, "g1", b"a")
        await stream.append(TOPIC, "g1", b"b")

        first, _ = await take(stream, "group", 2)
        await stream.commit(first, "group")

        redelivered = await take(stream, "group", 1)

        assert redelivered[0].value == b"b"
        assert stream.uncommitted_count(TOPIC, "group") == 1

    @pytest.mark.asyncio
    async def test_commits_are_per_group(self, stream):
        await stream.connect()
        await stream.append(TOPIC, "g1", b"a")

        (record,) = await take(stream, "group-a", 1)
        await stream.commit(record, "group-a")

        assert stream.uncommitted_count(TOPIC, "group-a") == 0
        assert stream.uncommitted_count(TOPIC, "group-b") == 1
        assert (await take(stream, "group-b", 1))[0].value == b"a"

    @pytest.mark.asyncio
    async def test_get_positions(self, stream):
        await stream.connect()
        pos = await stream.append(TOPIC, "g1", b"a")
        (record,) = await take(stream, "group", 1)
        await stream.commit(record, "group")

        positions = await stream.get_positions(TOPIC, "group")

        assert positions[pos.partition].offset == pos.offset + 1

    @pytest.mark.asyncio
    async def test_subscriber_sees_later_appends(self, stream):
        await stream.connect()

        reader = asyncio.create_task(take(stream, "group", 1))
        await asyncio.sleep(0.05)
        await stream.append(TOPIC, "g1", b"late")

        records = await asyncio.wait_for(reader, timeout=2.0)
        assert records[0].value == b"late"

    @pytest.mark.asyncio
    async def test_unsubscribe_ends_subscription(self, stream):
        await stream.connect()

        async def drain():
            return [r async for r in stream.subscribe(TOPIC, "group")]

        reader = asyncio.create_task(drain())
        await asyncio.sleep(0.05)
        stream.unsubscribe(TOPIC, "group")

        assert await asyncio.wait_for(reader, timeout=2.0) == []


class TestStreamRecord:
    """Tests for StreamRecord."""

    def test_value_json(self):
        record = StreamRecord("g1", b'{"kind": "created"}', StreamPos(TOPIC, 0, 0, 0))
        assert record.value_json() == {"kind": "created"}

    def test_value_json_invalid(self):
        record = StreamRecord("g1", b"not json", StreamPos(TOPIC, 0, 0, 0))
        with pytest.raises(EventSerializationError):
            record.value_json()
