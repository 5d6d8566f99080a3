"""
In-memory grant event stream for testing.

This module provides a simple in-memory event stream backend for:
- Unit tests
- Integration tests of the consumer loop
- Local development without a Kafka cluster

Invariants:
    - All data is lost on process exit
    - Committed offsets are tracked per consumer group
    - subscribe() starts from the group's committed offsets, so anything
      left uncommitted is delivered again

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the EventStream protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .base import EventStreamConnectionError, StreamPos, StreamRecord

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    records: list[StreamRecord] = field(default_factory=list)


class InMemoryEventStream:
    """In-memory implementation of EventStream for testing.

    Attributes:
        num_partitions: Number of partitions to simulate
        poll_interval: Seconds a subscriber waits for new records before
            re-checking whether it is still subscribed

    Example:
        >>> stream = InMemoryEventStream()
        >>> await stream.connect()
        >>> await stream.append("grant-changes", "g1", b"{...}")
        >>> async for record in stream.subscribe("grant-changes", "access-sync"):
        ...     await stream.commit(record, "access-sync")
    """

    def __init__(self, num_partitions: int = 4, poll_interval: float = 1.0) -> None:
        self.num_partitions = num_partitions
        self.poll_interval = poll_interval
        self._topics: dict[str, dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        self._committed: dict[tuple[str, str], dict[int, int]] = defaultdict(dict)
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_record = asyncio.Event()
        self._subscribers: set[str] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryEventStream connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._topics.clear()
        self._committed.clear()
        self._subscribers.clear()
        self._new_record.set()
        logger.debug("InMemoryEventStream closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        if not self._connected:
            raise EventStreamConnectionError("Not connected")

        partition = self._partition_for_key(key)

        async with self._lock:
            part = self._topics[topic][partition]
            pos = StreamPos(
                topic=topic,
                partition=partition,
                offset=len(part.records),
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(
                StreamRecord(key=key, value=value, position=pos, headers=headers or {})
            )
            self._new_record.set()

        logger.debug(
            "Event appended to in-memory stream",
            extra={"topic": topic, "key": key, "partition": partition, "offset": pos.offset},
        )
        return pos

    async def subscribe(
        self,
        topic: str,
        group_id: str,
        start_position: StreamPos | None = None,
    ) -> AsyncIterator[StreamRecord]:
        """Yield records from the group's committed offsets onward.

        Raises:
            EventStreamConnectionError: If not connected
        """
        if not self._connected:
            raise EventStreamConnectionError("Not connected")

        consumer_key = f"{topic}:{group_id}"
        self._subscribers.add(consumer_key)

        committed = self._committed[(topic, group_id)]
        positions = {p: committed.get(p, 0) for p in range(self.num_partitions)}
        if start_position and start_position.topic == topic:
            positions[start_position.partition] = start_position.offset

        try:
            while consumer_key in self._subscribers and self._connected:
                async with self._lock:
                    pending = []
                    for partition, part in self._topics[topic].items():
                        pending.extend(part.records[positions[partition] :])
                        positions[partition] = len(part.records)
                    if not pending:
                        self._new_record.clear()

                # Yield outside the lock so handlers may append
                for record in pending:
                    yield record

                if not pending:
                    try:
                        await asyncio.wait_for(self._new_record.wait(), timeout=self.poll_interval)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._subscribers.discard(consumer_key)

    async def commit(self, record: StreamRecord, group_id: str) -> None:
        """Record the offset after `record` as committed for `group_id`."""
        pos = record.position
        committed = self._committed[(pos.topic, group_id)]
        committed[pos.partition] = max(committed.get(pos.partition, 0), pos.offset + 1)

    async def get_positions(self, topic: str, group_id: str) -> dict[int, StreamPos]:
        return {
            partition: StreamPos(
                topic=topic,
                partition=partition,
                offset=offset,
                timestamp_ms=int(time.time() * 1000),
            )
            for partition, offset in self._committed.get((topic, group_id), {}).items()
        }

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(hash_bytes[:4], "big") % self.num_partitions

    # Testing helpers

    def unsubscribe(self, topic: str, group_id: str) -> None:
        """End an active subscription after its current wait (testing helper)."""
        self._subscribers.discard(f"{topic}:{group_id}")
        self._new_record.set()

    def get_record_count(self, topic: str) -> int:
        """Get total record count for a topic (testing helper)."""
        if topic not in self._topics:
            return 0
        return sum(len(part.records) for part in self._topics[topic].values())

    def uncommitted_count(self, topic: str, group_id: str) -> int:
        """Records a group has not yet committed (testing helper)."""
        if topic not in self._topics:
            return 0
        committed = self._committed.get((topic, group_id), {})
        return sum(
            len(part.records) - committed.get(partition, 0)
            for partition, part in self._topics[topic].items()
        )
