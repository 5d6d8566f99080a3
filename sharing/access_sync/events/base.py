"""
Base protocol and types for the grant event stream.

This module defines the EventStream protocol that all backends must
implement, along with common types for stream positions, records and
errors.

Invariants:
    - StreamPos uniquely identifies a position in the stream
    - Delivery is at-least-once; records may repeat or arrive out of order
      across partitions
    - Uncommitted records are redelivered on the next subscribe

How to change safely:
    - Protocol changes require updating all implementations
    - Never enable auto-commit; the consumer commits after handling
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class EventStreamError(Exception):
    """Base exception for event stream operations."""

    pass


class EventStreamConnectionError(EventStreamError):
    """Connection to the event stream backend failed."""

    pass


class EventStreamTimeoutError(EventStreamError):
    """Event stream operation timed out."""

    pass


class EventSerializationError(EventStreamError):
    """Failed to deserialize an event record."""

    pass


@dataclass(frozen=True)
class StreamPos:
    """Position in the event stream.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within partition
        timestamp_ms: Timestamp when the record was written (milliseconds)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A record from the event stream.

    Attributes:
        key: Partition key (the grant ID)
        value: JSON-encoded grant change
        position: Position in the stream
        headers: Optional headers/metadata

    Example:
        >>> async for record in stream.subscribe("grant-changes", "access-sync"):
        ...     change = record.value_json()
        ...     await handle(change)
        ...     await stream.commit(record, "access-sync")
    """

    key: str
    value: bytes
    position: StreamPos
    headers: dict[str, bytes] = field(default_factory=dict)

    def value_json(self) -> Any:
        """Parse value as JSON.

        Raises:
            EventSerializationError: If value is not valid JSON
        """
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise EventSerializationError(f"Failed to parse record value as JSON: {e}") from e

    def __str__(self) -> str:
        return f"StreamRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class EventStream(Protocol):
    """Protocol for grant event stream backends.

    Delivery contract:
        - append() returns only after the record is durably stored
        - subscribe() resumes from the group's committed positions
        - A record that is never committed will be delivered again
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            EventStreamConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release resources."""
        ...

    @abstractmethod
    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record to the stream.

        Raises:
            EventStreamConnectionError: If not connected
            EventStreamTimeoutError: If write times out
        """
        ...

    @abstractmethod
    def subscribe(
        self,
        topic: str,
        group_id: str,
        start_position: StreamPos | None = None,
    ) -> AsyncIterator[StreamRecord]:
        """Yield records from the group's committed positions onward.

        The caller must call commit() to acknowledge processed records.
        """
        ...

    @abstractmethod
    async def commit(self, record: StreamRecord, group_id: str) -> None:
        """Acknowledge a record for a consumer group.

        Raises:
            EventStreamError: If commit fails
        """
        ...

    @abstractmethod
    async def get_positions(self, topic: str, group_id: str) -> dict[int, StreamPos]:
        """Last committed position per partition for a consumer group."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_event_stream(config: ServerConfig) -> EventStream:
    """Factory function to create an event stream from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import EventBackend
    from .kafka import KafkaEventStream
    from .memory import InMemoryEventStream

    if config.events.backend == EventBackend.KAFKA:
        return KafkaEventStream(config.kafka)
    elif config.events.backend == EventBackend.MEMORY:
        return InMemoryEventStream()
    else:
        raise ValueError(f"Unsupported event backend: {config.events.backend}")
