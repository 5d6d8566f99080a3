"""
Grant event stream abstraction for access-sync.

Grant lifecycle changes (created, updated, deleted) arrive as records on
an at-least-once stream. Backends:
- Kafka/Redpanda (production)
- In-memory (tests and local development)

Invariants:
    - Records may be duplicated, delayed or reordered across partitions
    - Offsets are committed only after a record has been handled
    - Records left uncommitted are delivered again

How to change safely:
    - New backends must implement the EventStream protocol
    - Never turn on auto-commit
"""

from .base import (
    EventSerializationError,
    EventStream,
    EventStreamConnectionError,
    EventStreamError,
    EventStreamTimeoutError,
    StreamPos,
    StreamRecord,
    create_event_stream,
)
from .memory import InMemoryEventStream

__all__ = [
    # Protocol and types
    "EventStream",
    "StreamRecord",
    "StreamPos",
    # Errors
    "EventStreamError",
    "EventStreamConnectionError",
    "EventStreamTimeoutError",
    "EventSerializationError",
    # Implementations
    "InMemoryEventStream",
    "create_event_stream",
]
