"""
Grant change consumer for access-sync.

The GrantEventConsumer reads grant change records from the event stream,
dispatches them to the GrantEventHandlers and acknowledges them. It
provides:
- Acknowledgment only after a record has been handled
- Redelivery of records whose handling hit a transient store failure
- Dropping of malformed records, which would never succeed

Invariants:
    - A record is committed only after its handler returned or after it
      was found malformed
    - A TransientStoreError leaves the record uncommitted; the consumer
      resubscribes from the last committed offsets after retry_delay_ms
    - Handlers are idempotent, so redelivered records are harmless

How to change safely:
    - New change kinds need a dispatch branch and a from_dict rule
    - Test redelivery with failure injection on the store
    - Monitor error_count and retry_count in production
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import TransientStoreError, ValidationError
from ..events.base import EventSerializationError, EventStream, StreamPos, StreamRecord
from ..store.base import Grant
from .handlers import GrantEventHandlers, HandlerResult

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    """Grant lifecycle transition carried by a record."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class GrantChangeEvent:
    """A grant change record from the event stream.

    Attributes:
        event_id: Unique ID of this change (redeliveries repeat it)
        kind: Which transition happened
        before: Grant before the change (updated, deleted)
        after: Grant after the change (created, updated)
        stream_pos: Position in the stream

    Example:
        {
            "event_id": "evt_123",
            "kind": "created",
            "before": null,
            "after": {
                "grant_id": "g1", "owner": "u1", "scope": "category",
                "scope_id": "catA", "grantee": "u2", "access_level": "view"
            }
        }
    """

    event_id: str
    kind: ChangeKind
    before: Grant | None = None
    after: Grant | None = None
    stream_pos: StreamPos | None = None

    @property
    def grant(self) -> Grant:
        """The grant the change is about (after if present, else before)."""
        grant = self.after or self.before
        if grant is None:
            raise ValidationError("Grant change carries neither before nor after")
        return grant

    @classmethod
    def from_dict(cls, data: Any, stream_pos: StreamPos | None = None) -> GrantChangeEvent:
        """Create from dictionary representation.

        Raises:
            ValidationError: If the kind is unknown or a required grant is
                missing or malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Grant change must be an object")

        try:
            kind = ChangeKind(data.get("kind"))
        except ValueError:
            raise ValidationError(f"Unknown change kind: {data.get('kind')!r}", field_name="kind")

        before = Grant.from_dict(data["before"]) if data.get("before") is not None else None
        after = Grant.from_dict(data["after"]) if data.get("after") is not None else None

        if kind in (ChangeKind.UPDATED, ChangeKind.DELETED) and before is None:
            raise ValidationError(f"'{kind.value}' change requires 'before'", field_name="before")
        if kind in (ChangeKind.CREATED, ChangeKind.UPDATED) and after is None:
            raise ValidationError(f"'{kind.value}' change requires 'after'", field_name="after")

        return cls(
            event_id=str(data.get("event_id") or ""),
            kind=kind,
            before=before,
            after=after,
            stream_pos=stream_pos,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "before": self.before.to_dict() if self.before else None,
            "after": self.after.to_dict() if self.after else None,
        }


async def publish_grant_change(
    stream: EventStream,
    topic: str,
    kind: ChangeKind,
    before: Grant | None = None,
    after: Grant | None = None,
    event_id: str | None = None,
) -> StreamPos:
    """Encode a grant change and append it to the stream, keyed by grant ID.

    Returns:
        Position the record was written at
    """
    event = GrantChangeEvent(
        event_id=event_id or str(uuid.uuid4()),
        kind=kind,
        before=before,
        after=after,
    )
    value = json.dumps(event.to_dict()).encode("utf-8")
    return await stream.append(topic, event.grant.grant_id, value)


class GrantEventConsumer:
    """Consumes grant change records and applies them.

    The consumer:
    1. Subscribes to the grant change topic
    2. Parses each record into a GrantChangeEvent
    3. Dispatches it to the matching handler
    4. Commits the record

    Thread safety:
        Designed to run as a single task per consumer group member.

    Example:
        >>> consumer = GrantEventConsumer(stream, handlers)
        >>> await consumer.start()  # Runs until stopped
    """

    def __init__(
        self,
        stream: EventStream,
        handlers: GrantEventHandlers,
        topic: str = "grant-changes",
        group_id: str = "access-sync",
        retry_delay_ms: int = 1000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the consumer.

        Args:
            stream: Event stream to consume from
            handlers: Grant lifecycle handlers
            topic: Grant change topic
            group_id: Consumer group ID
            retry_delay_ms: Pause before resubscribing after a transient failure
            sleep: Coroutine used for the retry pause
        """
        self.stream = stream
        self.handlers = handlers
        self.topic = topic
        self.group_id = group_id
        self.retry_delay_ms = retry_delay_ms
        self._sleep = sleep

        self._running = False
        self._processed_count = 0
        self._dropped_count = 0
        self._error_count = 0
        self._retry_count = 0
        self._last_position: StreamPos | None = None

    async def start(self) -> None:
        """Run the consume loop until stop() is called or the task is cancelled."""
        if self._running:
            logger.warning("Consumer already running")
            return

        self._running = True
        logger.info("Starting grant consumer", extra={"topic": self.topic, "group_id": self.group_id})

        try:
            while self._running:
                try:
                    await self._consume()
                except TransientStoreError as e:
                    self._retry_count += 1
                    logger.warning(
                        "Store unavailable, leaving record for redelivery",
                        extra={"operation": e.operation, "retry_delay_ms": self.retry_delay_ms},
                    )
                    await self._sleep(self.retry_delay_ms / 1000.0)
        except asyncio.CancelledError:
            logger.info("Grant consumer cancelled")
        except Exception as e:
            logger.error(f"Grant consumer error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the consume loop after the current record."""
        self._running = False
        logger.info("Stopping grant consumer")

    async def _consume(self) -> None:
        """One subscription: handle and commit records until stopped.

        Raises:
            TransientStoreError: Without committing the failing record
        """
        async with aclosing(self.stream.subscribe(self.topic, self.group_id)) as records:
            async for record in records:
                if not self._running:
                    return
                await self.process_record(record)
                await self.stream.commit(record, self.group_id)
                self._last_position = record.position

    async def process_record(self, record: StreamRecord) -> HandlerResult | None:
        """Parse and handle one record.

        Returns:
            The handler result, or None if the record was dropped

        Raises:
            TransientStoreError: If the store was unavailable
        """
        try:
            event = GrantChangeEvent.from_dict(record.value_json(), record.position)
        except (EventSerializationError, ValidationError) as e:
            self._dropped_count += 1
            logger.warning(
                "Dropping malformed grant change",
                extra={"key": record.key, "position": str(record.position), "error": str(e)},
            )
            return None

        try:
            result = await self.dispatch(event)
        except TransientStoreError:
            raise
        except Exception as e:
            self._error_count += 1
            logger.error(
                f"Error handling grant change: {e}",
                exc_info=True,
                extra={"event_id": event.event_id, "kind": event.kind.value},
            )
            return None

        self._processed_count += 1
        logger.debug(
            "Handled grant change",
            extra={
                "event_id": event.event_id,
                "kind": event.kind.value,
                "action": result.action,
                "mutated": result.mutated,
            },
        )
        return result

    async def dispatch(self, event: GrantChangeEvent) -> HandlerResult:
        """Route a parsed change to its handler."""
        if event.kind == ChangeKind.CREATED and event.after is not None:
            return await self.handlers.on_grant_created(event.after)
        if event.kind == ChangeKind.UPDATED and event.before is not None and event.after is not None:
            return await self.handlers.on_grant_updated(event.before, event.after)
        if event.kind == ChangeKind.DELETED and event.before is not None:
            return await self.handlers.on_grant_deleted(event.before)
        raise ValidationError(
            f"'{event.kind.value}' change is missing its grant", field_name="kind"
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, Any]:
        """Get consumer statistics."""
        return {
            "running": self._running,
            "processed_count": self._processed_count,
            "dropped_count": self._dropped_count,
            "error_count": self._error_count,
            "retry_count": self._retry_count,
            "last_position": str(self._last_position) if self._last_position else None,
        }
