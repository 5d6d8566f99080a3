"""
Kafka/Redpanda grant event stream implementation.

Grant change records are produced keyed by grant ID and consumed by the
propagation consumer with manual commits. It works with:
- Apache Kafka
- Amazon MSK
- Redpanda

Invariants:
    - Producer uses acks=all and idempotence
    - Consumer never auto-commits; offsets move only after handling
    - A new subscription starts from the group's committed offsets

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Keep enable_auto_commit false or redelivery on failure is lost
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from .base import (
    EventStreamConnectionError,
    EventStreamError,
    EventStreamTimeoutError,
    StreamPos,
    StreamRecord,
)

if TYPE_CHECKING:
    from ..config import KafkaConfig

logger = logging.getLogger(__name__)


class KafkaEventStream:
    """Kafka implementation of the EventStream protocol.

    Example:
        >>> stream = KafkaEventStream(KafkaConfig(brokers="localhost:9092"))
        >>> await stream.connect()
        >>> await stream.append("grant-changes", "grant_1", b'{"kind": "created", ...}')
    """

    def __init__(self, config: KafkaConfig) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    def _security_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            options["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            options["sasl_mechanism"] = self.config.sasl_mechanism
            options["sasl_plain_username"] = self.config.sasl_username
            options["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            options["ssl_cafile"] = self.config.ssl_cafile
        return options

    async def connect(self) -> None:
        """Connect to the Kafka cluster.

        Raises:
            EventStreamConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=True,
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_options(),
            )
            await self._producer.start()
            self._connected = True
            logger.info("Connected to Kafka", extra={"brokers": self.config.brokers})
        except Exception as e:
            self._connected = False
            raise EventStreamConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Close Kafka connections, flushing pending writes."""
        if self._consumer:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record and wait for acknowledgment.

        Raises:
            EventStreamConnectionError: If not connected
            EventStreamTimeoutError: If send times out
            EventStreamError: For other Kafka errors
        """
        if not self._producer:
            raise EventStreamConnectionError("Not connected to Kafka")

        try:
            metadata = await self._producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8"),
                headers=list(headers.items()) if headers else None,
            )
        except KafkaTimeoutError as e:
            raise EventStreamTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise EventStreamConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise EventStreamError(f"Kafka send failed: {e}") from e

        return StreamPos(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=metadata.timestamp or int(time.time() * 1000),
        )

    async def subscribe(
        self,
        topic: str,
        group_id: str,
        start_position: StreamPos | None = None,
    ) -> AsyncIterator[StreamRecord]:
        """Consume a topic from the group's committed offsets.

        Any previous consumer is stopped first, so resubscribing after a
        failure rewinds to the last commit.

        Raises:
            EventStreamConnectionError: If subscription fails
        """
        try:
            if self._consumer:
                await self._consumer.stop()

            self._consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.config.brokers,
                group_id=group_id,
                auto_offset_reset=self.config.auto_offset_reset,
                enable_auto_commit=False,
                max_poll_records=100,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000,
                **self._security_options(),
            )
            await self._consumer.start()
            logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

            if start_position and start_position.topic == topic:
                self._consumer.seek(
                    TopicPartition(topic, start_position.partition), start_position.offset
                )

            async for msg in self._consumer:
                yield StreamRecord(
                    key=msg.key.decode("utf-8") if msg.key else "",
                    value=msg.value,
                    position=StreamPos(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        timestamp_ms=msg.timestamp or int(time.time() * 1000),
                    ),
                    headers=dict(msg.headers) if msg.headers else {},
                )

        except KafkaConnectionError as e:
            raise EventStreamConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            raise EventStreamError(f"Consumer error: {e}") from e

    async def commit(self, record: StreamRecord, group_id: str) -> None:
        """Commit the offset after `record`.

        The active consumer already belongs to `group_id`.

        Raises:
            EventStreamError: If commit fails
        """
        if not self._consumer:
            raise EventStreamError("No active consumer to commit")

        pos = record.position
        try:
            await self._consumer.commit(
                {TopicPartition(pos.topic, pos.partition): OffsetAndMetadata(pos.offset + 1, "")}
            )
        except KafkaError as e:
            raise EventStreamError(f"Failed to commit: {e}") from e

        logger.debug(
            "Committed offset",
            extra={"group_id": group_id, "partition": pos.partition, "offset": pos.offset},
        )

    async def get_positions(self, topic: str, group_id: str) -> dict[int, StreamPos]:
        """Get committed positions for a consumer group.

        Uses a short-lived consumer so the active subscription is untouched.
        """
        consumer = AIOKafkaConsumer(
            bootstrap_servers=self.config.brokers,
            group_id=group_id,
            enable_auto_commit=False,
            **self._security_options(),
        )
        try:
            await consumer.start()
            await consumer.topics()  # refresh metadata
            positions = {}
            for partition in consumer.partitions_for_topic(topic) or set():
                committed = await consumer.committed(TopicPartition(topic, partition))
                if committed is not None:
                    positions[partition] = StreamPos(
                        topic=topic,
                        partition=partition,
                        offset=committed,
                        timestamp_ms=int(time.time() * 1000),
                    )
            return positions
        except KafkaError as e:
            raise EventStreamError(f"Failed to get positions: {e}") from e
        finally:
            await consumer.stop()
