"""
Configuration management for access-sync.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Propagation batch size never exceeds the store's atomic batch cap
    - Predicate chunk size never exceeds the store's per-query value cap
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported item/grant store backends."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class EventBackend(Enum):
    """Supported grant event stream backends."""

    KAFKA = "kafka"
    MEMORY = "memory"


@dataclass(frozen=True)
class StorageConfig:
    """Item and grant store configuration.

    Attributes:
        backend: Which store implementation to use
        data_dir: Directory for the SQLite database
        db_filename: SQLite database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
        max_batch_size: Maximum documents per atomic write batch
        max_predicate_values: Maximum values in one `in` predicate
    """

    backend: StoreBackend = StoreBackend.SQLITE
    data_dir: str = "/var/lib/access-sync"
    db_filename: str = "access.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB
    max_batch_size: int = 450
    max_predicate_values: int = 30

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORE_BACKEND", "sqlite").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: sqlite, memory")

        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/access-sync"),
            db_filename=os.getenv("STORE_DB_FILENAME", "access.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
            max_batch_size=int(os.getenv("STORE_MAX_BATCH_SIZE", "450")),
            max_predicate_values=int(os.getenv("STORE_MAX_PREDICATE_VALUES", "30")),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda grant event source configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level
        auto_offset_reset: Where a new consumer group starts
        enable_auto_commit: Must stay False; records are committed after handling
    """

    brokers: str = "localhost:9092"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    acks: str = "all"
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = False

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
            enable_auto_commit=os.getenv("KAFKA_AUTO_COMMIT", "false").lower() == "true",
        )


@dataclass(frozen=True)
class EventSourceConfig:
    """Grant lifecycle event source configuration.

    Attributes:
        backend: Which stream implementation delivers grant changes
        topic: Topic carrying grant change records
        consumer_group: Consumer group ID for the propagation consumer
        retry_delay_ms: Pause before resubscribing after a transient failure
    """

    backend: EventBackend = EventBackend.KAFKA
    topic: str = "grant-changes"
    consumer_group: str = "access-sync"
    retry_delay_ms: int = 1000

    @classmethod
    def from_env(cls) -> EventSourceConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("EVENT_BACKEND", "kafka").lower()
        try:
            backend = EventBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid EVENT_BACKEND '{backend_str}'. Must be one of: kafka, memory")

        return cls(
            backend=backend,
            topic=os.getenv("GRANT_EVENTS_TOPIC", "grant-changes"),
            consumer_group=os.getenv("GRANT_EVENTS_GROUP", "access-sync"),
            retry_delay_ms=int(os.getenv("CONSUMER_RETRY_DELAY_MS", "1000")),
        )


@dataclass(frozen=True)
class PropagationConfig:
    """Grant event handler configuration.

    Attributes:
        write_batch_size: Experiences mutated per atomic batch
        inter_batch_delay_ms: Pause between batches to bound write rate
        predicate_chunk_size: Category IDs per grant lookup query
        verify_category_namespace: Check both category namespaces and log mismatches
    """

    write_batch_size: int = 400
    inter_batch_delay_ms: int = 50
    predicate_chunk_size: int = 30
    verify_category_namespace: bool = True

    @classmethod
    def from_env(cls) -> PropagationConfig:
        """Load configuration from environment variables."""
        return cls(
            write_batch_size=int(os.getenv("PROPAGATION_BATCH_SIZE", "400")),
            inter_batch_delay_ms=int(os.getenv("PROPAGATION_BATCH_DELAY_MS", "50")),
            predicate_chunk_size=int(os.getenv("PREDICATE_CHUNK_SIZE", "30")),
            verify_category_namespace=os.getenv("VERIFY_CATEGORY_NAMESPACE", "true").lower()
            == "true",
        )


@dataclass(frozen=True)
class ReconcileConfig:
    """Reconciliation job defaults.

    Attributes:
        page_size: Experiences read per page
        max_items: Experiences processed per invocation
        page_delay_ms: Pause between pages
    """

    page_size: int = 100
    max_items: int = 1000
    page_delay_ms: int = 100

    @classmethod
    def from_env(cls) -> ReconcileConfig:
        """Load configuration from environment variables."""
        return cls(
            page_size=int(os.getenv("RECONCILE_PAGE_SIZE", "100")),
            max_items=int(os.getenv("RECONCILE_MAX_ITEMS", "1000")),
            page_delay_ms=int(os.getenv("RECONCILE_PAGE_DELAY_MS", "100")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Operator HTTP API configuration.

    Attributes:
        enabled: Whether to serve the HTTP API
        host: Bind host
        port: Bind port
        maintenance_secret: Shared secret for maintenance endpoints (optional)
    """

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8081
    maintenance_secret: str | None = None

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("HTTP_ENABLED", "true").lower() == "true",
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
            maintenance_secret=os.getenv("MAINTENANCE_SECRET") or None,
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Item/grant store configuration
        events: Grant event source configuration
        kafka: Kafka configuration (if events.backend is KAFKA)
        propagation: Grant event handler configuration
        reconcile: Reconciliation job defaults
        http: Operator HTTP API configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    events: EventSourceConfig = field(default_factory=EventSourceConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    propagation: PropagationConfig = field(default_factory=PropagationConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            events=EventSourceConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            propagation=PropagationConfig.from_env(),
            reconcile=ReconcileConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.events.backend == EventBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when EVENT_BACKEND=kafka")
            if self.kafka.enable_auto_commit:
                raise ValueError("KAFKA_AUTO_COMMIT must be false; records are committed after handling")
        if not self.events.topic:
            raise ValueError("GRANT_EVENTS_TOPIC is required")

        if self.propagation.write_batch_size < 1:
            raise ValueError("PROPAGATION_BATCH_SIZE must be positive")
        if self.propagation.write_batch_size > self.storage.max_batch_size:
            raise ValueError(
                f"PROPAGATION_BATCH_SIZE ({self.propagation.write_batch_size}) exceeds "
                f"STORE_MAX_BATCH_SIZE ({self.storage.max_batch_size})"
            )
        if self.propagation.predicate_chunk_size < 1:
            raise ValueError("PREDICATE_CHUNK_SIZE must be positive")
        if self.propagation.predicate_chunk_size > self.storage.max_predicate_values:
            raise ValueError(
                f"PREDICATE_CHUNK_SIZE ({self.propagation.predicate_chunk_size}) exceeds "
                f"STORE_MAX_PREDICATE_VALUES ({self.storage.max_predicate_values})"
            )
        if self.reconcile.page_size < 1 or self.reconcile.max_items < 1:
            raise ValueError("RECONCILE_PAGE_SIZE and RECONCILE_MAX_ITEMS must be positive")

        if self.storage.backend == StoreBackend.SQLITE and not os.path.exists(
            self.storage.data_dir
        ):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

        if self.http.enabled and not self.http.maintenance_secret:
            logger.warning("MAINTENANCE_SECRET is not set; maintenance endpoints are unauthenticated")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "store_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir,
                "event_backend": self.events.backend.value,
                "topic": self.events.topic,
                "consumer_group": self.events.consumer_group,
                "kafka_brokers": self.kafka.brokers
                if self.events.backend == EventBackend.KAFKA
                else None,
                "write_batch_size": self.propagation.write_batch_size,
                "predicate_chunk_size": self.propagation.predicate_chunk_size,
                "http_enabled": self.http.enabled,
                "http_port": self.http.port if self.http.enabled else None,
                "maintenance_secret_set": bool(self.http.maintenance_secret),
                "log_level": self.observability.log_level,
            },
        )
