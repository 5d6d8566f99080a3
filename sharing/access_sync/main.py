"""
access-sync server - Main entry point.

This module starts the access-sync service with all components:
- Grant consumer loop (grant change stream -> access-sets)
- Operator HTTP API (reconciliation, read path, health)

Usage:
    access-sync-server
    python -m sharing.access_sync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is initialized before the consumer starts
    - Graceful shutdown stops the consumer before closing the stream
    - Handlers and the reconciliation job share one store handle

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
import uvicorn

from .api import create_app
from .config import ServerConfig
from .events import EventStream, create_event_stream
from .propagate import GrantEventConsumer, GrantEventHandlers
from .reconcile import ReconciliationJob
from .store import create_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """access-sync server orchestrator.

    Manages the lifecycle of all components:
    - Store and event stream connections
    - Grant consumer task
    - HTTP API task

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.stream: EventStream | None = None
        self.consumer: GrantEventConsumer | None = None
        self.http_server: uvicorn.Server | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components, then wait for shutdown."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting access-sync server")
        self.config.log_config()

        try:
            store = create_store(self.config.storage)
            await store.initialize()

            self.stream = create_event_stream(self.config)
            await self.stream.connect()
            logger.info("Event stream connected")

            handlers = GrantEventHandlers(items=store, grants=store, config=self.config.propagation)
            self.consumer = GrantEventConsumer(
                stream=self.stream,
                handlers=handlers,
                topic=self.config.events.topic,
                group_id=self.config.events.consumer_group,
                retry_delay_ms=self.config.events.retry_delay_ms,
            )
            self._tasks.append(asyncio.create_task(self.consumer.start(), name="grant-consumer"))

            if self.config.http.enabled:
                job = ReconciliationJob(
                    items=store,
                    grants=store,
                    config=self.config.reconcile,
                    chunk_size=self.config.propagation.predicate_chunk_size,
                )
                consumer = self.consumer
                app = create_app(
                    items=store,
                    job=job,
                    config=self.config.http,
                    consumer_stats=lambda: consumer.stats,
                )
                self.http_server = uvicorn.Server(
                    uvicorn.Config(
                        app,
                        host=self.config.http.host,
                        port=self.config.http.port,
                        log_config=None,
                    )
                )
                self._tasks.append(asyncio.create_task(self.http_server.serve(), name="http-api"))
                logger.info(
                    "HTTP API started",
                    extra={"host": self.config.http.host, "port": self.config.http.port},
                )

            self._running = True
            logger.info("access-sync server started successfully")

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

        # Wait for shutdown signal or for a component to exit
        shutdown = asyncio.create_task(self._shutdown_event.wait())
        done, _ = await asyncio.wait(
            [shutdown, *self._tasks], return_when=asyncio.FIRST_COMPLETED
        )
        shutdown.cancel()

        if shutdown not in done:
            for task in done:
                self._check_component(task)

    def _check_component(self, task: asyncio.Task) -> None:
        """Raise if a component task ended before shutdown was requested.

        Raises:
            Exception: The component's own error
            RuntimeError: If the component returned on its own
        """
        name = task.get_name()
        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            logger.error(f"Server component failed: {name}", exc_info=error)
            raise error
        logger.error(f"Server component exited unexpectedly: {name}")
        raise RuntimeError(f"Server component exited unexpectedly: {name}")

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running and not self._tasks:
            return

        logger.info("Stopping access-sync server")

        if self.consumer:
            await self.consumer.stop()

        if self.http_server:
            self.http_server.should_exit = True

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.stream:
            await self.stream.close()

        self._running = False
        logger.info("access-sync server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_code = 0
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    except Exception:
        exit_code = 1
    finally:
        loop.run_until_complete(server.stop())
        loop.close()

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
