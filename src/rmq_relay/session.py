"""Broker session with connection management and lifecycle events.

Provides the BrokerSession class that handles:
- Initial connection with exponential backoff retries
- Reconnection after an established connection drops, with a bounded
  number of attempts
- Reapplying consumer flows and producers after a reconnect
- Lifecycle event notifications
- Closing the session once, cascading to every flow and producer
"""

import asyncio
from enum import Enum
from typing import Any, Protocol

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection
from loguru import logger

from rmq_relay import __version__
from rmq_relay.config import Settings
from rmq_relay.errors import BrokerConnectionError, RelayError, TransportLostError
from rmq_relay.flow import ConsumerFlow, MessageListener
from rmq_relay.models import FlowProperties
from rmq_relay.producer import Producer, ProducerErrorSink


class ConnectionState(str, Enum):
    """Session connection state machine states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionEvent(str, Enum):
    """Lifecycle notifications emitted by a session."""

    UP_NOTICE = "up_notice"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    SUBSCRIPTIONS_REAPPLIED = "subscriptions_reapplied"
    DOWN_ERROR = "down_error"


class SessionEventSink(Protocol):
    def on_session_event(self, event: SessionEvent, detail: str) -> None: ...


class Attachment(Protocol):
    """A flow or producer whose channel lives on the session connection."""

    async def reattach(self) -> None: ...

    async def close(self) -> None: ...


class BrokerSession:
    """One authenticated attachment to a broker endpoint.

    Created once, connected, reused for the lifetime of the process and
    closed once. Flows and producers are created from the session and are
    closed with it.
    """

    def __init__(self, settings: Settings, events: SessionEventSink | None = None):
        self._settings = settings
        self._events = events
        self._connection: AbstractConnection | None = None
        self._state = ConnectionState.DISCONNECTED
        self._connected = asyncio.Event()
        self._attachments: list[Attachment] = []
        self._reconnect_task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closing = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if the connection is established and open."""
        return (
            self._state is ConnectionState.CONNECTED
            and self._connection is not None
            and not self._connection.is_closed
        )

    @property
    def is_terminal(self) -> bool:
        """True once the session can no longer deliver or publish."""
        return self._state in (
            ConnectionState.FAILED,
            ConnectionState.CLOSING,
            ConnectionState.CLOSED,
        )

    def _emit(self, event: SessionEvent, detail: str = "") -> None:
        logger.info("### Received a Session event: {} {}", event.value, detail)
        if self._events is None:
            return
        try:
            self._events.on_session_event(event, detail)
        except Exception:
            logger.exception("Session event handler failed")

    async def _open_connection(self) -> AbstractConnection:
        connection = await aio_pika.connect(
            host=self._settings.broker_host,
            port=self._settings.broker_port,
            login=self._settings.client_username,
            password=self._settings.password,
            virtualhost=self._settings.message_vpn,
            timeout=self._settings.connect_timeout,
            client_properties={"connection_name": f"rmq-relay/{__version__}"},
        )
        connection.close_callbacks.add(self._on_connection_closed)
        return connection

    async def connect(self) -> None:
        """Connect to the broker, retrying with exponential backoff."""
        if self._closing:
            raise RelayError("Session is closed")
        if self.is_connected:
            return

        self._loop = asyncio.get_running_loop()
        self._state = ConnectionState.CONNECTING
        attempts = self._settings.connect_retries_per_host
        last_error: Exception | None = None

        logger.info("Connecting to {}", self._settings.broker_url_masked)
        for attempt in range(attempts):
            try:
                if attempt > 0:
                    delay = self._settings.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning("Retrying connection in {:.1f}s", delay)
                    await asyncio.sleep(delay)

                self._connection = await self._open_connection()
                break
            except Exception as e:
                last_error = e
                logger.warning("Connection attempt {} failed: {}", attempt + 1, e)
        else:
            self._state = ConnectionState.DISCONNECTED
            raise BrokerConnectionError(
                f"Failed to connect after {attempts} attempts: {last_error}"
            )

        self._state = ConnectionState.CONNECTED
        self._connected.set()
        self._emit(SessionEvent.UP_NOTICE, self._settings.broker_url_masked)

    async def open_channel(self, *, publisher_confirms: bool = False) -> AbstractChannel:
        """Open a channel on the current connection."""
        if self.is_terminal:
            raise TransportLostError(f"Session is {self._state.value}")
        if not self.is_connected:
            raise BrokerConnectionError("Session is not connected")
        return await self._connection.channel(publisher_confirms=publisher_confirms)

    async def wait_connected(self) -> None:
        """Wait out a reconnect in progress.

        Raises TransportLostError when the session has failed or was closed.
        """
        if not self.is_terminal and not self._connected.is_set():
            await self._connected.wait()
        if self.is_terminal:
            raise TransportLostError(f"Session is {self._state.value}")

    async def create_flow(
        self, properties: FlowProperties, listener: MessageListener
    ) -> ConsumerFlow:
        """Bind a consumer flow to a queue. The flow must be started explicitly."""
        flow = ConsumerFlow(self, properties, listener)
        await flow.bind()
        self._attachments.append(flow)
        return flow

    async def create_producer(self, errors: ProducerErrorSink) -> Producer:
        """Create a producer for direct publishing on the output exchange."""
        producer = Producer(self, errors)
        await producer.bind()
        self._attachments.append(producer)
        return producer

    def _on_connection_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if self._closing or self.is_terminal:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        self._connected.clear()
        self._state = ConnectionState.RECONNECTING
        self._emit(SessionEvent.RECONNECTING, str(exc) if exc else "connection closed")
        if self._loop is not None:
            self._reconnect_task = self._loop.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        retries = self._settings.reconnect_retries
        for attempt in range(1, retries + 1):
            await asyncio.sleep(self._settings.reconnect_retry_wait)
            if self._closing:
                return

            logger.info("Reconnect attempt {}/{}", attempt, retries)
            try:
                self._connection = await self._open_connection()
            except Exception as e:
                logger.warning("Reconnect attempt {} failed: {}", attempt, e)
                continue

            self._state = ConnectionState.CONNECTED
            self._emit(SessionEvent.RECONNECTED, f"after {attempt} attempt(s)")
            await self._reapply()
            if self._connection.is_closed:
                self._state = ConnectionState.RECONNECTING
                continue

            self._connected.set()
            self._emit(SessionEvent.SUBSCRIPTIONS_REAPPLIED, f"{len(self._attachments)} attachment(s)")
            return

        self._state = ConnectionState.FAILED
        # Wake publishers waiting on the reconnect
        self._connected.set()
        self._emit(SessionEvent.DOWN_ERROR, f"reconnect retries exhausted ({retries})")

    async def _reapply(self) -> None:
        for attachment in self._attachments:
            try:
                await attachment.reattach()
            except Exception as e:
                logger.error("Failed to reapply {}: {}", attachment, e)

    async def close(self) -> None:
        """Close every flow and producer, then the connection. Runs once."""
        if self._closing:
            return
        self._closing = True
        self._state = ConnectionState.CLOSING
        logger.info("Closing session")

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass

        errors = []
        for attachment in reversed(self._attachments):
            try:
                await attachment.close()
            except Exception as e:
                errors.append(f"{attachment}: {e}")
                logger.warning("Error closing {}: {}", attachment, e)
        self._attachments.clear()

        if self._connection is not None:
            try:
                if not self._connection.is_closed:
                    await self._connection.close()
            except Exception as e:
                errors.append(f"connection: {e}")
                logger.warning("Error closing connection: {}", e)
        self._connection = None

        self._state = ConnectionState.CLOSED
        self._connected.set()

        if errors:
            logger.warning("Session closed with {} error(s)", len(errors))
        else:
            logger.debug("Session closed successfully")
