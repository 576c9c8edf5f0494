"""Producer for direct (non-persistent) publishing on a topic exchange."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractIncomingMessage
from aio_pika.exceptions import AMQPChannelError, ChannelInvalidStateError
from loguru import logger

from rmq_relay.errors import (
    PublishError,
    RelayError,
    TransportLostError,
    describe_channel_error,
    is_connection_failure,
)
from rmq_relay.models import OutboundMessage

if TYPE_CHECKING:
    from rmq_relay.session import BrokerSession


class ProducerErrorSink(Protocol):
    """Receives asynchronous producer notifications."""

    def on_error(self, error: RelayError) -> None: ...

    def on_returned(self, topic: str) -> None: ...


class Producer:
    """Send-side handle on its own channel, without publisher confirms.

    A channel closed by the broker (for example on an access violation) is
    reported to the error sink and reopened.
    """

    def __init__(self, session: BrokerSession, errors: ProducerErrorSink) -> None:
        self._session = session
        self._errors = errors
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._reopen_task: asyncio.Task | None = None
        self._closed = False

    def __repr__(self) -> str:
        return f"Producer(exchange={self._session.settings.output_exchange!r})"

    async def bind(self) -> None:
        channel = await self._session.open_channel(publisher_confirms=False)
        channel.close_callbacks.add(self._on_channel_closed)
        channel.return_callbacks.add(self._on_returned)
        self._exchange = await channel.get_exchange(self._session.settings.output_exchange)
        self._channel = channel

    async def send(self, message: OutboundMessage, topic: str) -> None:
        """Publish ``message`` on ``topic``.

        Raises TransportLostError when the session cannot recover and
        PublishError for anything else.
        """
        if self._closed:
            raise TransportLostError("Producer is closed")
        await self._session.wait_connected()

        exchange = self._exchange
        if exchange is None:
            raise PublishError("Producer channel is not open")

        amqp_message = Message(
            body=message.body,
            content_type=message.content_type,
            content_encoding="utf-8",
            correlation_id=message.correlation_id,
            delivery_mode=DeliveryMode.NOT_PERSISTENT,
        )

        try:
            await exchange.publish(amqp_message, routing_key=topic, mandatory=True)
        except Exception as e:
            if is_connection_failure(e):
                if self._session.is_terminal:
                    raise TransportLostError(f"Transport lost during publish: {e}") from e
                raise PublishError(f"Connection interrupted during publish: {e}") from e
            if isinstance(e, (AMQPChannelError, ChannelInvalidStateError)):
                code, phrase = describe_channel_error(e)
                raise PublishError(phrase, code=code) from e
            raise PublishError(f"Failed to publish message: {e}") from e

        logger.trace("Message published", topic=topic, correlation_id=message.correlation_id)

    def _on_channel_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        self._exchange = None
        if self._closed or exc is None:
            return

        if is_connection_failure(exc) or isinstance(exc, asyncio.CancelledError):
            # The session reconnect loop reattaches the producer
            if self._session.is_terminal:
                self._report(TransportLostError(str(exc)))
            return

        code, phrase = describe_channel_error(exc)
        self._report(PublishError(phrase, code=code))
        if self._session.is_connected:
            self._reopen_task = asyncio.get_running_loop().create_task(self._reopen())

    async def _reopen(self) -> None:
        try:
            await self.bind()
            logger.info("Producer channel reopened")
        except Exception as e:
            logger.error("Failed to reopen producer channel: {}", e)

    def _on_returned(self, sender: Any, message: AbstractIncomingMessage) -> None:
        topic = message.routing_key or ""
        logger.debug("Message returned by broker", topic=topic)
        self._errors.on_returned(topic)

    def _report(self, error: RelayError) -> None:
        try:
            self._errors.on_error(error)
        except Exception:
            logger.exception("Producer error handler failed")

    async def reattach(self) -> None:
        if self._closed:
            return
        await self.bind()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._exchange = None
        if self._reopen_task is not None and not self._reopen_task.done():
            self._reopen_task.cancel()
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
