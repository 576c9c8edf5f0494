"""Consumer flow: a started subscription to one durable queue.

Deliveries reach the listener one at a time. The flow holds a lock around
each listener call, so the listener never overlaps with itself even when
the client library dispatches deliveries as concurrent tasks.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from loguru import logger

from rmq_relay.errors import (
    FlowError,
    RelayError,
    describe_channel_error,
    is_connection_failure,
)
from rmq_relay.models import AccessType, AckMode, FlowProperties, InboundMessage

if TYPE_CHECKING:
    from rmq_relay.session import BrokerSession


class MessageListener(Protocol):
    """Delivery sink installed on a flow.

    ``on_receive`` is never invoked concurrently with itself.
    """

    async def on_receive(self, message: InboundMessage) -> None: ...

    def on_exception(self, exc: Exception) -> None: ...


class ConsumerFlow:
    """Subscription to a queue with a fixed access type and ack mode."""

    def __init__(
        self,
        session: BrokerSession,
        properties: FlowProperties,
        listener: MessageListener,
    ) -> None:
        self._session = session
        self._properties = properties
        self._listener = listener
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None
        self._recover_task: asyncio.Task | None = None
        self._started = False
        self._closed = False
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"ConsumerFlow(queue={self._properties.queue!r})"

    @property
    def is_started(self) -> bool:
        return self._started

    async def bind(self) -> None:
        """Open a channel and look up the queue; the queue must already exist."""
        channel = await self._session.open_channel()
        channel.close_callbacks.add(self._on_channel_closed)
        await channel.set_qos(prefetch_count=self._session.settings.prefetch_count)
        self._queue = await channel.get_queue(self._properties.queue, ensure=True)
        self._channel = channel

    async def start(self) -> None:
        if self._closed:
            raise RelayError("Flow is closed")
        if self._started:
            return
        if self._queue is None:
            raise RelayError("Flow is not bound")

        await self._consume()
        self._started = True
        logger.info(
            "Flow started",
            queue=self._properties.queue,
            access=self._properties.access.value,
            ack_mode=self._properties.ack_mode.value,
        )

    async def _consume(self) -> None:
        self._consumer_tag = await self._queue.consume(
            self._on_message,
            no_ack=False,
            exclusive=self._properties.access is AccessType.EXCLUSIVE,
        )

    async def stop(self) -> None:
        """Stop delivery; the flow can be started again."""
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
        self._consumer_tag = None
        self._started = False

    async def _on_message(self, raw_message: AbstractIncomingMessage) -> None:
        message = InboundMessage.from_amqp(raw_message)
        async with self._lock:
            await self._dispatch(message)

    async def _dispatch(self, message: InboundMessage) -> None:
        try:
            await self._listener.on_receive(message)
        except Exception as exc:
            self._report(exc)

        if self._properties.ack_mode is AckMode.AUTO and not message.acknowledged:
            try:
                await message.ack()
            except Exception as e:
                logger.warning("Acknowledge failed for delivery {}: {}", message.delivery_tag, e)

    def _on_channel_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if self._closed or exc is None or sender is not self._channel:
            return
        if is_connection_failure(exc) or isinstance(exc, asyncio.CancelledError):
            return
        if not self._session.is_connected:
            # The session reconnect loop reattaches the flow
            return

        code, phrase = describe_channel_error(exc)
        logger.error("Broker closed flow channel on {}: {}", self._properties.queue, phrase)
        self._report(FlowError(phrase, code=code))
        self._recover_task = asyncio.get_running_loop().create_task(self._recover())

    async def _recover(self) -> None:
        try:
            await self.reattach()
        except Exception as e:
            logger.error("Failed to rebind flow on {}: {}", self._properties.queue, e)
            self._report(e)

    def _report(self, exc: Exception) -> None:
        try:
            self._listener.on_exception(exc)
        except Exception:
            logger.exception("Listener exception handler failed")

    async def reattach(self) -> None:
        """Rebind after a reconnect and resume delivery if the flow was started."""
        if self._closed:
            return
        self._consumer_tag = None
        await self.bind()
        if self._started:
            await self._consume()
            logger.info("Flow resumed", queue=self._properties.queue)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._recover_task is not None and not self._recover_task.done():
            self._recover_task.cancel()
        try:
            await self.stop()
        except Exception as e:
            logger.warning("Error cancelling consumer on {}: {}", self._properties.queue, e)

        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
        self._queue = None
