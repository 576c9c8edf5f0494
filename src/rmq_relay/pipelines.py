"""Message pipelines installed on the consumer flow.

The processor republishes one derived message per delivery and always
acknowledges the delivery afterwards, whether or not the publish worked.
Output is therefore at-most-once: a failed direct publish is not retried
through redelivery.
"""

from typing import Protocol

from loguru import logger

from rmq_relay.errors import PublishError, RelayError, TransportLostError
from rmq_relay.models import InboundMessage, OutboundMessage
from rmq_relay.runloop import Counters, ShutdownFlag
from rmq_relay.session import SessionEvent
from rmq_relay.tracing import correlation_scope


class MessageSender(Protocol):
    async def send(self, message: OutboundMessage, topic: str) -> None: ...


def upper_case_topic(topic: str) -> str:
    """Derive the outbound payload from the inbound topic."""
    return topic.upper()


def log_publish_error(error: RelayError) -> None:
    if isinstance(error, PublishError) and error.code is not None:
        logger.error("{}: {}", error.code, error.phrase)
    else:
        logger.error("Publish error: {}", error)


class ProcessorPipeline:
    """Republishes the upper-cased inbound topic on a fixed output topic."""

    def __init__(
        self,
        producer: MessageSender,
        output_topic: str,
        counters: Counters,
        shutdown: ShutdownFlag,
    ) -> None:
        self._producer = producer
        self._output_topic = output_topic
        self._counters = counters
        self._shutdown = shutdown

    async def on_receive(self, message: InboundMessage) -> None:
        self._counters.record_received()
        with correlation_scope(message.correlation_id):
            try:
                outbound = OutboundMessage(
                    text=upper_case_topic(message.topic),
                    correlation_id=message.correlation_id,
                )
                await self._producer.send(outbound, self._output_topic)
                self._counters.record_sent()
            except TransportLostError as e:
                logger.error("### Caught while trying to send: {}", e)
                self._shutdown.trip("transport lost during publish")
            except RelayError as e:
                logger.warning("### Caught while trying to send: {}", e)
                log_publish_error(e)
            finally:
                await message.ack()

    def on_exception(self, exc: Exception) -> None:
        logger.opt(exception=exc).error("Consumer received exception: {}", exc)


class ConsumerPipeline:
    """Counts and acknowledges every delivery."""

    def __init__(self, counters: Counters) -> None:
        self._counters = counters

    async def on_receive(self, message: InboundMessage) -> None:
        self._counters.record_received()
        try:
            logger.trace(message.describe())
        finally:
            await message.ack()

    def on_exception(self, exc: Exception) -> None:
        logger.opt(exception=exc).error("Consumer received exception: {}", exc)


class ProducerErrorHandler:
    """Handles asynchronous producer errors.

    Transport loss trips the shutdown flag; protocol errors are logged with
    their reply code and text; returned messages set the discard flag.
    """

    def __init__(self, counters: Counters, shutdown: ShutdownFlag) -> None:
        self._counters = counters
        self._shutdown = shutdown

    def on_error(self, error: RelayError) -> None:
        logger.error("### Producer error callback: {}", error)
        if isinstance(error, TransportLostError):
            self._shutdown.trip("producer transport lost")
        else:
            log_publish_error(error)

    def on_returned(self, topic: str) -> None:
        self._counters.flag_discard()


class SessionEventHandler:
    """Logs lifecycle events; a session that gave up reconnecting stops the program."""

    def __init__(self, shutdown: ShutdownFlag) -> None:
        self._shutdown = shutdown

    def on_session_event(self, event: SessionEvent, detail: str) -> None:
        if event is SessionEvent.DOWN_ERROR:
            self._shutdown.trip(f"session down: {detail}")
