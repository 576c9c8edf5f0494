"""Unit tests for the processor and consumer pipelines."""

import pytest
from unittest.mock import AsyncMock

from rmq_relay.errors import PublishError, TransportLostError
from rmq_relay.models import InboundMessage, OutboundMessage
from rmq_relay.pipelines import (
    ConsumerPipeline,
    ProcessorPipeline,
    ProducerErrorHandler,
    SessionEventHandler,
    upper_case_topic,
)
from rmq_relay.runloop import Counters, ShutdownFlag
from rmq_relay.session import SessionEvent

OUTPUT_TOPIC = "swa/crew/pay"


class FakeProducer:
    """Records sends; raises the queued errors in order, None meaning success."""

    def __init__(self, errors=None):
        self.sent: list[tuple[OutboundMessage, str]] = []
        self._errors = list(errors or [])

    async def send(self, message: OutboundMessage, topic: str) -> None:
        error = self._errors.pop(0) if self._errors else None
        if error is not None:
            raise error
        self.sent.append((message, topic))


def make_message(topic: str, correlation_id: str | None = None):
    settle = AsyncMock()
    message = InboundMessage(
        topic=topic,
        payload=b"payload",
        correlation_id=correlation_id,
        _settle=settle,
    )
    return message, settle


def make_processor(producer):
    counters = Counters()
    shutdown = ShutdownFlag()
    return ProcessorPipeline(producer, OUTPUT_TOPIC, counters, shutdown), counters, shutdown


class TestUpperCaseTopic:
    def test_upper_cases_topic(self):
        assert upper_case_topic("a/b/c") == "A/B/C"
        assert upper_case_topic("Hello/World") == "HELLO/WORLD"

    def test_is_locale_independent(self):
        assert upper_case_topic("istanbul") == "ISTANBUL"
        assert upper_case_topic("straße") == "STRASSE"


class TestProcessorPipeline:
    """Tests for the republish-then-acknowledge pipeline."""

    @pytest.mark.asyncio
    async def test_happy_path_preserves_order(self):
        producer = FakeProducer()
        pipeline, counters, shutdown = make_processor(producer)

        settles = []
        for topic in ["a/b/c", "x", "Hello/World"]:
            message, settle = make_message(topic)
            settles.append(settle)
            await pipeline.on_receive(message)

        assert [m.text for m, _ in producer.sent] == ["A/B/C", "X", "HELLO/WORLD"]
        assert all(topic == OUTPUT_TOPIC for _, topic in producer.sent)
        for settle in settles:
            settle.assert_awaited_once()

        snapshot = counters.snapshot_and_reset()
        assert snapshot.received == 3
        assert snapshot.sent == 3
        assert snapshot.discard_detected is False
        assert not shutdown.is_set()

    @pytest.mark.asyncio
    async def test_copies_correlation_id(self):
        producer = FakeProducer()
        pipeline, _, _ = make_processor(producer)

        message, _ = make_message("orders/new", correlation_id="req-42")
        await pipeline.on_receive(message)

        outbound, _ = producer.sent[0]
        assert outbound.correlation_id == "req-42"

    @pytest.mark.asyncio
    async def test_no_correlation_id_when_inbound_has_none(self):
        producer = FakeProducer()
        pipeline, _, _ = make_processor(producer)

        message, _ = make_message("orders/new")
        await pipeline.on_receive(message)

        outbound, _ = producer.sent[0]
        assert outbound.correlation_id is None

    @pytest.mark.asyncio
    async def test_publish_failure_still_acknowledges(self):
        producer = FakeProducer(errors=[PublishError("ACCESS_REFUSED", code=403)])
        pipeline, counters, shutdown = make_processor(producer)

        message, settle = make_message("a/b")
        await pipeline.on_receive(message)

        settle.assert_awaited_once()
        assert message.acknowledged
        snapshot = counters.snapshot_and_reset()
        assert snapshot.received == 1
        assert snapshot.sent == 0
        assert not shutdown.is_set()

    @pytest.mark.asyncio
    async def test_processing_continues_after_publish_failure(self):
        producer = FakeProducer(errors=[PublishError("dropped"), None])
        pipeline, counters, _ = make_processor(producer)

        first, _ = make_message("first")
        second, _ = make_message("second")
        await pipeline.on_receive(first)
        await pipeline.on_receive(second)

        assert [m.text for m, _ in producer.sent] == ["SECOND"]
        snapshot = counters.snapshot_and_reset()
        assert (snapshot.received, snapshot.sent) == (2, 1)

    @pytest.mark.asyncio
    async def test_transport_loss_trips_shutdown(self):
        producer = FakeProducer(errors=[TransportLostError("gone")])
        pipeline, counters, shutdown = make_processor(producer)

        message, settle = make_message("a/b")
        await pipeline.on_receive(message)

        settle.assert_awaited_once()
        assert shutdown.is_set()
        assert counters.snapshot_and_reset().sent == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_acknowledges_and_propagates(self):
        producer = FakeProducer(errors=[ValueError("boom")])
        pipeline, _, shutdown = make_processor(producer)

        message, settle = make_message("a/b")
        with pytest.raises(ValueError):
            await pipeline.on_receive(message)

        settle.assert_awaited_once()
        assert not shutdown.is_set()

    @pytest.mark.asyncio
    async def test_sent_never_exceeds_received(self):
        errors = [None, PublishError("x"), None, PublishError("y"), None]
        producer = FakeProducer(errors=errors)
        pipeline, counters, _ = make_processor(producer)

        for i in range(len(errors)):
            message, _ = make_message(f"t/{i}")
            await pipeline.on_receive(message)

        snapshot = counters.snapshot_and_reset()
        assert snapshot.sent <= snapshot.received
        assert (snapshot.received, snapshot.sent) == (5, 3)

    @pytest.mark.asyncio
    async def test_redelivery_produces_identical_output(self):
        producer = FakeProducer()
        pipeline, _, _ = make_processor(producer)

        for _ in range(2):
            message, _ = make_message("crew/pay/run", correlation_id="c-1")
            await pipeline.on_receive(message)

        assert producer.sent[0] == producer.sent[1]


class TestConsumerPipeline:
    """Tests for the count-and-acknowledge pipeline."""

    @pytest.mark.asyncio
    async def test_drains_and_acknowledges(self):
        counters = Counters()
        pipeline = ConsumerPipeline(counters)

        settles = []
        for i in range(1000):
            message, settle = make_message(f"analytics/{i}")
            settles.append(settle)
            await pipeline.on_receive(message)

        assert counters.snapshot_and_reset().received == 1000
        assert all(settle.await_count == 1 for settle in settles)

    @pytest.mark.asyncio
    async def test_counts_across_resets(self):
        counters = Counters()
        pipeline = ConsumerPipeline(counters)

        total = 0
        for batch in (400, 350, 250):
            for i in range(batch):
                message, _ = make_message(f"analytics/{i}")
                await pipeline.on_receive(message)
            total += counters.snapshot_and_reset().received

        assert total == 1000


class TestProducerErrorHandler:
    def test_transport_loss_trips_shutdown(self):
        counters, shutdown = Counters(), ShutdownFlag()
        handler = ProducerErrorHandler(counters, shutdown)

        handler.on_error(TransportLostError("reconnect exhausted"))

        assert shutdown.is_set()

    def test_protocol_error_is_logged_only(self):
        counters, shutdown = Counters(), ShutdownFlag()
        handler = ProducerErrorHandler(counters, shutdown)

        handler.on_error(PublishError("ACCESS_REFUSED - write access denied", code=403))

        assert not shutdown.is_set()

    def test_returned_message_flags_discard(self):
        counters, shutdown = Counters(), ShutdownFlag()
        handler = ProducerErrorHandler(counters, shutdown)

        handler.on_returned(OUTPUT_TOPIC)

        assert counters.snapshot_and_reset().discard_detected is True
        assert counters.snapshot_and_reset().discard_detected is False


class TestSessionEventHandler:
    @pytest.mark.parametrize(
        "event",
        [
            SessionEvent.UP_NOTICE,
            SessionEvent.RECONNECTING,
            SessionEvent.RECONNECTED,
            SessionEvent.SUBSCRIPTIONS_REAPPLIED,
        ],
    )
    def test_transient_events_do_not_stop(self, event):
        shutdown = ShutdownFlag()
        SessionEventHandler(shutdown).on_session_event(event, "")
        assert not shutdown.is_set()

    def test_down_error_stops(self):
        shutdown = ShutdownFlag()
        SessionEventHandler(shutdown).on_session_event(SessionEvent.DOWN_ERROR, "exhausted")
        assert shutdown.is_set()
        assert "exhausted" in shutdown.reason
