"""Message and flow data types shared by the session, flows and pipelines."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from aio_pika.abc import AbstractIncomingMessage


class AckMode(str, Enum):
    """Acknowledgement discipline of a consumer flow."""

    CLIENT = "client"  # listener acknowledges each message
    AUTO = "auto"  # flow acknowledges when the listener returns


class AccessType(str, Enum):
    """Queue access requested by a consumer flow."""

    EXCLUSIVE = "exclusive"
    NON_EXCLUSIVE = "non_exclusive"


@dataclass(frozen=True)
class FlowProperties:
    """Properties of a consumer flow bound to one queue."""

    queue: str
    access: AccessType = AccessType.EXCLUSIVE
    ack_mode: AckMode = AckMode.CLIENT


@dataclass
class InboundMessage:
    """A delivery from the broker.

    The message content is read-only. ``ack`` settles the delivery once;
    later calls are ignored.
    """

    topic: str
    payload: bytes
    correlation_id: str | None = None
    redelivered: bool = False
    delivery_tag: int | None = None
    _settle: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)
    _acknowledged: bool = field(default=False, repr=False)

    @classmethod
    def from_amqp(cls, message: AbstractIncomingMessage) -> "InboundMessage":
        """Wrap an aio-pika delivery."""
        return cls(
            topic=message.routing_key or "",
            payload=message.body,
            correlation_id=message.correlation_id or None,
            redelivered=bool(message.redelivered),
            delivery_tag=message.delivery_tag,
            _settle=message.ack,
        )

    @property
    def acknowledged(self) -> bool:
        return self._acknowledged

    async def ack(self) -> None:
        if self._acknowledged:
            return
        self._acknowledged = True
        if self._settle is not None:
            await self._settle()

    def describe(self) -> str:
        """One-line description of the delivery."""
        return (
            f"InboundMessage(topic={self.topic!r}, correlation_id={self.correlation_id!r}, "
            f"delivery_tag={self.delivery_tag}, redelivered={self.redelivered}, "
            f"payload_size={len(self.payload)})"
        )


@dataclass(frozen=True)
class OutboundMessage:
    """A text message to publish."""

    text: str
    correlation_id: str | None = None
    content_type: str = "text/plain"

    @property
    def body(self) -> bytes:
        return self.text.encode("utf-8")
