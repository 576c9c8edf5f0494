"""Exceptions raised by the session, flows and producers."""

from typing import Any

from aio_pika.exceptions import AMQPConnectionError


class RelayError(Exception):
    """Base exception for relay errors."""

    pass


class BrokerConnectionError(RelayError):
    """Raised when the initial connection to the broker fails."""

    pass


class TransportLostError(RelayError):
    """Raised when the transport is gone and the session will not recover."""

    pass


class BrokerReplyError(RelayError):
    """An error reported by the broker on a channel.

    ``code`` is the AMQP reply code when the broker supplied one and
    ``phrase`` the reply text.
    """

    def __init__(self, phrase: str, code: int | None = None):
        self.code = code
        self.phrase = phrase
        super().__init__(f"{code}: {phrase}" if code is not None else phrase)


class PublishError(BrokerReplyError):
    """Raised when the broker refuses or drops a publish."""

    pass


class FlowError(BrokerReplyError):
    """Raised when the broker closes the channel of a consumer flow."""

    pass


def is_connection_failure(exc: BaseException) -> bool:
    """Whether ``exc`` signals loss of the connection rather than a channel."""
    return isinstance(exc, (AMQPConnectionError, ConnectionError, TransportLostError))


def describe_channel_error(exc: BaseException) -> tuple[int | None, str]:
    """Extract the reply code and reply text from a channel-level error."""
    code: Any = getattr(exc, "code", None)
    phrase: Any = getattr(exc, "message", None)
    if code is None and len(exc.args) >= 2 and isinstance(exc.args[0], int):
        code, phrase = exc.args[0], exc.args[1]
    if not isinstance(code, int):
        code = None
    if not phrase:
        phrase = str(exc) or type(exc).__name__
    return code, str(phrase)
