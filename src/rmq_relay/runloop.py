"""Run loop: periodic throughput report and shutdown coordination."""

import asyncio
import os
import signal
import sys
from dataclasses import dataclass
from typing import Callable, TextIO

from loguru import logger

API = "AMQP"


@dataclass(frozen=True)
class CounterSnapshot:
    received: int
    sent: int
    discard_detected: bool


class Counters:
    """Received/sent tallies and the sticky egress-discard flag.

    Updated by the delivery callback and sampled by the reporting tick. Both
    run on the event loop thread, so reads and resets need no lock.
    """

    def __init__(self) -> None:
        self.received = 0
        self.sent = 0
        self.discard_detected = False

    def record_received(self) -> None:
        self.received += 1

    def record_sent(self) -> None:
        self.sent += 1

    def flag_discard(self) -> None:
        self.discard_detected = True

    def snapshot_and_reset(self) -> CounterSnapshot:
        snapshot = CounterSnapshot(self.received, self.sent, self.discard_detected)
        self.received = 0
        self.sent = 0
        self.discard_detected = False
        return snapshot


class ShutdownFlag:
    """Terminal flag. Once set it stays set; the first reason is kept."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def __bool__(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def is_set(self) -> bool:
        return self._event.is_set()

    def trip(self, reason: str) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info("Shutdown requested: {}", reason)

    async def wait(self) -> None:
        await self._event.wait()


class Reporter:
    """Prints one throughput line per tick and resets the counters."""

    def __init__(
        self,
        name: str,
        counters: Counters,
        *,
        show_sent: bool,
        out: TextIO | None = None,
    ) -> None:
        self._name = name
        self._counters = counters
        self._show_sent = show_sent
        self._out = out

    def tick(self) -> CounterSnapshot:
        snapshot = self._counters.snapshot_and_reset()
        line = f"{API} {self._name} Received msgs/s: {snapshot.received:,}"
        if self._show_sent:
            line += f" Sent msgs/s: {snapshot.sent:,}"
        print(line, file=self._out or sys.stdout, flush=True)

        if snapshot.discard_detected:
            print(
                f"*** Egress discard detected *** : {self._name} "
                "unable to keep up with full message rate",
                file=self._out or sys.stdout,
                flush=True,
            )
        return snapshot


class RunLoop:
    """Ticks the reporter every ``interval`` seconds until shutdown."""

    def __init__(self, reporter: Reporter, shutdown: ShutdownFlag, interval: float = 1.0):
        self._reporter = reporter
        self._shutdown = shutdown
        self._interval = interval

    async def run(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                self._reporter.tick()


def watch_operator_input(
    loop: asyncio.AbstractEventLoop,
    on_input: Callable[[], None],
    stream: TextIO | None = None,
) -> Callable[[], None]:
    """Call ``on_input`` when a line ends on ``stream`` (stdin by default).

    End of input stops the watch without calling ``on_input``. Returns a
    function that removes the watch.
    """
    stream = stream or sys.stdin
    try:
        fd = stream.fileno()
    except (AttributeError, OSError, ValueError):
        logger.debug("Operator input is not watchable")
        return lambda: None

    def on_readable() -> None:
        try:
            data = os.read(fd, 4096)
        except BlockingIOError:
            return
        if not data:
            loop.remove_reader(fd)
            logger.debug("Operator input closed")
        elif b"\n" in data:
            loop.remove_reader(fd)
            on_input()

    try:
        loop.add_reader(fd, on_readable)
    except (NotImplementedError, OSError, ValueError):
        logger.debug("Operator input is not watchable on this platform")
        return lambda: None

    return lambda: loop.remove_reader(fd)


def install_signal_handlers(loop: asyncio.AbstractEventLoop, shutdown: ShutdownFlag) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.trip, f"signal {sig.name}")
        except (NotImplementedError, RuntimeError):
            pass
