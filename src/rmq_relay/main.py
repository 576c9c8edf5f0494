"""Command line entry points for the processor and consumer programs.

Handles:
- Argument parsing and usage errors
- Session, flow and producer wiring
- The reporting run loop, operator input and signal handling
- Orderly shutdown
"""

import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import NoReturn, Sequence

from loguru import logger
from pydantic import ValidationError

from rmq_relay.config import Settings, settings_from_args
from rmq_relay.errors import BrokerConnectionError
from rmq_relay.models import AccessType, AckMode, FlowProperties
from rmq_relay.pipelines import (
    ConsumerPipeline,
    ProcessorPipeline,
    ProducerErrorHandler,
    SessionEventHandler,
)
from rmq_relay.runloop import (
    API,
    Counters,
    Reporter,
    RunLoop,
    ShutdownFlag,
    install_signal_handlers,
    watch_operator_input,
)
from rmq_relay.session import BrokerSession
from rmq_relay.tracing import setup_logging

EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass(frozen=True)
class Program:
    """Shape of one program: the queue it drains and, optionally, where it republishes."""

    name: str
    queue: str
    output_topic: str | None = None


PROCESSOR = Program(
    name="QueueProcessor",
    queue="CrewPayAnalyticsSvcQueue",
    output_topic="swa/crew/pay",
)
CONSUMER = Program(
    name="QueueConsumer",
    queue="analyticsDataPipelineQueue",
)


class UsageError(Exception):
    pass


def _not_watching() -> None:
    pass


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise UsageError(message)


def usage_line(program: Program) -> str:
    return f"Usage: {program.name} <host:port> <message-vpn> <client-username> [password]"


def parse_args(program: Program, argv: Sequence[str]) -> Settings:
    """Parse positional arguments into settings. Raises UsageError."""
    parser = _ArgumentParser(prog=program.name, add_help=False)
    parser.add_argument("address")
    parser.add_argument("vpn")
    parser.add_argument("username")
    parser.add_argument("password", nargs="?")
    args = parser.parse_args(list(argv))

    try:
        return settings_from_args(args.address, args.vpn, args.username, args.password)
    except ValidationError as e:
        raise UsageError(str(e)) from e


async def run_program(program: Program, settings: Settings) -> int:
    """Run one program until shutdown. Returns the process exit code."""
    print(f"{API} {program.name} initializing...", flush=True)

    shutdown = ShutdownFlag()
    counters = Counters()
    session = BrokerSession(settings, events=SessionEventHandler(shutdown))

    try:
        await session.connect()
    except BrokerConnectionError as e:
        logger.error("Failed to connect to broker: {}", e)
        return EXIT_FAILURE

    loop = asyncio.get_running_loop()
    stop_watching = _not_watching
    try:
        if program.output_topic is not None:
            producer = await session.create_producer(ProducerErrorHandler(counters, shutdown))
            pipeline = ProcessorPipeline(producer, program.output_topic, counters, shutdown)
        else:
            pipeline = ConsumerPipeline(counters)

        flow = await session.create_flow(
            FlowProperties(
                queue=program.queue,
                access=AccessType.EXCLUSIVE,
                ack_mode=AckMode.CLIENT,
            ),
            pipeline,
        )
        await flow.start()
        print(
            f"{API} {program.name} connected, and running. Press [ENTER] to quit.",
            flush=True,
        )

        install_signal_handlers(loop, shutdown)
        stop_watching = watch_operator_input(loop, lambda: shutdown.trip("operator input"))

        reporter = Reporter(program.name, counters, show_sent=program.output_topic is not None)
        await RunLoop(reporter, shutdown, settings.report_interval).run()
    finally:
        stop_watching()
        shutdown.trip("main exit")
        await session.close()

    print("Main thread quitting.", flush=True)
    return EXIT_OK


def main(program: Program, argv: Sequence[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        settings = parse_args(program, argv)
    except UsageError as e:
        print(usage_line(program))
        print()
        logger.debug("Argument error: {}", e)
        return EXIT_FAILURE

    setup_logging(settings)
    try:
        return asyncio.run(run_program(program, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_OK
    except Exception as e:
        logger.exception("{} failed: {}", program.name, e)
        return EXIT_FAILURE


def processor_main() -> None:
    sys.exit(main(PROCESSOR))


def consumer_main() -> None:
    sys.exit(main(CONSUMER))


if __name__ == "__main__":
    processor_main()
