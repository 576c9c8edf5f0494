"""Shared fixtures."""

import pytest

from rmq_relay.config import Settings


@pytest.fixture
def settings() -> Settings:
    """Settings with fast retry timings for unit tests."""
    return Settings(
        broker_address="broker.local:5672",
        message_vpn="default",
        client_username="relay",
        client_password="secret",
        connect_retries_per_host=2,
        retry_base_delay=0.0,
        reconnect_retries=2,
        reconnect_retry_wait=0.0,
        prefetch_count=10,
        report_interval=0.01,
    )
