"""Configuration module using Pydantic Settings v2.

Broker address and credentials come from the command line. Tuning knobs
(retry policy, ack window, logging) can be overridden from environment
variables prefixed with ``RELAY_`` or from a local .env file.
"""

from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_AMQP_PORT = 5672


class Settings(BaseSettings):
    """Application configuration with validation.

    Sensitive values use SecretStr to prevent accidental logging.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Broker connection (command line)
    broker_address: str = Field(
        ...,
        description="Broker address as host[:port]",
    )
    message_vpn: str = Field(
        default="/",
        description="Virtual host to attach to",
    )
    client_username: str = Field(
        ...,
        min_length=1,
        description="Client username",
    )
    client_password: SecretStr | None = Field(
        default=None,
        description="Client password",
    )

    # Channel retry policy
    reconnect_retries: int = Field(
        default=20,
        ge=0,
        le=1000,
        description="Reconnect attempts after an established connection drops",
    )
    connect_retries_per_host: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Initial connect attempts",
    )
    reconnect_retry_wait: float = Field(
        default=3.0,
        ge=0.0,
        le=60.0,
        description="Seconds between reconnect attempts",
    )
    retry_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Base delay in seconds for initial connect backoff",
    )
    connect_timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Timeout in seconds for a single connect attempt",
    )

    # Flow and producer
    prefetch_count: int = Field(
        default=255,
        ge=1,
        le=65535,
        description="Maximum unacknowledged messages per flow",
    )
    output_exchange: str = Field(
        default="amq.topic",
        description="Topic exchange used for direct publishing",
    )

    # Reporting
    report_interval: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="Seconds between throughput lines",
    )

    # Logging Configuration
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format (json for production, text for development)",
    )
    log_file: str | None = Field(
        default=None,
        description="Path to log file. If None, logs only to stdout.",
    )
    log_rotation: str = Field(
        default="500 MB",
        description="Log rotation condition (size, time, etc.)",
    )
    log_retention: str = Field(
        default="10 days",
        description="Log retention duration",
    )

    @field_validator("broker_address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        host, sep, port = value.strip().rpartition(":")
        if not sep:
            host, port = port, ""
        if not host:
            raise ValueError("broker address must name a host")
        if sep and not port:
            raise ValueError(f"missing port after ':' in broker address: {value!r}")
        if port and not (port.isdigit() and 0 < int(port) < 65536):
            raise ValueError(f"invalid port in broker address: {value!r}")
        return value.strip()

    @property
    def broker_host(self) -> str:
        host, _, port = self.broker_address.rpartition(":")
        return host or port

    @property
    def broker_port(self) -> int:
        host, _, port = self.broker_address.rpartition(":")
        return int(port) if host else DEFAULT_AMQP_PORT

    @property
    def password(self) -> str:
        """Plain password for the client library, empty when none was given."""
        if self.client_password is None:
            return ""
        return self.client_password.get_secret_value()

    @property
    def broker_url_masked(self) -> str:
        """Return the connection target with the password masked for logging."""
        secret = ":****" if self.client_password is not None else ""
        return (
            f"amqp://{self.client_username}{secret}@"
            f"{self.broker_host}:{self.broker_port}/{self.message_vpn.lstrip('/')}"
        )


def settings_from_args(
    address: str,
    vpn: str,
    username: str,
    password: str | None = None,
) -> Settings:
    """Build settings from the positional command line arguments."""
    return Settings(
        broker_address=address,
        message_vpn=vpn,
        client_username=username,
        client_password=password,
    )
