"""Queue consumer and topic republisher built on aio-pika."""

__version__ = "0.1.0"
