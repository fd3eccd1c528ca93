"""
Event Bus Adapters.

kafka-python factories for the ingestion consumer and the confirmation
publisher, plus the narrow protocols the consumer service depends on so
tests can substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Optional, Protocol

from kafka import KafkaConsumer, KafkaProducer
from kafka.errors import KafkaError

from accountdir.config import AppConfig
from accountdir.logger import StructuredLogger
from accountdir.models.event_models import ConfirmationEvent

__all__ = [
    "ConfirmationPublisher",
    "KafkaConfirmationPublisher",
    "MessageSource",
    "create_kafka_consumer",
    "create_kafka_producer",
]

_SEND_TIMEOUT_S: float = 10.0


class MessageSource(Protocol):
    """The subset of ``KafkaConsumer`` the ingestion consumer uses."""

    def poll(self, timeout_ms: int = 0, max_records: Optional[int] = None) -> dict: ...

    def commit(self) -> None: ...

    def close(self) -> None: ...


class ConfirmationPublisher(Protocol):
    """Publishes the event that follows a successful ingestion."""

    def publish(self, event: ConfirmationEvent, key: str) -> None: ...

    def close(self) -> None: ...


def _bootstrap_servers(config: AppConfig) -> list[str]:
    return [server.strip() for server in config.KAFKA_BOOTSTRAP_SERVERS.split(",") if server.strip()]


def create_kafka_consumer(config: AppConfig) -> KafkaConsumer:
    """Subscribe to the configured topics with manual offset commits.

    Offsets are committed by the ingestion consumer after each batch, so
    a crash mid-batch redelivers the uncommitted messages.
    """
    return KafkaConsumer(
        *config.KAFKA_TOPICS,
        bootstrap_servers=_bootstrap_servers(config),
        client_id=config.KAFKA_CLIENT_ID,
        group_id=config.KAFKA_GROUP_ID,
        enable_auto_commit=False,
        auto_offset_reset="earliest",
    )


def create_kafka_producer(config: AppConfig) -> KafkaProducer:
    return KafkaProducer(
        bootstrap_servers=_bootstrap_servers(config),
        client_id=f"{config.KAFKA_CLIENT_ID}-producer",
        acks="all",
        retries=3,
    )


class KafkaConfirmationPublisher:
    """Writes :class:`ConfirmationEvent` messages to one topic.

    ``publish`` blocks until the broker acknowledges, so failures surface
    as :class:`kafka.errors.KafkaError` at the call site.
    """

    def __init__(self, producer: KafkaProducer, topic: str, logger: StructuredLogger) -> None:
        self._producer = producer
        self._topic = topic
        self._logger = logger

    def publish(self, event: ConfirmationEvent, key: str) -> None:
        future = self._producer.send(self._topic, key=key.encode("utf-8"), value=event.to_bytes())
        metadata = future.get(timeout=_SEND_TIMEOUT_S)
        self._logger.debug(
            "Published %s to %s[%s]@%s",
            event.event_type,
            metadata.topic,
            metadata.partition,
            metadata.offset,
        )

    def close(self) -> None:
        try:
            self._producer.flush(timeout=_SEND_TIMEOUT_S)
            self._producer.close()
        except KafkaError as exc:
            self._logger.warning("Error closing confirmation producer: %s", exc)
