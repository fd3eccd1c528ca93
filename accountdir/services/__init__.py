"""
Service Layer Package.

The ``create_services()`` factory wires the stores and services together
and returns a typed dict, so the entry point (or an HTTP app) can consume
them without knowing the internal dependency graph.
"""

from __future__ import annotations

from typing import Callable, Optional, TypedDict

from accountdir.config import AppConfig
from accountdir.credentials import BcryptCredentialVerifier, CredentialVerifier
from accountdir.database import DatabaseManager
from accountdir.directory_client import DirectoryClient
from accountdir.logger import get_logger
from accountdir.repositories.directory_repository import DirectoryRepository
from accountdir.repositories.fallback_repository import FallbackRepository
from accountdir.repositories.relational_repository import RelationalRepository
from accountdir.services.event_bus import (
    ConfirmationPublisher,
    KafkaConfirmationPublisher,
    MessageSource,
    create_kafka_consumer,
    create_kafka_producer,
)
from accountdir.services.ingestion_consumer import IngestionConsumer
from accountdir.services.users import UserService


class ServiceContainer(TypedDict):
    """Typed container for the wired stores and services."""

    directory_repository: DirectoryRepository
    relational_repository: RelationalRepository
    record_store: FallbackRepository
    user_service: UserService
    ingestion_consumer: IngestionConsumer
    confirmation_publisher: Optional[ConfirmationPublisher]


def create_services(
    config: AppConfig,
    db: DatabaseManager,
    directory_client: Optional[DirectoryClient] = None,
    verifier: Optional[CredentialVerifier] = None,
    source_factory: Optional[Callable[[], MessageSource]] = None,
    publisher: Optional[ConfirmationPublisher] = None,
) -> ServiceContainer:
    """
    Wire every store and service together.

    Single composition root for the service layer.  The optional
    arguments default to the production adapters (LDAP, bcrypt, Kafka);
    tests pass fakes instead.

    Args:
        config: Application configuration.
        db: Initialised DatabaseManager (Supabase + SQLite cache).
        directory_client: LDAP client; built from ``config`` when omitted.
        verifier: Password hasher; bcrypt when omitted.
        source_factory: Builds the bus consumer when the ingestion
            consumer starts.
        publisher: Confirmation publisher; a Kafka producer is created
            when both this and ``source_factory`` are omitted.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("services")

    # ------------------------------------------------------------------
    # 1. Adapters
    # ------------------------------------------------------------------
    if directory_client is None:
        directory_client = DirectoryClient(
            url=config.LDAP_URL,
            bind_dn=config.LDAP_BIND_DN,
            bind_password=config.LDAP_BIND_PASSWORD.get_secret_value(),
            timeout_s=config.LDAP_TIMEOUT_S,
            logger=get_logger("directory"),
        )
    if verifier is None:
        verifier = BcryptCredentialVerifier()
    if source_factory is None:
        source_factory = lambda: create_kafka_consumer(config)  # noqa: E731
        if publisher is None:
            publisher = KafkaConfirmationPublisher(
                producer=create_kafka_producer(config),
                topic=config.KAFKA_CONFIRMATION_TOPIC,
                logger=get_logger("event_bus"),
            )

    # ------------------------------------------------------------------
    # 2. Record stores (directory first, relational as fallback)
    # ------------------------------------------------------------------
    directory_repository = DirectoryRepository(
        client=directory_client,
        config=config,
        verifier=verifier,
        logger=get_logger("directory_repository"),
    )
    relational_repository = RelationalRepository(
        db=db,
        verifier=verifier,
        logger=get_logger("relational_repository"),
        table=config.SUPABASE_USERS_TABLE,
    )
    record_store = FallbackRepository(
        primary=directory_repository,
        secondary=relational_repository,
        logger=logger,
    )

    # ------------------------------------------------------------------
    # 3. Services
    # ------------------------------------------------------------------
    user_service = UserService(store=record_store, logger=logger)
    ingestion_consumer = IngestionConsumer(
        store=record_store,
        verifier=verifier,
        source_factory=source_factory,
        publisher=publisher,
        config=config,
        logger=get_logger("ingestion"),
    )

    return ServiceContainer(
        directory_repository=directory_repository,
        relational_repository=relational_repository,
        record_store=record_store,
        user_service=user_service,
        ingestion_consumer=ingestion_consumer,
        confirmation_publisher=publisher,
    )
