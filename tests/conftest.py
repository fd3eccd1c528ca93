"""Shared fixtures: configuration, logger, verifier and store doubles."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from accountdir.config import AppConfig
from accountdir.credentials import BcryptCredentialVerifier
from accountdir.database import DatabaseManager
from accountdir.logger import StructuredLogger
from accountdir.schema import initialize_schema
from tests.fakes import FakeDirectory, FakeDirectoryClient

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
USERS_OU = "ou=users,dc=example,dc=com"


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        _env_file=None,
        LDAP_BIND_PASSWORD="service-secret",
        LDAP_USERS_OU=USERS_OU,
        SUPABASE_URL="",
        SQLITE_PATH=":memory:",
        LOG_FILE=str(tmp_path / "accountdir.log"),
        CONSUMER_POLL_TIMEOUT_MS=10,
    )


@pytest.fixture
def logger() -> MagicMock:
    return MagicMock(spec=StructuredLogger)


@pytest.fixture
def verifier() -> BcryptCredentialVerifier:
    # Minimum cost keeps the suite fast.
    return BcryptCredentialVerifier(rounds=4)


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def directory_client(directory: FakeDirectory) -> FakeDirectoryClient:
    return FakeDirectoryClient(directory)


@pytest.fixture
def supabase() -> MagicMock:
    return MagicMock(name="supabase")


@pytest.fixture
def db(supabase: MagicMock, logger: MagicMock):
    manager = DatabaseManager(
        supabase_url="",
        supabase_key="",
        sqlite_path=Path(":memory:"),
        logger=logger,
        supabase_client=supabase,
    )
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()
