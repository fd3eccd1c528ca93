"""Schema, audit persistence, credential hashing and service wiring."""

from __future__ import annotations

import json
import sqlite3
from unittest.mock import MagicMock

import pytest

from accountdir.credentials import BcryptCredentialVerifier
from accountdir.models.user import is_password_hash
from accountdir.repositories.fallback_repository import FallbackRepository
from accountdir.schema import SCHEMA_VERSION, initialize_schema, schema_version
from accountdir.services import create_services
from accountdir.services.ingestion_consumer import IngestionConsumer
from accountdir.utils.audit import AuditAction, audit
from tests.fakes import FakeMessageSource


def _tables(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {row[0] for row in rows}


def test_initialize_schema_is_idempotent(logger) -> None:
    conn = sqlite3.connect(":memory:")
    initialize_schema(conn, logger)
    initialize_schema(conn, logger)

    assert {"usuarios", "audit_log"} <= _tables(conn)
    assert schema_version(conn) == SCHEMA_VERSION
    conn.close()


def test_usuarios_enforces_unique_email(db) -> None:
    db.sqlite.execute("INSERT INTO usuarios (id, email) VALUES ('a', 'x@y.com')")
    with pytest.raises(sqlite3.IntegrityError):
        db.sqlite.execute("INSERT INTO usuarios (id, email) VALUES ('b', 'x@y.com')")


def test_audit_event_is_logged_and_persisted(db, logger) -> None:
    event = audit(
        logger,
        AuditAction.CREATE,
        "rec-1",
        store="relational",
        details={"role": "user"},
        sink=db,
    )

    assert event.actor == "system"
    assert logger.info.call_args.args == ("AUDIT %s %s", AuditAction.CREATE, "rec-1")
    assert logger.info.call_args.kwargs["extra"]["audit"]["record_id"] == "rec-1"
    row = db.sqlite.execute("SELECT action, record_id, store, actor, details FROM audit_log").fetchone()
    assert (row["action"], row["record_id"], row["store"], row["actor"]) == (
        "CREATE", "rec-1", "relational", "system"
    )
    assert json.loads(row["details"]) == {"role": "user"}


def test_audit_row_failure_is_not_fatal(db, logger) -> None:
    db.sqlite.execute("DROP TABLE audit_log")
    event = audit(logger, AuditAction.DELETE, "rec-1", sink=db)
    assert event.record_id == "rec-1"
    logger.warning.assert_called()


def test_bcrypt_verifier() -> None:
    verifier = BcryptCredentialVerifier(rounds=4)
    hashed = verifier.hash_password("hunter22")
    assert is_password_hash(hashed)
    assert verifier.verify_password("hunter22", hashed) is True
    assert verifier.verify_password("wrong", hashed) is False
    assert verifier.verify_password("hunter22", "{SSHA}notbcrypt") is False
    assert verifier.verify_password("", hashed) is False


def test_create_services_wires_fallback_store(mocker, config, db, directory_client, verifier) -> None:
    mocker.patch("accountdir.services.get_logger", return_value=MagicMock())
    publisher = MagicMock()

    services = create_services(
        config=config,
        db=db,
        directory_client=directory_client,
        verifier=verifier,
        source_factory=lambda: FakeMessageSource([]),
        publisher=publisher,
    )

    assert isinstance(services["record_store"], FallbackRepository)
    assert isinstance(services["ingestion_consumer"], IngestionConsumer)
    assert services["confirmation_publisher"] is publisher
    assert services["user_service"].stats().data["total"] == 0
