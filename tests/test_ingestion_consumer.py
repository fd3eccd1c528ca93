"""Ingestion consumer: per-message outcomes and the worker lifecycle."""

from __future__ import annotations

import json
import time
from typing import Callable, Optional
from unittest.mock import MagicMock

import pytest

from accountdir.errors import DuplicateError, RepositoryError
from accountdir.models.enums import ConsumerState, IngestionOutcome, UserRole
from accountdir.models.event_models import ConfirmationEvent
from accountdir.models.user import UserCreate, UserRecord
from accountdir.repositories.directory_repository import DirectoryRepository
from accountdir.repositories.record_store import RecordStore
from accountdir.services.ingestion_consumer import IngestionConsumer
from tests.conftest import FIXED_NOW
from tests.fakes import FakeMessage, FakeMessageSource


def _event(event_type: str = "users.user.created", double_encode: bool = False, **overrides: object) -> bytes:
    payload: dict[str, object] = {
        "userId": "u-1",
        "fullName": "Ana Pérez",
        "email": "Ana@Example.com",
        "password": "pw12345",
        "nationalityOrOrigin": "Peru",
        "roles": ["usuario"],
        "createdAt": "2024-03-01T10:00:00Z",
        "phone": "+51999888777",
    }
    payload.update(overrides)
    envelope = {
        "messageId": "m-1",
        "eventType": event_type,
        "correlationId": "c-1",
        "producer": "core",
        "payload": json.dumps(payload) if double_encode else payload,
    }
    return json.dumps(envelope).encode("utf-8")


def _stored(data: UserCreate) -> UserRecord:
    return UserRecord(
        id=data.id,
        email=data.email,
        password=data.password,
        role=data.role,
        email_verified=data.email_verified,
        full_name=data.full_name,
        nationality=data.nationality,
        phone=data.phone,
        created_at=data.created_at,
    )


@pytest.fixture
def store() -> MagicMock:
    mock = MagicMock(spec=RecordStore)
    mock.exists_by_email.return_value = False
    mock.find_by_id.return_value = None
    mock.create.side_effect = _stored
    return mock


@pytest.fixture
def hasher() -> MagicMock:
    mock = MagicMock()
    mock.hash_password.return_value = "hashed-pw"
    return mock


@pytest.fixture
def publisher() -> MagicMock:
    return MagicMock()


@pytest.fixture
def make_consumer(store, hasher, publisher, config, logger) -> Callable[..., IngestionConsumer]:
    def _make(source: Optional[FakeMessageSource] = None, **kwargs: object) -> IngestionConsumer:
        fresh_ids = iter(f"fresh-{n}" for n in range(1, 100))
        options: dict[str, object] = {
            "store": store,
            "verifier": hasher,
            "source_factory": lambda: source or FakeMessageSource([]),
            "publisher": publisher,
            "config": config,
            "logger": logger,
            "id_factory": lambda: next(fresh_ids),
        }
        options.update(kwargs)
        return IngestionConsumer(**options)

    return _make


# ---------------------------------------------------------------------------
# process_message
# ---------------------------------------------------------------------------

def test_creates_record_and_publishes_confirmation(make_consumer, store, publisher) -> None:
    outcome = make_consumer().process_message(_event())

    assert outcome is IngestionOutcome.CREATED
    data: UserCreate = store.create.call_args.args[0]
    assert data.id == "u-1"
    assert data.email == "ana@example.com"
    assert data.password == "hashed-pw"
    assert data.role is UserRole.USER
    assert data.email_verified is True
    assert data.created_by_admin is False
    assert data.nationality == "Peru"
    assert data.phone == "+51999888777"

    event: ConfirmationEvent = publisher.publish.call_args.args[0]
    assert publisher.publish.call_args.kwargs["key"] == "u-1"
    assert event.event_type == "users.user.provisioned"
    assert event.correlation_id == "c-1"
    body = json.loads(event.to_bytes())
    assert body["payload"] == {
        "userId": "u-1",
        "nationalityOrOrigin": "Peru",
        "roles": ["user"],
        "createdAt": "2024-03-01T10:00:00+00:00",
    }


def test_double_encoded_payload(make_consumer) -> None:
    assert make_consumer().process_message(_event(double_encode=True)) is IngestionOutcome.CREATED


def test_legacy_field_names_and_roles(make_consumer, store) -> None:
    raw = _event(roles=["moderador"])
    envelope = json.loads(raw)
    envelope["payload"]["nombre_completo"] = envelope["payload"].pop("fullName")
    outcome = make_consumer().process_message(json.dumps(envelope))

    assert outcome is IngestionOutcome.CREATED
    data: UserCreate = store.create.call_args.args[0]
    assert data.role is UserRole.MODERATOR
    assert data.full_name == "Ana Pérez"


def test_unknown_role_defaults_to_user(make_consumer, store) -> None:
    make_consumer().process_message(_event(roles=["superuser"]))
    assert store.create.call_args.args[0].role is UserRole.USER


def test_other_event_types_are_ignored(make_consumer, store) -> None:
    outcome = make_consumer().process_message(_event(event_type="users.user.deleted"))
    assert outcome is IngestionOutcome.IGNORED
    store.create.assert_not_called()


@pytest.mark.parametrize(
    "raw",
    [
        b"",
        b"not json",
        b"[1, 2, 3]",
        json.dumps({"payload": {}}).encode(),
    ],
)
def test_unreadable_messages_are_invalid(make_consumer, store, raw) -> None:
    assert make_consumer().process_message(raw) is IngestionOutcome.INVALID
    store.create.assert_not_called()


@pytest.mark.parametrize(
    "overrides",
    [{"email": "not-an-email"}, {"roles": []}, {"password": ""}, {"createdAt": "yesterday"}],
)
def test_invalid_payloads_are_dropped(make_consumer, store, logger, overrides) -> None:
    assert make_consumer().process_message(_event(**overrides)) is IngestionOutcome.INVALID
    store.create.assert_not_called()
    logger.warning.assert_called()


def test_existing_email_is_duplicate(make_consumer, store, publisher) -> None:
    store.exists_by_email.return_value = True
    assert make_consumer().process_message(_event()) is IngestionOutcome.DUPLICATE
    store.create.assert_not_called()
    publisher.publish.assert_not_called()


def test_duplicate_raised_by_store(make_consumer, store) -> None:
    store.create.side_effect = DuplicateError("taken", value="ana@example.com")
    assert make_consumer().process_message(_event()) is IngestionOutcome.DUPLICATE


def test_taken_id_is_regenerated(make_consumer, store) -> None:
    taken = UserRecord(id="u-1", email="someone@else.com")
    store.find_by_id.side_effect = [taken, taken, None]

    assert make_consumer().process_message(_event()) is IngestionOutcome.CREATED
    assert store.create.call_args.args[0].id == "fresh-2"


def test_id_regeneration_gives_up(make_consumer, store, config) -> None:
    store.find_by_id.return_value = UserRecord(id="x", email="someone@else.com")

    assert make_consumer().process_message(_event()) is IngestionOutcome.FAILED
    assert store.find_by_id.call_count == config.INGESTION_ID_ATTEMPTS + 1
    store.create.assert_not_called()


def test_id_is_resolved_before_email_check(make_consumer, store) -> None:
    store.exists_by_email.return_value = True

    assert make_consumer().process_message(_event()) is IngestionOutcome.DUPLICATE
    called = [name for name, _, _ in store.mock_calls]
    assert called.index("find_by_id") < called.index("exists_by_email")


def test_exhausted_ids_fail_even_when_email_is_taken(make_consumer, store, publisher) -> None:
    store.find_by_id.return_value = UserRecord(id="x", email="someone@else.com")
    store.exists_by_email.return_value = True

    assert make_consumer().process_message(_event()) is IngestionOutcome.FAILED
    called = [name for name, _, _ in store.mock_calls]
    assert called[0] == "find_by_id"
    assert "exists_by_email" not in called
    store.create.assert_not_called()
    publisher.publish.assert_not_called()


def test_store_failure_is_isolated(make_consumer, store) -> None:
    store.create.side_effect = RepositoryError("both stores down")
    consumer = make_consumer()
    assert consumer.process_message(_event()) is IngestionOutcome.FAILED
    assert consumer.status()["failed"] == 1


def test_publish_failure_keeps_record(make_consumer, store, publisher, logger) -> None:
    publisher.publish.side_effect = RuntimeError("broker unavailable")
    assert make_consumer().process_message(_event()) is IngestionOutcome.CREATED
    store.create.assert_called_once()
    store.delete.assert_not_called()
    logger.warning.assert_called()


def test_confirmations_disabled(make_consumer) -> None:
    consumer = make_consumer(publisher=None)
    assert consumer.process_message(_event()) is IngestionOutcome.CREATED


def test_replayed_event_creates_one_entry(
    make_consumer, directory, directory_client, config, verifier, logger, publisher
) -> None:
    repo = DirectoryRepository(
        client=directory_client,
        config=config,
        verifier=verifier,
        logger=logger,
        clock=lambda: FIXED_NOW,
    )
    consumer = make_consumer(store=repo, verifier=verifier)

    assert consumer.process_message(_event()) is IngestionOutcome.CREATED
    assert consumer.process_message(_event()) is IngestionOutcome.DUPLICATE

    assert len(directory.dns()) == 1
    stored = repo.find_by_email("ana@example.com")
    assert stored.id == "u-1"
    assert verifier.verify_password("pw12345", stored.password)
    assert publisher.publish.call_count == 1
    assert consumer.status()["created"] == 1
    assert consumer.status()["duplicate"] == 1


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def _wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def test_runs_batches_commits_and_stops(make_consumer, store) -> None:
    second = _event(userId="u-2", email="bob@example.com")
    source = FakeMessageSource([
        {("users.events", 0): [FakeMessage(_event()), FakeMessage(second)]},
        {("core.ingress", 0): [FakeMessage(_event(event_type="core.ping"))]},
    ])
    consumer = make_consumer(source)
    assert consumer.state is ConsumerState.IDLE

    consumer.start()
    assert consumer.is_running
    _wait_for(lambda: source.commits >= 2)
    consumer.stop()

    assert not consumer.is_running
    assert consumer.state is ConsumerState.STOPPED
    assert source.closed
    assert [c.args[0].id for c in store.create.call_args_list] == ["u-1", "u-2"]
    status = consumer.status()
    assert status["created"] == 2
    assert status["ignored"] == 1
    assert status["is_processing"] is False


def test_start_is_idempotent(make_consumer) -> None:
    factory = MagicMock(return_value=FakeMessageSource([]))
    consumer = make_consumer(source_factory=factory)

    consumer.start()
    consumer.start()
    consumer.stop()

    factory.assert_called_once()


def test_stop_without_start(make_consumer) -> None:
    consumer = make_consumer()
    consumer.stop()
    assert consumer.state is ConsumerState.STOPPED
