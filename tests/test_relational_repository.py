"""Relational repository: mocked Supabase client, real in-memory SQLite cache."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from accountdir.database import DatabaseManager
from accountdir.errors import DuplicateError, RecordNotFoundError, RepositoryError
from accountdir.models.enums import UserRole
from accountdir.models.user import FindAllOptions, UserCreate, UserUpdate, is_password_hash
from accountdir.repositories.relational_repository import RelationalRepository
from accountdir.schema import initialize_schema
from tests.conftest import FIXED_NOW


class FakeAPIError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


@pytest.fixture
def table(supabase: MagicMock) -> MagicMock:
    return supabase.table.return_value


@pytest.fixture
def repo(db, verifier, logger) -> RelationalRepository:
    return RelationalRepository(db=db, verifier=verifier, logger=logger, clock=lambda: FIXED_NOW)


def _row(**overrides: object) -> dict[str, object]:
    row: dict[str, object] = {
        "id": "rec-1",
        "email": "panchi@gmail.com",
        "password": "$2b$04$" + "b" * 53,
        "rol": "moderador",
        "email_verified": True,
        "nombre_completo": "Francisca Soto",
        "nacionalidad": "Chile",
        "telefono": None,
        "created_at": "2024-03-01T12:00:00+00:00",
        "updated_at": "2024-03-01T12:00:00+00:00",
        "created_by_admin": False,
        "initial_password_changed": False,
    }
    row.update(overrides)
    return row


def _cached_ids(db) -> list[str]:
    return [row["id"] for row in db.sqlite.execute("SELECT id FROM usuarios ORDER BY id")]


def _seed(repo: RelationalRepository, table: MagicMock, record_id: str, email: str, role: UserRole) -> None:
    table.insert.return_value.execute.return_value = MagicMock(data=[])
    repo.create(UserCreate(id=record_id, email=email, password="hunter22", role=role))


def test_create_inserts_remote_columns_and_caches(repo, table, db) -> None:
    table.insert.return_value.execute.return_value = MagicMock(data=[])

    record = repo.create(
        UserCreate(id="rec-1", email="Panchi@gmail.com", password="hunter22", full_name="Francisca Soto")
    )

    inserted = table.insert.call_args.args[0]
    assert inserted["email"] == "panchi@gmail.com"
    assert inserted["rol"] == "user"
    assert inserted["nombre_completo"] == "Francisca Soto"
    assert is_password_hash(inserted["password"])
    assert "full_name" not in inserted
    assert record.created_at == FIXED_NOW
    assert _cached_ids(db) == ["rec-1"]


def test_create_unique_violation_is_duplicate(repo, table) -> None:
    table.insert.return_value.execute.side_effect = FakeAPIError(
        'duplicate key value violates unique constraint "usuarios_email_key"', code="23505"
    )
    with pytest.raises(DuplicateError):
        repo.create(UserCreate(email="panchi@gmail.com", password="hunter22"))


def test_create_other_failure_is_repository_error(repo, table) -> None:
    table.insert.return_value.execute.side_effect = ConnectionError("timeout")
    with pytest.raises(RepositoryError):
        repo.create(UserCreate(email="panchi@gmail.com", password="hunter22"))


def test_find_by_id_reads_remote_and_warms_cache(repo, table, db) -> None:
    select = table.select.return_value.eq.return_value.maybe_single.return_value
    select.execute.return_value = MagicMock(data=_row())

    record = repo.find_by_id("rec-1")

    assert record is not None
    assert record.role is UserRole.MODERATOR
    assert record.full_name == "Francisca Soto"
    assert record.email_verified is True
    table.select.return_value.eq.assert_called_with("id", "rec-1")
    assert _cached_ids(db) == ["rec-1"]


def test_find_by_id_no_match(repo, table) -> None:
    table.select.return_value.eq.return_value.maybe_single.return_value.execute.return_value = None
    assert repo.find_by_id("nope") is None


def test_reads_fall_back_to_cache_when_supabase_is_down(repo, table, supabase) -> None:
    _seed(repo, table, "rec-1", "panchi@gmail.com", UserRole.USER)
    supabase.table.side_effect = ConnectionError("supabase down")

    record = repo.find_by_email("PANCHI@gmail.com")

    assert record is not None
    assert record.id == "rec-1"
    assert repo.exists_by_email("nobody@gmail.com") is False


def test_both_sources_down_raises(repo, supabase, db) -> None:
    supabase.table.side_effect = ConnectionError("supabase down")
    db.sqlite.close()
    with pytest.raises(RepositoryError):
        repo.find_by_id("rec-1")


def test_cache_only_when_supabase_not_configured(verifier, logger) -> None:
    offline = DatabaseManager("", "", Path(":memory:"), logger)
    initialize_schema(offline.sqlite, logger)
    repo = RelationalRepository(db=offline, verifier=verifier, logger=logger)

    assert repo.find_by_id("rec-1") is None
    assert repo.count() == 0
    with pytest.raises(RepositoryError):
        repo.create(UserCreate(email="panchi@gmail.com", password="hunter22"))
    offline.close()


def test_find_all_online_builds_query(repo, table) -> None:
    query = table.select.return_value
    query.eq.return_value = query
    query.or_.return_value = query
    query.order.return_value = query
    query.range.return_value.execute.return_value = MagicMock(data=[_row()], count=7)

    page = repo.find_all(FindAllOptions(page=2, limit=5, role=UserRole.MODERATOR, search="fran(cis)"))

    table.select.assert_called_with("*", count="exact")
    query.eq.assert_called_with("rol", "moderator")
    query.or_.assert_called_with("nombre_completo.ilike.%francis%,email.ilike.%francis%")
    query.range.assert_called_with(5, 9)
    assert page.total == 7
    assert [u.id for u in page.users] == ["rec-1"]


def test_find_all_and_counts_from_cache(repo, table, supabase) -> None:
    _seed(repo, table, "r1", "alpha@x.com", UserRole.ADMIN)
    _seed(repo, table, "r2", "bravo@x.com", UserRole.USER)
    _seed(repo, table, "r3", "charlie@x.com", UserRole.USER)
    supabase.table.side_effect = ConnectionError("supabase down")

    page = repo.find_all(FindAllOptions(role=UserRole.USER))
    assert page.total == 2
    assert {u.id for u in page.users} == {"r2", "r3"}
    assert repo.count() == 3
    assert repo.count_by_role() == {UserRole.ADMIN: 1, UserRole.MODERATOR: 0, UserRole.USER: 2}
    assert [u.id for u in repo.find_by_role(UserRole.ADMIN)] == ["r1"]
    assert len(repo.find_by_date_range(FIXED_NOW, FIXED_NOW)) == 3


def test_update_writes_changed_columns(repo, table) -> None:
    select = table.select.return_value.eq.return_value.maybe_single.return_value
    select.execute.return_value = MagicMock(data=_row())
    table.update.return_value.eq.return_value.execute.return_value = MagicMock(
        data=[_row(nombre_completo="Francisca Rojas", telefono=None)]
    )

    updated = repo.update("rec-1", UserUpdate(full_name="Francisca Rojas", phone=""))

    written = table.update.call_args.args[0]
    assert written["nombre_completo"] == "Francisca Rojas"
    assert written["telefono"] is None
    assert written["password"] == _row()["password"]
    assert "id" not in written
    assert updated.full_name == "Francisca Rojas"


def test_update_missing_record(repo, table) -> None:
    table.select.return_value.eq.return_value.maybe_single.return_value.execute.return_value = None
    with pytest.raises(RecordNotFoundError):
        repo.update("nope", UserUpdate(full_name="X"))


def test_update_last_login_missing(repo, table) -> None:
    table.update.return_value.eq.return_value.execute.return_value = MagicMock(data=[])
    with pytest.raises(RecordNotFoundError):
        repo.update_last_login("nope")


def test_delete_evicts_cache(repo, table, db) -> None:
    _seed(repo, table, "rec-1", "panchi@gmail.com", UserRole.USER)
    table.delete.return_value.eq.return_value.execute.return_value = MagicMock(data=[{"id": "rec-1"}])

    assert repo.delete("rec-1") is True
    assert _cached_ids(db) == []


def test_authenticate(repo, table, verifier) -> None:
    select = table.select.return_value.eq.return_value.maybe_single.return_value
    select.execute.return_value = MagicMock(data=_row(password=verifier.hash_password("hunter22")))

    assert repo.authenticate("panchi@gmail.com", "hunter22").id == "rec-1"
    assert repo.authenticate("panchi@gmail.com", "wrong") is None
