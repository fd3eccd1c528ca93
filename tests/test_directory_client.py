"""Tests for the ldap3 wrapper.  ``ldap3.Connection`` is patched out."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from ldap3.core.exceptions import (
    LDAPBindError,
    LDAPOperationResult,
    LDAPSocketOpenError,
)

from accountdir.directory_client import SUBTREE, DirectoryClient
from accountdir.errors import DirectoryConnectionError, DirectoryOperationError


@pytest.fixture
def connection() -> MagicMock:
    conn = MagicMock(name="connection")
    conn.response = []
    conn.result = {}
    return conn


@pytest.fixture
def connection_cls(mocker, connection: MagicMock) -> MagicMock:
    return mocker.patch("accountdir.directory_client.Connection", return_value=connection)


@pytest.fixture
def client(logger: MagicMock) -> DirectoryClient:
    return DirectoryClient(
        url="ldap://ldap.test:389",
        bind_dn="cn=admin,dc=example,dc=com",
        bind_password="service-secret",
        timeout_s=5.0,
        logger=logger,
    )


def test_session_binds_with_service_account_and_unbinds(client, connection_cls, connection) -> None:
    with client.session():
        pass
    kwargs = connection_cls.call_args.kwargs
    assert kwargs["user"] == "cn=admin,dc=example,dc=com"
    assert kwargs["password"] == "service-secret"
    assert kwargs["auto_bind"] is True
    connection.unbind.assert_called_once()


def test_session_unbinds_when_body_raises(client, connection_cls, connection) -> None:
    with pytest.raises(RuntimeError):
        with client.session():
            raise RuntimeError("boom")
    connection.unbind.assert_called_once()


def test_bind_failure_raises_connection_error(client, mocker) -> None:
    mocker.patch(
        "accountdir.directory_client.Connection",
        side_effect=LDAPSocketOpenError("connection refused"),
    )
    with pytest.raises(DirectoryConnectionError):
        client.bind()


def test_search_returns_normalised_entries(client, connection_cls, connection) -> None:
    connection.response = [
        {
            "type": "searchResEntry",
            "dn": "uid=panchi,ou=users,dc=example,dc=com",
            "attributes": {"mail": ["panchi@gmail.com"], "cn": b"Panchi", "uidNumber": 1000},
        },
        {"type": "searchResRef", "uri": ["ldap://other"]},
    ]
    with client.session() as session:
        entries = session.search("ou=users,dc=example,dc=com", SUBTREE, "(mail=*)", ["mail", "cn"])

    assert len(entries) == 1
    entry = entries[0]
    assert entry.dn == "uid=panchi,ou=users,dc=example,dc=com"
    assert entry.first("MAIL") == "panchi@gmail.com"
    assert entry.values("cn") == ["Panchi"]
    assert entry.first("uidNumber") == "1000"
    assert entry.first("telephoneNumber") is None
    connection.search.assert_called_once()


def test_search_failure_reads_as_empty(client, connection_cls, connection) -> None:
    connection.search.side_effect = LDAPOperationResult(
        result=32, description="noSuchObject", message="no such entry"
    )
    with client.session() as session:
        assert session.search("ou=gone,dc=example,dc=com", SUBTREE, "(uid=x)") == []


def test_add_rejection_carries_result_code(client, connection_cls, connection) -> None:
    connection.add.side_effect = LDAPOperationResult(
        result=68, description="entryAlreadyExists", message="exists"
    )
    with client.session() as session:
        with pytest.raises(DirectoryOperationError) as excinfo:
            session.add("uid=panchi,ou=users,dc=example,dc=com", {"uid": "panchi"})
    assert excinfo.value.result_code == 68
    assert excinfo.value.description == "entryAlreadyExists"


def test_write_returning_false_is_an_error(client, connection_cls, connection) -> None:
    connection.delete.return_value = False
    connection.result = {"result": 50, "description": "insufficientAccessRights", "message": ""}
    with client.session() as session:
        with pytest.raises(DirectoryOperationError) as excinfo:
            session.delete("uid=panchi,ou=users,dc=example,dc=com")
    assert excinfo.value.result_code == 50


def test_verify_credentials(client, mocker, connection) -> None:
    patched = mocker.patch("accountdir.directory_client.Connection", return_value=connection)
    assert client.verify_credentials("uid=panchi,ou=users,dc=example,dc=com", "hunter22") is True
    assert patched.call_args.kwargs["user"] == "uid=panchi,ou=users,dc=example,dc=com"

    patched.side_effect = LDAPBindError("invalidCredentials")
    assert client.verify_credentials("uid=panchi,ou=users,dc=example,dc=com", "wrong") is False


def test_verify_credentials_rejects_empty_password_without_connecting(client, connection_cls) -> None:
    assert client.verify_credentials("uid=panchi,ou=users,dc=example,dc=com", "") is False
    connection_cls.assert_not_called()


def test_verify_credentials_unreachable_server(client, mocker) -> None:
    mocker.patch(
        "accountdir.directory_client.Connection",
        side_effect=LDAPSocketOpenError("timed out"),
    )
    with pytest.raises(DirectoryConnectionError):
        client.verify_credentials("uid=panchi,ou=users,dc=example,dc=com", "hunter22")
