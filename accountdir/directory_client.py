"""
Directory Client.

Thin, stateless wrapper over an ``ldap3`` connection.  Every logical
repository operation opens its own session through :meth:`DirectoryClient.session`,
which binds with the service account and always unbinds on exit.  There
is no pooling and no state shared between calls.

Failure classification
----------------------
- bind / connect           -> :class:`DirectoryConnectionError`
- search                   -> logged, reported as an empty result
- add / modify / delete    -> :class:`DirectoryOperationError` with the
                              LDAP result code and message attached

Usage::

    client = DirectoryClient(
        url=config.LDAP_URL,
        bind_dn=config.LDAP_BIND_DN,
        bind_password=config.LDAP_BIND_PASSWORD.get_secret_value(),
        timeout_s=config.LDAP_TIMEOUT_S,
        logger=StructuredLogger(name="directory"),
    )
    with client.session() as session:
        entries = session.search(base, SUBTREE, "(mail=a@b.com)", ["uid"])
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from ldap3 import BASE, NONE, SUBTREE, Connection, Server
from ldap3.core.exceptions import (
    LDAPBindError,
    LDAPException,
    LDAPInvalidCredentialsResult,
    LDAPOperationResult,
)

from accountdir.errors import (
    DirectoryConnectionError,
    DirectoryOperationError,
    SearchError,
)
from accountdir.logger import StructuredLogger

__all__ = [
    "BASE",
    "SUBTREE",
    "AttributeChanges",
    "DirectoryClient",
    "DirectoryEntry",
    "DirectorySession",
]

AttributeValue = Union[str, list[str]]
# ldap3 modify format: {"attr": [(MODIFY_REPLACE, ["value"])]}
AttributeChanges = dict[str, list[tuple[str, list[str]]]]


@dataclass
class DirectoryEntry:
    """A search hit with its attributes normalised to lists of strings."""

    dn: str
    attributes: dict[str, list[str]] = field(default_factory=dict)

    def first(self, name: str) -> Optional[str]:
        """First value of *name*, matched case-insensitively, or ``None``."""
        values = self.values(name)
        return values[0] if values else None

    def values(self, name: str) -> list[str]:
        lowered = name.lower()
        for key, values in self.attributes.items():
            if key.lower() == lowered:
                return values
        return []

    def has(self, name: str) -> bool:
        return bool(self.values(name))


def _normalise_values(raw: object) -> list[str]:
    if raw is None:
        return []
    items = raw if isinstance(raw, (list, tuple)) else [raw]
    normalised: list[str] = []
    for item in items:
        if isinstance(item, bytes):
            normalised.append(item.decode("utf-8", errors="replace"))
        else:
            normalised.append(str(item))
    return normalised


class DirectorySession:
    """One bound connection.  Obtain via :meth:`DirectoryClient.session`."""

    def __init__(self, connection: Connection, logger: StructuredLogger) -> None:
        self._conn = connection
        self._logger = logger

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search(
        self,
        base: str,
        scope: str,
        search_filter: str,
        attributes: Optional[list[str]] = None,
    ) -> list[DirectoryEntry]:
        """Run a search.  Any failure is logged and yields ``[]``."""
        try:
            self._conn.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes or ["*"],
            )
        except LDAPException as exc:
            error = SearchError(f"Search failed under {base}: {exc}", exc)
            self._logger.debug(
                "%s treated as empty result: %s", type(error).__name__, error
            )
            return []

        entries: list[DirectoryEntry] = []
        for item in self._conn.response or []:
            if item.get("type") != "searchResEntry":
                continue
            attrs = item.get("attributes") or {}
            entries.append(
                DirectoryEntry(
                    dn=item["dn"],
                    attributes={k: _normalise_values(v) for k, v in attrs.items()},
                )
            )
        return entries

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, dn: str, attributes: dict[str, AttributeValue]) -> None:
        self._write("add", dn, lambda: self._conn.add(dn, attributes=attributes))

    def modify(self, dn: str, changes: AttributeChanges) -> None:
        self._write("modify", dn, lambda: self._conn.modify(dn, changes))

    def delete(self, dn: str) -> None:
        self._write("delete", dn, lambda: self._conn.delete(dn))

    def _write(self, operation: str, dn: str, call: Callable[[], bool]) -> None:
        try:
            ok = call()
        except LDAPOperationResult as exc:
            raise DirectoryOperationError(
                f"LDAP {operation} of {dn} failed: {exc.description} {exc.message}".strip(),
                original_error=exc,
                result_code=exc.result,
                description=exc.description,
            ) from exc
        except LDAPException as exc:
            raise DirectoryOperationError(
                f"LDAP {operation} of {dn} failed: {exc}", original_error=exc
            ) from exc
        if ok is False:
            result = self._conn.result or {}
            raise DirectoryOperationError(
                f"LDAP {operation} of {dn} failed: "
                f"{result.get('description', '')} {result.get('message', '')}".strip(),
                result_code=result.get("result"),
                description=result.get("description"),
            )

    def unbind(self) -> None:
        try:
            self._conn.unbind()
        except LDAPException as exc:
            self._logger.debug("Unbind failed (ignored): %s", exc)


class DirectoryClient:
    """Factory for short-lived, service-account-bound directory sessions.

    Parameters
    ----------
    url:
        ``ldap://host:port`` or ``ldaps://host:port``.
    bind_dn / bind_password:
        Service-account credentials used for every session.
    timeout_s:
        Connect and receive timeout applied to each connection.
    logger:
        Structured JSON logger.
    """

    def __init__(
        self,
        url: str,
        bind_dn: str,
        bind_password: str,
        timeout_s: float,
        logger: StructuredLogger,
    ) -> None:
        self._url = url
        self._bind_dn = bind_dn
        self._bind_password = bind_password
        self._timeout_s = timeout_s
        self._logger = logger

    def _server(self) -> Server:
        return Server(self._url, connect_timeout=self._timeout_s, get_info=NONE)

    def _open(self, user: str, password: str) -> Connection:
        return Connection(
            self._server(),
            user=user,
            password=password,
            auto_bind=True,
            raise_exceptions=True,
            receive_timeout=self._timeout_s,
        )

    def bind(self) -> DirectorySession:
        """Open and bind a new session.  The caller must ``unbind()`` it."""
        try:
            connection = self._open(self._bind_dn, self._bind_password)
        except LDAPException as exc:
            raise DirectoryConnectionError(
                f"Cannot bind to directory at {self._url}: {exc}", exc
            ) from exc
        return DirectorySession(connection, self._logger)

    @contextmanager
    def session(self) -> Iterator[DirectorySession]:
        """Bind for the duration of the ``with`` block, then unbind."""
        session = self.bind()
        try:
            yield session
        finally:
            session.unbind()

    def verify_credentials(self, dn: str, password: str) -> bool:
        """Bind as *dn* with *password*.

        Returns ``False`` for rejected credentials and raises
        :class:`DirectoryConnectionError` when the server is unreachable.
        """
        if not password:
            return False
        try:
            connection = self._open(dn, password)
        except (LDAPBindError, LDAPInvalidCredentialsResult):
            return False
        except LDAPException as exc:
            raise DirectoryConnectionError(
                f"Cannot reach directory at {self._url}: {exc}", exc
            ) from exc
        try:
            connection.unbind()
        except LDAPException as exc:
            self._logger.debug("Unbind after credential check failed: %s", exc)
        return True
