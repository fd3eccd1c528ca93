"""
Directory Repository.

Stores user records as ``inetOrgPerson`` / ``posixAccount`` entries under
the users OU.  Standard attributes carry what the schema has room for;
everything else travels in ``description`` through the record codec.

Attribute mapping
-----------------
=====================  ==================================================
record field           directory attribute
=====================  ==================================================
id                     ``description`` (``ID``), fallback ``uid``
email                  ``mail``; also determines ``uid`` and the DN
full_name              ``cn`` (+ ``givenName`` / ``sn`` split)
role                   ``title`` (+ optional role-marker objectClass)
phone                  ``telephoneNumber``
nationality            ``st``
password               ``userPassword`` as supplied on create, plus its
                       bcrypt hash in ``description`` (``PW``)
everything else        ``description``
=====================  ==================================================

On update only a plaintext password replaces ``userPassword``; a hash
changes ``PW`` and leaves the bind attribute as it was.

Updates run in two phases: critical attributes first, then the metadata.
A failed metadata write after a successful first phase is logged and the
update is still reported as successful.

Uniqueness is read-then-write against a directory with no transactions.
Two concurrent creates for the same email can both pass the check; the
second ``add`` then fails with ``entryAlreadyExists`` only if the derived
DN is identical.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Optional

from ldap3 import MODIFY_DELETE, MODIFY_REPLACE
from ldap3.utils.conv import escape_filter_chars

from accountdir.config import AppConfig
from accountdir.credentials import CredentialVerifier
from accountdir.directory_client import (
    BASE,
    SUBTREE,
    AttributeChanges,
    DirectoryClient,
    DirectoryEntry,
    DirectorySession,
)
from accountdir.errors import (
    DirectoryOperationError,
    DuplicateError,
    PartialUpdateError,
    RecordNotFoundError,
)
from accountdir.logger import StructuredLogger
from accountdir.models.enums import UserRole
from accountdir.models.user import (
    FindAllOptions,
    UserCreate,
    UserPage,
    UserRecord,
    UserUpdate,
    is_password_hash,
)
from accountdir.utils import record_codec
from accountdir.utils.audit import AuditAction, audit
from accountdir.utils.identifiers import build_dn, generate_uid

__all__ = ["DirectoryRepository"]

_BASE_OBJECT_CLASSES: tuple[str, ...] = ("inetOrgPerson", "posixAccount", "top")

_READ_ATTRIBUTES: list[str] = [
    "uid",
    "cn",
    "sn",
    "givenName",
    "mail",
    "title",
    "telephoneNumber",
    "st",
    "description",
    "objectClass",
]

# Optional attributes that are removed (not blanked) when cleared.
_OPTIONAL_ATTRIBUTES: dict[str, str] = {
    "phone": "telephoneNumber",
    "nationality": "st",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class DirectoryRepository:
    """LDAP-backed :class:`~accountdir.repositories.record_store.RecordStore`.

    Parameters
    ----------
    client:
        Directory client; one session is opened per public method.
    config:
        Supplies the users OU, posix defaults, role-marker classes and the
        description budget.
    verifier:
        Hashes plaintext passwords for the metadata copy and checks the
        metadata hash in :meth:`authenticate`.
    logger:
        Structured JSON logger.
    clock / id_factory:
        Injectable for deterministic tests.
    """

    def __init__(
        self,
        client: DirectoryClient,
        config: AppConfig,
        verifier: CredentialVerifier,
        logger: StructuredLogger,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._client = client
        self._config = config
        self._verifier = verifier
        self._logger = logger
        self._clock = clock
        self._id_factory = id_factory

    @property
    def _users_ou(self) -> str:
        return self._config.LDAP_USERS_OU

    # ------------------------------------------------------------------
    # Entry <-> record mapping
    # ------------------------------------------------------------------

    def _entry_to_record(self, entry: DirectoryEntry) -> Optional[UserRecord]:
        """Build a record from standard attributes plus decoded metadata.

        Entries without ``mail`` are not accounts and yield ``None``.
        """
        email = entry.first("mail")
        if not email:
            return None
        meta = record_codec.decode(entry.first("description"))

        role: Optional[UserRole] = None
        title = entry.first("title")
        if title:
            try:
                role = UserRole.from_legacy(title)
            except ValueError:
                role = None
        if role is None:
            role = meta.role or UserRole.USER

        email_verified = meta.email_verified
        if email_verified is None:
            # Migrated entries were verified before migration.
            email_verified = meta.legacy

        return UserRecord(
            id=meta.id or entry.first("uid") or entry.dn,
            email=email,
            password=meta.password_hash,
            role=role,
            email_verified=email_verified,
            full_name=entry.first("cn") or meta.full_name,
            nationality=entry.first("st") or meta.nationality,
            phone=entry.first("telephoneNumber") or meta.phone,
            created_at=meta.created_at,
            updated_at=meta.updated_at,
            last_login_at=meta.last_login_at,
            password_reset_token=meta.password_reset_token,
            password_reset_expires=meta.password_reset_expires,
            email_verification_token=meta.email_verification_token,
            created_by_admin=bool(meta.created_by_admin),
            initial_password_changed=bool(meta.initial_password_changed),
        )

    def _object_classes(self, role: UserRole) -> list[str]:
        classes = list(_BASE_OBJECT_CLASSES)
        marker = self._config.LDAP_ROLE_MARKER_CLASSES.get(str(role))
        if marker:
            classes.append(marker)
        return classes

    @staticmethod
    def _name_parts(full_name: Optional[str], uid: str) -> tuple[str, str, str]:
        """Return ``(cn, sn, givenName)`` for *full_name*."""
        if not full_name or not full_name.strip():
            return uid, uid, uid
        parts = full_name.strip().split()
        given_name = parts[0]
        surname = " ".join(parts[1:]) or uid
        return full_name.strip(), surname, given_name

    def _encode(self, record: UserRecord) -> str:
        return record_codec.encode(record, budget=self._config.DESCRIPTION_BUDGET)

    def _build_attributes(
        self,
        record: UserRecord,
        uid: str,
        bind_password: Optional[str],
        carried_password: Optional[list[str]] = None,
    ) -> dict[str, object]:
        cn, sn, given_name = self._name_parts(record.full_name, uid)
        attributes: dict[str, object] = {
            "objectClass": self._object_classes(record.role),
            "uid": uid,
            "cn": cn,
            "sn": sn,
            "givenName": given_name,
            "mail": record.email,
            "title": str(record.role),
            "uidNumber": str(self._config.LDAP_DEFAULT_UID_NUMBER),
            "gidNumber": str(self._config.LDAP_DEFAULT_GID_NUMBER),
            "homeDirectory": f"/home/{uid}",
            "loginShell": self._config.LDAP_LOGIN_SHELL,
            "description": self._encode(record),
        }
        if bind_password:
            attributes["userPassword"] = bind_password
        elif carried_password:
            attributes["userPassword"] = carried_password
        if record.phone:
            attributes["telephoneNumber"] = record.phone
        if record.nationality:
            attributes["st"] = record.nationality
        return attributes

    def _split_password(self, material: Optional[str]) -> tuple[Optional[str], Optional[str]]:
        """Return ``(plaintext, hash)`` for incoming password material."""
        if not material:
            return None, None
        if is_password_hash(material):
            return None, material
        return material, self._verifier.hash_password(material)

    # ------------------------------------------------------------------
    # Lookups (within an open session)
    # ------------------------------------------------------------------

    def _search_accounts(self, session: DirectorySession, search_filter: str) -> list[DirectoryEntry]:
        return session.search(self._users_ou, SUBTREE, search_filter, _READ_ATTRIBUTES)

    def _lookup_by_uid(
        self,
        session: DirectorySession,
        uid: str,
        attributes: Optional[list[str]] = None,
    ) -> Optional[DirectoryEntry]:
        """Base-scope read of the constructed DN, then a subtree search."""
        attrs = attributes or _READ_ATTRIBUTES
        hits = session.search(build_dn(uid, self._users_ou), BASE, "(objectClass=*)", attrs)
        if not hits:
            hits = session.search(
                self._users_ou, SUBTREE, f"(uid={escape_filter_chars(uid)})", attrs
            )
        return hits[0] if hits else None

    def _lookup_by_email(self, session: DirectorySession, email: str) -> Optional[DirectoryEntry]:
        hits = self._search_accounts(session, f"(mail={escape_filter_chars(email.strip().lower())})")
        return hits[0] if hits else None

    def _lookup_by_id(
        self,
        session: DirectorySession,
        record_id: str,
        attributes: Optional[list[str]] = None,
    ) -> Optional[DirectoryEntry]:
        """Resolve a record id: metadata search first, then ``uid`` equality."""
        attrs = attributes or _READ_ATTRIBUTES
        escaped = escape_filter_chars(record_id)
        search_filter = (
            f"(|(description=*ID:{escaped}*)"
            f"(description=*\"supabase_id\":\"{escaped}\"*))"
        )
        for entry in session.search(self._users_ou, SUBTREE, search_filter, attrs):
            # Substring matches can hit ids that merely contain this one.
            if record_codec.decode(entry.first("description")).id == record_id:
                return entry
        return self._lookup_by_uid(session, record_id, attrs)

    # ------------------------------------------------------------------
    # RecordStore: create / read
    # ------------------------------------------------------------------

    def create(self, data: UserCreate) -> UserRecord:
        """Add a new entry.

        Raises
        ------
        DuplicateError
            If the email is already present or the derived uid is taken.
        CodecBudgetError
            If the mandatory metadata cannot fit the description budget.
        DirectoryConnectionError / DirectoryOperationError
            On infrastructure failure.
        """
        record_id = data.id or self._id_factory()
        now = self._clock()
        _, password_hash = self._split_password(data.password)

        record = UserRecord(
            id=record_id,
            email=data.email,
            password=password_hash,
            role=data.role,
            email_verified=data.email_verified,
            full_name=data.full_name,
            nationality=data.nationality,
            phone=data.phone,
            created_at=data.created_at or now,
            updated_at=now,
            email_verification_token=data.email_verification_token,
            created_by_admin=data.created_by_admin,
            initial_password_changed=data.initial_password_changed,
        )
        uid = generate_uid(record.email, record_id)
        dn = build_dn(uid, self._users_ou)
        # A pre-hashed password is stored as given; the directory accepts
        # hashed userPassword values on add.
        attributes = self._build_attributes(record, uid, data.password)

        with self._client.session() as session:
            if self._lookup_by_email(session, record.email) is not None:
                raise DuplicateError(
                    f"Email already registered: {record.email}", value=record.email
                )
            if self._lookup_by_uid(session, uid, ["uid"]) is not None:
                raise DuplicateError(
                    f"Directory uid already taken: {uid}", field="uid", value=uid
                )
            session.add(dn, attributes)

        self._logger.info("Directory entry created: %s", dn)
        audit(
            self._logger,
            AuditAction.CREATE,
            record_id,
            store="directory",
            details={"uid": uid, "role": str(record.role)},
        )
        return record

    def find_by_id(self, record_id: str) -> Optional[UserRecord]:
        with self._client.session() as session:
            entry = self._lookup_by_id(session, record_id)
        return self._entry_to_record(entry) if entry else None

    def find_by_email(self, email: str) -> Optional[UserRecord]:
        with self._client.session() as session:
            entry = self._lookup_by_email(session, email)
        return self._entry_to_record(entry) if entry else None

    def exists_by_email(self, email: str) -> bool:
        with self._client.session() as session:
            return self._lookup_by_email(session, email) is not None

    def _all_records(self) -> list[UserRecord]:
        with self._client.session() as session:
            entries = self._search_accounts(session, "(objectClass=inetOrgPerson)")
        records = [self._entry_to_record(entry) for entry in entries]
        return [record for record in records if record is not None]

    def find_all(self, options: FindAllOptions) -> UserPage:
        """Page through accounts, newest first.  Filtering is client-side."""
        matching = [r for r in self._all_records() if options.matches(r)]
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        matching.sort(key=lambda r: r.created_at or oldest, reverse=True)
        window = matching[options.offset: options.offset + options.limit]
        return UserPage(users=window, total=len(matching), page=options.page, limit=options.limit)

    def find_by_role(self, role: UserRole) -> list[UserRecord]:
        return [r for r in self._all_records() if r.role == role]

    def count(self) -> int:
        return len(self._all_records())

    def count_by_role(self) -> dict[UserRole, int]:
        counts: dict[UserRole, int] = {role: 0 for role in UserRole}
        for record in self._all_records():
            counts[record.role] += 1
        return counts

    def find_by_date_range(self, start: datetime, end: datetime) -> list[UserRecord]:
        """Records created between *start* and *end*, inclusive.

        The directory keeps creation dates at day granularity, so the
        comparison is on calendar dates.
        """
        first, last = start.date(), end.date()
        return [
            r for r in self._all_records()
            if r.created_at is not None and first <= r.created_at.date() <= last
        ]

    # ------------------------------------------------------------------
    # RecordStore: update / delete
    # ------------------------------------------------------------------

    def update(self, record_id: str, changes: UserUpdate) -> UserRecord:
        """Apply *changes* to the record.

        Raises
        ------
        RecordNotFoundError
            If *record_id* does not resolve.
        DuplicateError
            If the new email (or its uid) belongs to another entry.
        """
        fields = changes.changes()
        plaintext, password_hash = self._split_password(fields.get("password"))

        with self._client.session() as session:
            entry = self._lookup_by_id(session, record_id, _READ_ATTRIBUTES + ["userPassword"])
            current = self._entry_to_record(entry) if entry else None
            if entry is None or current is None:
                raise RecordNotFoundError(f"User record not found: {record_id}")

            updated = changes.apply_to(current, self._clock())
            updated = updated.model_copy(
                update={"password": password_hash or current.password}
            )

            if updated.email != current.email:
                other = self._lookup_by_email(session, updated.email)
                if other is not None and other.dn != entry.dn:
                    raise DuplicateError(
                        f"Email already registered: {updated.email}", value=updated.email
                    )

            old_uid = entry.first("uid") or ""
            new_uid = generate_uid(updated.email, current.id)
            description = self._encode(updated)

            if updated.email != current.email and new_uid != old_uid:
                self._move_entry(session, entry, updated, new_uid, plaintext)
            else:
                self._modify_in_place(
                    session, entry, current, updated, fields, plaintext, description
                )

        audit(
            self._logger,
            AuditAction.UPDATE,
            current.id,
            store="directory",
            details={
                "fields": ",".join(sorted(k for k in fields if k != "password")),
                "password_changed": "password" in fields,
            },
        )
        return updated

    def _modify_in_place(
        self,
        session: DirectorySession,
        entry: DirectoryEntry,
        current: UserRecord,
        updated: UserRecord,
        fields: dict[str, object],
        plaintext: Optional[str],
        description: str,
    ) -> None:
        uid = entry.first("uid") or current.id
        cn, sn, given_name = self._name_parts(updated.full_name, uid)

        # Phase 1: attributes the account cannot work without.
        critical: AttributeChanges = {
            "cn": [(MODIFY_REPLACE, [cn])],
            "sn": [(MODIFY_REPLACE, [sn])],
            "givenName": [(MODIFY_REPLACE, [given_name])],
            "mail": [(MODIFY_REPLACE, [updated.email])],
            "title": [(MODIFY_REPLACE, [str(updated.role)])],
        }
        if updated.role != current.role and self._config.LDAP_ROLE_MARKER_CLASSES:
            critical["objectClass"] = [(MODIFY_REPLACE, self._object_classes(updated.role))]
        for field_name, attribute in _OPTIONAL_ATTRIBUTES.items():
            if field_name not in fields:
                continue
            value = getattr(updated, field_name)
            if value:
                critical[attribute] = [(MODIFY_REPLACE, [value])]
            elif entry.has(attribute):
                critical[attribute] = [(MODIFY_DELETE, [])]
        if plaintext:
            critical["userPassword"] = [(MODIFY_REPLACE, [plaintext])]
        session.modify(entry.dn, critical)

        # Phase 2: metadata, best effort.
        try:
            session.modify(entry.dn, {"description": [(MODIFY_REPLACE, [description])]})
        except DirectoryOperationError as exc:
            partial = PartialUpdateError(
                f"Metadata not written for {entry.dn}; standard attributes were updated.",
                original_error=exc,
            )
            self._logger.error("%s: %s", type(partial).__name__, partial)

    def _move_entry(
        self,
        session: DirectorySession,
        entry: DirectoryEntry,
        updated: UserRecord,
        new_uid: str,
        plaintext: Optional[str],
    ) -> None:
        """Identity change: add the new DN, verify it, then drop the old one."""
        new_dn = build_dn(new_uid, self._users_ou)
        if self._lookup_by_uid(session, new_uid, ["uid"]) is not None:
            raise DuplicateError(
                f"Directory uid already taken: {new_uid}", field="uid", value=new_uid
            )

        attributes = self._build_attributes(
            updated, new_uid, plaintext, carried_password=entry.values("userPassword")
        )
        session.add(new_dn, attributes)

        staged = session.search(new_dn, BASE, "(objectClass=*)", ["description"])
        staged_id = record_codec.decode(staged[0].first("description")).id if staged else None
        if staged_id != updated.id:
            try:
                session.delete(new_dn)
            except DirectoryOperationError as exc:
                self._logger.error("Could not remove unverified entry %s: %s", new_dn, exc)
            raise DirectoryOperationError(
                f"Read-back of {new_dn} did not return record {updated.id}; "
                f"{entry.dn} left unchanged."
            )

        try:
            session.delete(entry.dn)
        except DirectoryOperationError as exc:
            self._logger.error(
                "Old entry %s not removed after move to %s: %s. "
                "Both entries now decode to %s until repaired.",
                entry.dn,
                new_dn,
                exc,
                updated.id,
            )
            return
        self._logger.info("Directory entry moved: %s -> %s", entry.dn, new_dn)

    def delete(self, record_id: str) -> bool:
        with self._client.session() as session:
            entry = self._lookup_by_id(session, record_id, ["uid", "description"])
            if entry is None:
                return False
            session.delete(entry.dn)
        audit(
            self._logger, AuditAction.DELETE, record_id, store="directory", details={"dn": entry.dn}
        )
        return True

    def update_last_login(self, record_id: str) -> None:
        """Stamp ``last_login_at``; touches only the metadata attribute."""
        with self._client.session() as session:
            entry = self._lookup_by_id(session, record_id)
            current = self._entry_to_record(entry) if entry else None
            if entry is None or current is None:
                raise RecordNotFoundError(f"User record not found: {record_id}")
            stamped = current.model_copy(update={"last_login_at": self._clock()})
            session.modify(
                entry.dn, {"description": [(MODIFY_REPLACE, [self._encode(stamped)])]}
            )

    # ------------------------------------------------------------------
    # Authentication and repair
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> Optional[UserRecord]:
        """Check *password* for *email*.

        Binds as the user first; if the bind is refused (accounts ingested
        with a pre-hashed password hold the hash in ``userPassword``) the
        metadata hash is checked instead.
        """
        with self._client.session() as session:
            entry = self._lookup_by_email(session, email)
        record = self._entry_to_record(entry) if entry else None
        if entry is None or record is None:
            return None
        if self._client.verify_credentials(entry.dn, password):
            return record
        if record.password and self._verifier.verify_password(password, record.password):
            return record
        return None

    def find_duplicate_entries(self) -> dict[str, list[str]]:
        """Record ids held by more than one entry, mapped to their DNs.

        Left behind when the old DN of a move could not be deleted.
        """
        with self._client.session() as session:
            entries = self._search_accounts(session, "(objectClass=inetOrgPerson)")
        by_id: dict[str, list[str]] = defaultdict(list)
        for entry in entries:
            record_id = record_codec.decode(entry.first("description")).id
            if record_id:
                by_id[record_id].append(entry.dn)
        return {rid: dns for rid, dns in by_id.items() if len(dns) > 1}
