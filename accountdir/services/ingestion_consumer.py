"""
Event Ingestion Consumer.

Background daemon thread that reads account-creation events from the bus
and writes them through the record store.  Follows the same lifecycle as
the other worker services: the caller invokes :meth:`start` /
:meth:`stop`; the worker thread polls in a loop until stopped.

Per message
-----------
1. Parse the envelope; the payload may be a JSON object or a JSON string.
2. Ignore every event type other than ``<namespace>.user.created``.
3. Validate the payload.  Invalid payloads are logged and dropped.
4. Resolve the record id: if the proposed id is taken, draw fresh ids
   from the id factory, up to ``INGESTION_ID_ATTEMPTS`` times.
5. Skip the message if the email is already registered.
6. Hash the password, create the record, publish the confirmation.
   A failed confirmation is logged; the record is not rolled back.

Failures are isolated per message.  Offsets are committed only after a
whole poll batch has been handled, so a crash or a stop in the middle of
a batch redelivers the rest; steps 4 and 5 make that redelivery a no-op
for messages that were already stored.

Thread Safety
-------------
The state flags are the only shared mutable state and are guarded by a
lock.  Messages are handled one at a time on the worker thread.
"""

from __future__ import annotations

import threading
import uuid
from typing import Callable, Optional, Union

from accountdir.config import AppConfig
from accountdir.credentials import CredentialVerifier
from accountdir.errors import CollisionError, DuplicateError
from accountdir.logger import StructuredLogger
from accountdir.models.enums import ConsumerState, IngestionOutcome, UserRole
from accountdir.models.event_models import (
    ConfirmationEvent,
    ConfirmationPayload,
    EventEnvelope,
    UserCreatedPayload,
)
from accountdir.models.user import UserCreate, UserRecord
from accountdir.repositories.record_store import RecordStore
from accountdir.services.base_service import BaseService
from accountdir.services.event_bus import ConfirmationPublisher, MessageSource
from accountdir.utils.audit import AuditAction, audit

__all__ = ["IngestionConsumer"]

_DEFAULT_NATIONALITY: str = "No especificada"


class IngestionConsumer(BaseService):
    """Daemon thread that turns ``user.created`` events into records.

    Parameters
    ----------
    store:
        Where records are written (the fallback composite in production).
    verifier:
        Hashes the plaintext password carried by the event.
    source_factory:
        Builds the subscribed bus consumer when :meth:`start` runs.
    publisher:
        Publishes confirmation events; ``None`` disables confirmations.
    config:
        Event namespace, poll timeout and id regeneration limit.
    logger:
        Structured JSON logger.
    id_factory:
        Produces replacement ids on collision.
    """

    _MAX_RECORDS_PER_POLL: int = 100
    _JOIN_TIMEOUT_S: float = 30.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __init__(
        self,
        store: RecordStore,
        verifier: CredentialVerifier,
        source_factory: Callable[[], MessageSource],
        publisher: Optional[ConfirmationPublisher],
        config: AppConfig,
        logger: StructuredLogger,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        super().__init__(logger)
        self._store = store
        self._verifier = verifier
        self._source_factory = source_factory
        self._publisher = publisher
        self._config = config
        self._id_factory = id_factory

        self._lock: threading.Lock = threading.Lock()
        self._state: ConsumerState = ConsumerState.IDLE
        self._processing: bool = False
        self._outcomes: dict[IngestionOutcome, int] = {o: 0 for o in IngestionOutcome}
        self._source: Optional[MessageSource] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event: threading.Event = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe and start polling on a daemon thread.

        Idempotent: calling ``start()`` while running is a no-op.
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                self._logger.debug("Ingestion consumer already running.")
                return

            self._source = self._source_factory()
            self._stop_event.clear()
            self._state = ConsumerState.SUBSCRIBED
            self._thread = threading.Thread(
                target=self._run_loop,
                name="IngestionConsumer",
                daemon=True,
            )
            self._thread.start()
        self._logger.info(
            "Ingestion consumer started.",
            extra={"topics": ",".join(self._config.KAFKA_TOPICS)},
        )

    def stop(self) -> None:
        """Stop after the in-flight message, then close the bus consumer.

        Safe to call when the consumer is not running.
        """
        thread = self._thread
        self._stop_event.set()
        if thread is not None:
            thread.join(timeout=self._JOIN_TIMEOUT_S)
            if thread.is_alive():
                self._logger.warning(
                    "Ingestion consumer thread did not terminate within %.0f s.",
                    self._JOIN_TIMEOUT_S,
                )

        with self._lock:
            source, self._source = self._source, None
            self._thread = None
            self._state = ConsumerState.STOPPED
        if source is not None:
            try:
                source.close()
            except Exception as exc:
                self._logger.warning("Error closing bus consumer: %s", exc)
        self._logger.info("Ingestion consumer stopped.")

    @property
    def state(self) -> ConsumerState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        """``True`` when the worker thread is alive."""
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def is_processing(self) -> bool:
        with self._lock:
            return self._processing

    def status(self) -> dict[str, Union[str, bool, int]]:
        """Snapshot for health endpoints."""
        with self._lock:
            snapshot: dict[str, Union[str, bool, int]] = {
                "state": str(self._state),
                "is_processing": self._processing,
            }
            snapshot.update({str(outcome): count for outcome, count in self._outcomes.items()})
        snapshot["is_running"] = self.is_running
        return snapshot

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Main loop executed on the daemon thread."""
        try:
            while not self._stop_event.is_set():
                source = self._source
                if source is None:
                    break
                batch = source.poll(
                    timeout_ms=self._config.CONSUMER_POLL_TIMEOUT_MS,
                    max_records=self._MAX_RECORDS_PER_POLL,
                )
                if not batch:
                    continue
                if self._handle_batch(batch):
                    try:
                        source.commit()
                    except Exception:
                        self._logger.warning("Offset commit failed.", exc_info=True)
        except Exception:
            self._logger.error(
                "Ingestion consumer thread terminated due to unhandled exception.",
                exc_info=True,
            )
            with self._lock:
                self._state = ConsumerState.STOPPED

    def _handle_batch(self, batch: dict) -> bool:
        """Process a poll batch in order.  ``False`` if interrupted by stop."""
        for records in batch.values():
            for message in records:
                if self._stop_event.is_set():
                    return False
                with self._lock:
                    self._state = ConsumerState.PROCESSING
                    self._processing = True
                try:
                    self.process_message(message.value)
                finally:
                    with self._lock:
                        self._processing = False
                        if self._state == ConsumerState.PROCESSING:
                            self._state = ConsumerState.SUBSCRIBED
        return True

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    def process_message(self, raw: Union[bytes, str, None]) -> IngestionOutcome:
        """Handle one raw message value and report what happened."""
        outcome = self._process(raw)
        with self._lock:
            self._outcomes[outcome] += 1
        return outcome

    def _process(self, raw: Union[bytes, str, None]) -> IngestionOutcome:
        if not raw:
            self._logger.warning("Message without value, skipping.")
            return IngestionOutcome.INVALID

        try:
            envelope = EventEnvelope.from_raw(raw)
        except ValueError as exc:
            self._logger.warning("Unreadable event envelope dropped: %s", exc)
            return IngestionOutcome.INVALID

        if envelope.event_type != self._config.created_event_type:
            self._logger.debug("Ignoring event type %s", envelope.event_type)
            return IngestionOutcome.IGNORED

        try:
            payload = UserCreatedPayload.model_validate(envelope.payload_dict())
        except ValueError as exc:
            self._logger.warning(
                "Invalid %s payload dropped (message %s): %s",
                envelope.event_type,
                envelope.message_id,
                exc,
            )
            return IngestionOutcome.INVALID

        try:
            return self._ingest(envelope, payload)
        except DuplicateError as exc:
            self._logger.info(
                "Account for %s already exists (message %s): %s",
                payload.email,
                envelope.message_id,
                exc,
            )
            return IngestionOutcome.DUPLICATE
        except CollisionError as exc:
            self._logger.error("Message %s: %s", envelope.message_id, exc)
            return IngestionOutcome.FAILED
        except Exception:
            self._logger.error(
                "Failed to ingest message %s", envelope.message_id, exc_info=True
            )
            return IngestionOutcome.FAILED

    def _ingest(self, envelope: EventEnvelope, payload: UserCreatedPayload) -> IngestionOutcome:
        # Id resolution comes first: an exhausted id space fails the message
        # even when the email is already registered.
        record_id = self._resolve_id(payload.user_id)
        if self._store.exists_by_email(payload.email):
            self._logger.info(
                "Account for %s already exists, skipping message %s",
                payload.email,
                envelope.message_id,
            )
            return IngestionOutcome.DUPLICATE

        record = self._store.create(
            UserCreate(
                id=record_id,
                email=payload.email,
                password=self._verifier.hash_password(payload.password),
                role=self._role_from(payload.roles),
                email_verified=True,
                full_name=payload.full_name,
                nationality=payload.nationality_or_origin or _DEFAULT_NATIONALITY,
                phone=payload.phone or None,
                created_at=payload.created_at,
                created_by_admin=False,
            )
        )
        audit(
            self._logger,
            AuditAction.INGEST,
            record.id,
            details={
                "message_id": envelope.message_id,
                "proposed_id": payload.user_id,
                "id_regenerated": record.id != payload.user_id,
            },
        )
        self._confirm(envelope, record)
        return IngestionOutcome.CREATED

    def _resolve_id(self, proposed: str) -> str:
        """Return *proposed* if free, else the first free id from the factory.

        Raises
        ------
        CollisionError
            When ``INGESTION_ID_ATTEMPTS`` regenerated ids are all taken.
        """
        if self._store.find_by_id(proposed) is None:
            return proposed
        attempts = self._config.INGESTION_ID_ATTEMPTS
        for attempt in range(1, attempts + 1):
            candidate = self._id_factory()
            self._logger.warning(
                "Record id %s taken; trying %s (attempt %d/%d)",
                proposed,
                candidate,
                attempt,
                attempts,
            )
            if self._store.find_by_id(candidate) is None:
                return candidate
        raise CollisionError(
            f"No free record id after {attempts} attempts (proposed {proposed})."
        )

    def _role_from(self, roles: list[str]) -> UserRole:
        try:
            return UserRole.from_legacy(roles[0])
        except ValueError:
            self._logger.warning("Unknown role %r in event; using 'user'.", roles[0])
            return UserRole.USER

    def _confirm(self, envelope: EventEnvelope, record: UserRecord) -> None:
        if self._publisher is None:
            return
        event = ConfirmationEvent(
            event_type=self._config.confirmation_event_type,
            correlation_id=envelope.correlation_id or envelope.message_id or None,
            payload=ConfirmationPayload(
                user_id=record.id,
                nationality_or_origin=record.nationality or _DEFAULT_NATIONALITY,
                roles=[str(record.role)],
                created_at=record.created_at.isoformat() if record.created_at else "",
            ),
        )
        try:
            self._publisher.publish(event, key=record.id)
        except Exception as exc:
            self._logger.warning(
                "Confirmation for %s not published (record kept): %s", record.id, exc
            )
