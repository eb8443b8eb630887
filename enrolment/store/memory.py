"""
In-memory record store and audit sink.

Thread-safe: every read-modify-write runs under one re-entrant lock, which
plays the role the row lock plays in PostgreSQL.
"""

import itertools
import threading
from datetime import datetime
from typing import Any

from enrolment.core.errors import DuplicateIdentityConflict, NotFound, ValidationError
from enrolment.core.models import (
    AuditEvent,
    AuditEventType,
    BiometricRecord,
    DedupStatus,
    RegistrationRecord,
    RegistrationStatus,
)
from enrolment.observability.logger import get_logger
from enrolment.store.base import AuditSink, Mutator, RegistrationStore

logger = get_logger(__name__)


class InMemoryRegistrationStore(RegistrationStore):
    """Registration store backed by dictionaries."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: dict[str, RegistrationRecord] = {}
        self._identity_index: dict[str, str] = {}
        self._biometrics: list[BiometricRecord] = []
        self._biometric_ids = itertools.count(1)

    def insert(self, record: RegistrationRecord) -> RegistrationRecord:
        with self._lock:
            if record.id in self._records:
                raise ValidationError(f"Registration {record.id} already exists", registration_id=record.id)
            if record.identity_number is not None:
                self._claim_identity(record.identity_number, record.id)
            self._records[record.id] = record
            return record

    def get(self, registration_id: str) -> RegistrationRecord:
        with self._lock:
            record = self._records.get(registration_id)
        if record is None:
            raise NotFound(f"Registration {registration_id} not found", registration_id=registration_id)
        return record

    def conditional_update(
        self,
        registration_id: str,
        expected_status: RegistrationStatus,
        mutator: Mutator,
        expected_version: int | None = None,
    ) -> RegistrationRecord:
        with self._lock:
            current = self.get(registration_id)
            self.check_expected(current, expected_status, expected_version)
            updated = self.apply_mutator(current, mutator)

            if updated.identity_number != current.identity_number:
                if updated.identity_number is not None:
                    self._claim_identity(updated.identity_number, registration_id)
                if current.identity_number is not None:
                    self._identity_index.pop(current.identity_number, None)

            self._records[registration_id] = updated
            return updated

    def _claim_identity(self, identity_number: str, registration_id: str) -> None:
        owner = self._identity_index.get(identity_number)
        if owner is not None and owner != registration_id:
            raise DuplicateIdentityConflict(
                "Identity number already issued",
                registration_id=registration_id,
            )
        self._identity_index[identity_number] = registration_id

    def insert_biometric_records(self, records: list[BiometricRecord]) -> list[BiometricRecord]:
        with self._lock:
            stored = [
                record.model_copy(update={"biometric_id": next(self._biometric_ids)})
                for record in records
            ]
            self._biometrics.extend(stored)
            return stored

    def mark_dedup_status(
        self, registration_id: str, capture_attempt_id: str, status: DedupStatus
    ) -> int:
        with self._lock:
            updated = 0
            for index, record in enumerate(self._biometrics):
                if (
                    record.registration_id == registration_id
                    and record.capture_attempt_id == capture_attempt_id
                ):
                    self._biometrics[index] = record.model_copy(update={"dedup_status": status})
                    updated += 1
            return updated

    def list_biometric_records(self, registration_id: str) -> list[BiometricRecord]:
        with self._lock:
            return [r for r in self._biometrics if r.registration_id == registration_id]

    def list_registrations(
        self, status: RegistrationStatus | None = None, limit: int = 100
    ) -> list[RegistrationRecord]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.created_at)
        if status is not None:
            records = [r for r in records if r.status == status]
        return records[:limit]

    def count_by_status(self) -> dict[str, int]:
        counts = self.empty_status_counts()
        with self._lock:
            for record in self._records.values():
                counts[record.status.value] += 1
        return counts


class InMemoryAuditSink(AuditSink):
    """Keeps audit events in a list; used for embedding and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: list[AuditEvent] = []

    def record(
        self,
        registration_id: str,
        event_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
        timestamp: datetime,
    ) -> None:
        with self._lock:
            event = AuditEvent(
                event_id=len(self.events) + 1,
                registration_id=registration_id,
                event_type=AuditEventType(event_type),
                actor_id=actor_id,
                payload=dict(payload),
                created_at=timestamp,
            )
            self.events.append(event)
        logger.debug(f"Recorded audit event {event_type} for {registration_id}")

    def events_for(self, registration_id: str, limit: int = 100) -> list[AuditEvent]:
        with self._lock:
            return [e for e in self.events if e.registration_id == registration_id][:limit]
