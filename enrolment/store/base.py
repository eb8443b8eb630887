"""
Record store and audit sink interfaces.

The record store is the single shared mutable resource of the registry.
Every status change goes through ``conditional_update``, a compare-and-swap
on the stored status (and, optionally, version).
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any

from enrolment.core.errors import AuditUnavailable, StoreConflict
from enrolment.core.models import (
    AuditEvent,
    BiometricRecord,
    DedupStatus,
    RegistrationRecord,
    RegistrationStatus,
    utcnow,
)

Mutator = Callable[[RegistrationRecord], RegistrationRecord]


class RegistrationStore(ABC):
    """
    Abstract base class for registration record stores.

    Implementations must make ``conditional_update`` atomic with respect to
    every other write on the same record, and must reject a second record
    carrying an identity number already in use.
    """

    @abstractmethod
    def insert(self, record: RegistrationRecord) -> RegistrationRecord:
        """
        Persist a new registration record.

        Raises:
            ValidationError: If a record with the same id already exists
        """

    @abstractmethod
    def get(self, registration_id: str) -> RegistrationRecord:
        """
        Fetch a registration record.

        Raises:
            NotFound: If the id does not exist
        """

    @abstractmethod
    def conditional_update(
        self,
        registration_id: str,
        expected_status: RegistrationStatus,
        mutator: Mutator,
        expected_version: int | None = None,
    ) -> RegistrationRecord:
        """
        Apply ``mutator`` only if the stored record still has ``expected_status``
        (and ``expected_version`` when given).

        Args:
            registration_id: Record to update
            expected_status: Status the caller observed
            mutator: Function from the current record to the new record
            expected_version: Version the caller observed (optional)

        Returns:
            The record as written, version incremented

        Raises:
            NotFound: If the id does not exist
            StoreConflict: If the stored status or version differ
            DuplicateIdentityConflict: If the new identity number is already taken
        """

    @abstractmethod
    def insert_biometric_records(self, records: list[BiometricRecord]) -> list[BiometricRecord]:
        """Append biometric records; returns them with store-assigned ids."""

    @abstractmethod
    def mark_dedup_status(
        self, registration_id: str, capture_attempt_id: str, status: DedupStatus
    ) -> int:
        """Set the dedup status of every record of one capture attempt; returns rows updated."""

    @abstractmethod
    def list_biometric_records(self, registration_id: str) -> list[BiometricRecord]:
        """Biometric records of a registration, oldest first."""

    @abstractmethod
    def list_registrations(
        self, status: RegistrationStatus | None = None, limit: int = 100
    ) -> list[RegistrationRecord]:
        """Registrations, oldest first, optionally filtered by status."""

    @abstractmethod
    def count_by_status(self) -> dict[str, int]:
        """Number of registrations per status (every status present, zero if none)."""

    @staticmethod
    def check_expected(
        current: RegistrationRecord,
        expected_status: RegistrationStatus,
        expected_version: int | None,
    ) -> None:
        """Raise StoreConflict unless ``current`` matches what the caller observed."""
        if current.status != expected_status or (
            expected_version is not None and current.version != expected_version
        ):
            raise StoreConflict(
                current.id,
                expected_status.value,
                current.status.value,
                expected_version=expected_version,
                actual_version=current.version,
            )

    @staticmethod
    def apply_mutator(current: RegistrationRecord, mutator: Mutator) -> RegistrationRecord:
        """
        Run ``mutator`` and stamp the result with the next version.

        Raises:
            ValueError: If the mutator changed the record id
        """
        updated = mutator(current)
        if updated.id != current.id:
            raise ValueError("A mutator cannot change the registration id")
        return updated.evolve(version=current.version + 1, updated_at=utcnow())

    @staticmethod
    def empty_status_counts() -> dict[str, int]:
        return {status.value: 0 for status in RegistrationStatus}


class AuditSink(ABC):
    """Receives one immutable event per transition."""

    @abstractmethod
    def record(
        self,
        registration_id: str,
        event_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
        timestamp: datetime,
    ) -> None:
        """Deliver one audit event. May raise; the emitter decides what to do."""

    def events_for(self, registration_id: str, limit: int = 100) -> list[AuditEvent]:
        """
        Audit trail for one registration, oldest first.

        Raises:
            AuditUnavailable: If the sink is write-only
        """
        raise AuditUnavailable(
            f"{type(self).__name__} does not support audit queries", registration_id=registration_id
        )
