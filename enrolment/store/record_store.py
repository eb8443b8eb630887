"""
PostgreSQL registration store.

Conditional updates lock the row with ``SELECT ... FOR UPDATE`` and write
inside the same transaction, so two concurrent commands on one record are
serialized by the database and the loser sees the winner's status.
"""

from typing import Any

import psycopg
from psycopg.errors import UniqueViolation
from psycopg.types.json import Jsonb

from enrolment.core.errors import DuplicateIdentityConflict, NotFound, ValidationError
from enrolment.core.models import (
    BiometricRecord,
    DedupStatus,
    RegistrationRecord,
    RegistrationStatus,
)
from enrolment.observability.logger import get_logger

from .base import Mutator, RegistrationStore
from .connection import DatabaseConnectionPool

logger = get_logger(__name__)

IDENTITY_NUMBER_CONSTRAINT = "registration_record_identity_number_key"

_RECORD_COLUMNS = """
    id, status, biometric_status, identity_number, verification_token_hash,
    issued_at, scheduled_capture_at, correction_fields, correction_origin, resolution_notes,
    demographics, version, created_at, updated_at
"""

_BIOMETRIC_COLUMNS = """
    biometric_id, registration_id, capture_attempt_id, modality, position,
    quality_score, template_hash, dedup_status, captured_by, captured_at
"""


class PostgresRegistrationStore(RegistrationStore):
    """
    Registration store backed by the ``registration_record`` and
    ``biometric_record`` tables.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        """
        Initialize the store.

        Args:
            pool: Open database connection pool
        """
        self.pool = pool

    def insert(self, record: RegistrationRecord) -> RegistrationRecord:
        query = f"""
            INSERT INTO registration_record ({_RECORD_COLUMNS})
            VALUES (
                %(id)s, %(status)s, %(biometric_status)s, %(identity_number)s,
                %(verification_token_hash)s, %(issued_at)s, %(scheduled_capture_at)s,
                %(correction_fields)s, %(correction_origin)s, %(resolution_notes)s, %(demographics)s,
                %(version)s, %(created_at)s, %(updated_at)s
            )
        """
        try:
            with self.pool.transaction() as cur:
                cur.execute(query, self._to_params(record))
        except UniqueViolation as e:
            self._raise_unique_violation(e, record.id)
        except psycopg.DatabaseError as e:
            logger.error(f"Failed to insert registration {record.id}: {e}")
            raise

        logger.debug(f"Inserted registration {record.id}")
        return record

    def get(self, registration_id: str) -> RegistrationRecord:
        rows = self.pool.execute_query(
            f"SELECT {_RECORD_COLUMNS} FROM registration_record WHERE id = %s",
            (registration_id,),
        )
        if not rows:
            raise NotFound(f"Registration {registration_id} not found", registration_id=registration_id)
        return self._to_record(rows[0])

    def conditional_update(
        self,
        registration_id: str,
        expected_status: RegistrationStatus,
        mutator: Mutator,
        expected_version: int | None = None,
    ) -> RegistrationRecord:
        update_sql = """
            UPDATE registration_record SET
                status = %(status)s,
                biometric_status = %(biometric_status)s,
                identity_number = %(identity_number)s,
                verification_token_hash = %(verification_token_hash)s,
                issued_at = %(issued_at)s,
                scheduled_capture_at = %(scheduled_capture_at)s,
                correction_fields = %(correction_fields)s,
                correction_origin = %(correction_origin)s,
                resolution_notes = %(resolution_notes)s,
                demographics = %(demographics)s,
                version = %(version)s,
                updated_at = %(updated_at)s
            WHERE id = %(id)s AND status = %(expected_status)s AND version = %(expected_version)s
        """
        try:
            with self.pool.transaction() as cur:
                cur.execute(
                    f"SELECT {_RECORD_COLUMNS} FROM registration_record WHERE id = %s FOR UPDATE",
                    (registration_id,),
                )
                row = cur.fetchone()
                if row is None:
                    raise NotFound(
                        f"Registration {registration_id} not found",
                        registration_id=registration_id,
                    )

                current = self._to_record(row)
                self.check_expected(current, expected_status, expected_version)
                updated = self.apply_mutator(current, mutator)

                params = self._to_params(updated)
                params["expected_status"] = current.status.value
                params["expected_version"] = current.version
                cur.execute(update_sql, params)

                # Row is locked, so the guarded UPDATE must hit exactly once
                if cur.rowcount != 1:
                    raise RuntimeError(
                        f"Conditional update on {registration_id} matched {cur.rowcount} rows"
                    )
        except UniqueViolation as e:
            self._raise_unique_violation(e, registration_id)
        except psycopg.DatabaseError as e:
            logger.error(f"Conditional update on {registration_id} failed: {e}")
            raise

        return updated

    def insert_biometric_records(self, records: list[BiometricRecord]) -> list[BiometricRecord]:
        if not records:
            return []

        query = """
            INSERT INTO biometric_record (
                registration_id, capture_attempt_id, modality, position,
                quality_score, template_hash, dedup_status, captured_by, captured_at
            ) VALUES (
                %(registration_id)s, %(capture_attempt_id)s, %(modality)s, %(position)s,
                %(quality_score)s, %(template_hash)s, %(dedup_status)s, %(captured_by)s,
                %(captured_at)s
            ) RETURNING biometric_id
        """
        stored = []
        try:
            with self.pool.transaction() as cur:
                for record in records:
                    cur.execute(query, self._biometric_params(record))
                    biometric_id = cur.fetchone()["biometric_id"]
                    stored.append(record.model_copy(update={"biometric_id": biometric_id}))
        except psycopg.DatabaseError as e:
            logger.error(f"Failed to insert biometric records: {e}")
            raise

        logger.debug(f"Inserted {len(stored)} biometric records for {records[0].registration_id}")
        return stored

    def mark_dedup_status(
        self, registration_id: str, capture_attempt_id: str, status: DedupStatus
    ) -> int:
        return self.pool.execute_command(
            """
            UPDATE biometric_record SET dedup_status = %s
            WHERE registration_id = %s AND capture_attempt_id = %s
            """,
            (status.value, registration_id, capture_attempt_id),
        )

    def list_biometric_records(self, registration_id: str) -> list[BiometricRecord]:
        rows = self.pool.execute_query(
            f"""
            SELECT {_BIOMETRIC_COLUMNS} FROM biometric_record
            WHERE registration_id = %s
            ORDER BY captured_at, biometric_id
            """,
            (registration_id,),
        )
        return [BiometricRecord.model_validate(row) for row in rows]

    def list_registrations(
        self, status: RegistrationStatus | None = None, limit: int = 100
    ) -> list[RegistrationRecord]:
        query = f"SELECT {_RECORD_COLUMNS} FROM registration_record"
        params: dict[str, Any] = {"limit": limit}
        if status is not None:
            query += " WHERE status = %(status)s"
            params["status"] = status.value
        query += " ORDER BY created_at, id LIMIT %(limit)s"

        return [self._to_record(row) for row in self.pool.execute_query(query, params)]

    def count_by_status(self) -> dict[str, int]:
        counts = self.empty_status_counts()
        rows = self.pool.execute_query(
            "SELECT status, COUNT(*) AS count FROM registration_record GROUP BY status"
        )
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    @staticmethod
    def _to_params(record: RegistrationRecord) -> dict[str, Any]:
        return {
            "id": record.id,
            "status": record.status.value,
            "biometric_status": record.biometric_status.value,
            "identity_number": record.identity_number,
            "verification_token_hash": record.verification_token_hash,
            "issued_at": record.issued_at,
            "scheduled_capture_at": record.scheduled_capture_at,
            "correction_fields": list(record.correction_fields),
            "correction_origin": record.correction_origin.value if record.correction_origin else None,
            "resolution_notes": record.resolution_notes,
            "demographics": Jsonb(record.demographics),
            "version": record.version,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }

    @staticmethod
    def _biometric_params(record: BiometricRecord) -> dict[str, Any]:
        return {
            "registration_id": record.registration_id,
            "capture_attempt_id": record.capture_attempt_id,
            "modality": record.modality.value,
            "position": record.position.value if record.position else None,
            "quality_score": record.quality_score,
            "template_hash": record.template_hash,
            "dedup_status": record.dedup_status.value,
            "captured_by": record.captured_by,
            "captured_at": record.captured_at,
        }

    @staticmethod
    def _to_record(row: dict[str, Any]) -> RegistrationRecord:
        return RegistrationRecord.model_validate(dict(row))

    @staticmethod
    def _raise_unique_violation(error: UniqueViolation, registration_id: str):
        constraint = error.diag.constraint_name
        if constraint == IDENTITY_NUMBER_CONSTRAINT:
            raise DuplicateIdentityConflict(
                "Identity number already issued",
                registration_id=registration_id,
            ) from error
        if constraint == "registration_record_pkey":
            raise ValidationError(
                f"Registration {registration_id} already exists",
                registration_id=registration_id,
            ) from error
        logger.error(f"Unexpected unique violation on {constraint}: {error}")
        raise error
