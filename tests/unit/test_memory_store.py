"""
Unit tests for the in-memory record store and audit sink.
"""

import pytest

from enrolment.core.errors import DuplicateIdentityConflict, NotFound, StoreConflict, ValidationError
from enrolment.core.models import (
    AuditEventType,
    BiometricRecord,
    DedupStatus,
    Modality,
    RegistrationRecord,
    RegistrationStatus,
    hash_template,
    utcnow,
)
from enrolment.store import InMemoryAuditSink

S = RegistrationStatus


def approve(record: RegistrationRecord) -> RegistrationRecord:
    return record.evolve(status=S.APPROVED_FOR_BIOMETRIC)


def biometric(registration_id: str, attempt: str, handle: str) -> BiometricRecord:
    return BiometricRecord(
        registration_id=registration_id,
        capture_attempt_id=attempt,
        modality=Modality.FACE,
        quality_score=80.0,
        template_hash=hash_template(handle),
    )


@pytest.mark.unit
class TestInMemoryRegistrationStore:
    """Tests for InMemoryRegistrationStore"""

    def test_insert_and_get(self, store):
        record = store.insert(RegistrationRecord(demographics={"first_name": "Amina"}))
        assert store.get(record.id) == record

    def test_get_missing(self, store):
        with pytest.raises(NotFound):
            store.get("missing")

    def test_duplicate_insert(self, store):
        record = store.insert(RegistrationRecord())
        with pytest.raises(ValidationError):
            store.insert(record)

    def test_conditional_update_bumps_version(self, store):
        record = store.insert(RegistrationRecord())

        updated = store.conditional_update(record.id, S.PENDING_VERIFICATION, approve, expected_version=0)

        assert updated.status == S.APPROVED_FOR_BIOMETRIC
        assert updated.version == 1
        assert updated.updated_at >= record.updated_at
        assert store.get(record.id) == updated

    def test_conditional_update_wrong_status(self, store):
        record = store.insert(RegistrationRecord())

        with pytest.raises(StoreConflict) as exc_info:
            store.conditional_update(record.id, S.APPROVED_FOR_BIOMETRIC, approve)

        assert exc_info.value.actual_status == "pending_verification"
        assert store.get(record.id).version == 0

    def test_conditional_update_stale_version(self, store):
        record = store.insert(RegistrationRecord())
        store.conditional_update(
            record.id, S.PENDING_VERIFICATION, lambda r: r.evolve(resolution_notes="checked")
        )

        with pytest.raises(StoreConflict) as exc_info:
            store.conditional_update(record.id, S.PENDING_VERIFICATION, approve, expected_version=0)

        assert exc_info.value.actual_version == 1
        assert store.get(record.id).status == S.PENDING_VERIFICATION

    def test_mutator_cannot_change_id(self, store):
        record = store.insert(RegistrationRecord())
        with pytest.raises(ValueError):
            store.conditional_update(record.id, S.PENDING_VERIFICATION, lambda r: r.evolve(id="other"))

    def test_identity_numbers_are_unique(self, store):
        store.insert(RegistrationRecord(status=S.ACTIVE_VERIFIED, identity_number="234123412346"))
        record = store.insert(RegistrationRecord(status=S.BIOMETRICS_VERIFIED))

        with pytest.raises(DuplicateIdentityConflict):
            store.conditional_update(
                record.id,
                S.BIOMETRICS_VERIFIED,
                lambda r: r.evolve(status=S.ACTIVE_VERIFIED, identity_number="234123412346"),
            )

        assert store.get(record.id).status == S.BIOMETRICS_VERIFIED

    def test_biometric_records(self, store):
        record = store.insert(RegistrationRecord())

        stored = store.insert_biometric_records([
            biometric(record.id, "attempt-1", "a"),
            biometric(record.id, "attempt-1", "b"),
            biometric(record.id, "attempt-2", "c"),
        ])

        assert [r.biometric_id for r in stored] == [1, 2, 3]
        assert store.mark_dedup_status(record.id, "attempt-1", DedupStatus.UNIQUE) == 2
        statuses = [r.dedup_status for r in store.list_biometric_records(record.id)]
        assert statuses == [DedupStatus.UNIQUE, DedupStatus.UNIQUE, DedupStatus.PENDING]
        assert store.list_biometric_records("someone-else") == []

    def test_list_and_count(self, store):
        first = store.insert(RegistrationRecord())
        second = store.insert(RegistrationRecord())
        store.conditional_update(second.id, S.PENDING_VERIFICATION, approve)

        assert [r.id for r in store.list_registrations()] == [first.id, second.id]
        assert [r.id for r in store.list_registrations(status=S.APPROVED_FOR_BIOMETRIC)] == [second.id]
        assert len(store.list_registrations(limit=1)) == 1

        counts = store.count_by_status()
        assert counts["pending_verification"] == 1
        assert counts["approved_for_biometric"] == 1
        assert set(counts) == {s.value for s in S}


@pytest.mark.unit
class TestInMemoryAuditSink:
    """Tests for InMemoryAuditSink"""

    def test_record_and_query(self):
        sink = InMemoryAuditSink()
        now = utcnow()
        sink.record("reg-1", "registration_created", "admin-07", {"to_status": "pending_verification"}, now)
        sink.record("reg-2", "registration_created", None, {}, now)
        sink.record("reg-1", "approved_for_biometric", "admin-07", {}, now)

        events = sink.events_for("reg-1")

        assert [e.event_type for e in events] == [
            AuditEventType.REGISTRATION_CREATED,
            AuditEventType.APPROVED_FOR_BIOMETRIC,
        ]
        assert [e.event_id for e in events] == [1, 3]
        assert events[0].created_at == now
        assert len(sink.events_for("reg-1", limit=1)) == 1

    def test_unknown_event_type(self):
        with pytest.raises(ValueError):
            InMemoryAuditSink().record("reg-1", "teleported", None, {}, utcnow())
