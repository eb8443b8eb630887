"""
Integration tests for the PostgreSQL record store and audit sink.

Runs against a real PostgreSQL in a testcontainer; the schema comes from the
bundled schema.sql.
"""

import threading
from datetime import timedelta

import pytest

from enrolment.core.errors import (
    DuplicateIdentityConflict,
    NotFound,
    PreconditionFailed,
    StoreConflict,
    ValidationError,
)
from enrolment.core.models import (
    AuditEventType,
    BiometricRecord,
    BiometricStatus,
    DedupStatus,
    FingerPosition,
    Modality,
    RegistrationRecord,
    RegistrationStatus,
    hash_template,
    utcnow,
)
from enrolment.core.workflow import IdentityIssuer, is_valid_identity_number
from enrolment.store.audit import PostgresAuditSink, get_audit_summary
from enrolment.store.record_store import PostgresRegistrationStore

from support import DEMOGRAPHICS, FakeIdentifier, FakeScorer, build_machine, duplicate_verdict, full_capture, future

S = RegistrationStatus
TAKEN_NUMBER = "234123412346"


@pytest.fixture
def pg_store(clean_db) -> PostgresRegistrationStore:
    return PostgresRegistrationStore(clean_db)


@pytest.fixture
def pg_audit(clean_db) -> PostgresAuditSink:
    return PostgresAuditSink(clean_db)


def fingerprint_record(registration_id: str, attempt: str, position: FingerPosition) -> BiometricRecord:
    return BiometricRecord(
        registration_id=registration_id,
        capture_attempt_id=attempt,
        modality=Modality.FINGERPRINT,
        position=position,
        quality_score=75.5,
        template_hash=hash_template(f"tpl-{position.value}"),
        captured_by="admin-07",
    )


# =======================
# RECORD STORE
# =======================

@pytest.mark.integration
class TestPostgresRegistrationStore:
    """Tests for PostgresRegistrationStore"""

    def test_insert_and_get(self, pg_store):
        record = pg_store.insert(RegistrationRecord(demographics=DEMOGRAPHICS))

        loaded = pg_store.get(record.id)

        assert loaded.id == record.id
        assert loaded.status == S.PENDING_VERIFICATION
        assert loaded.biometric_status == BiometricStatus.NONE
        assert loaded.demographics == DEMOGRAPHICS
        assert loaded.correction_fields == []
        assert loaded.version == 0
        assert loaded.created_at == record.created_at

    def test_get_missing(self, pg_store):
        with pytest.raises(NotFound):
            pg_store.get("does-not-exist")

    def test_duplicate_insert(self, pg_store):
        record = pg_store.insert(RegistrationRecord())
        with pytest.raises(ValidationError):
            pg_store.insert(RegistrationRecord(id=record.id))

    def test_conditional_update(self, pg_store):
        record = pg_store.insert(RegistrationRecord(demographics=DEMOGRAPHICS))

        updated = pg_store.conditional_update(
            record.id,
            S.PENDING_VERIFICATION,
            lambda r: r.evolve(status=S.CORRECTION_REQUESTED, correction_fields=["last_name", "phone"]),
            expected_version=0,
        )

        assert updated.version == 1
        loaded = pg_store.get(record.id)
        assert loaded.status == S.CORRECTION_REQUESTED
        assert loaded.correction_fields == ["last_name", "phone"]
        assert loaded.updated_at == updated.updated_at

    def test_correction_origin_round_trip(self, pg_store):
        record = pg_store.insert(RegistrationRecord(demographics=DEMOGRAPHICS))

        pg_store.conditional_update(
            record.id,
            S.PENDING_VERIFICATION,
            lambda r: r.evolve(
                status=S.CORRECTION_REQUESTED, correction_fields=["phone"], correction_origin=r.status
            ),
        )

        assert pg_store.get(record.id).correction_origin == S.PENDING_VERIFICATION

    def test_conditional_update_stale_status(self, pg_store):
        record = pg_store.insert(RegistrationRecord())

        with pytest.raises(StoreConflict) as exc_info:
            pg_store.conditional_update(
                record.id, S.APPROVED_FOR_BIOMETRIC, lambda r: r.evolve(status=S.REJECTED)
            )

        assert exc_info.value.actual_status == "pending_verification"
        assert pg_store.get(record.id).status == S.PENDING_VERIFICATION

    def test_conditional_update_stale_version(self, pg_store):
        record = pg_store.insert(RegistrationRecord())
        pg_store.conditional_update(
            record.id,
            S.PENDING_VERIFICATION,
            lambda r: r.evolve(resolution_notes="checked"),
            expected_version=0,
        )

        with pytest.raises(StoreConflict):
            pg_store.conditional_update(
                record.id,
                S.PENDING_VERIFICATION,
                lambda r: r.evolve(status=S.APPROVED_FOR_BIOMETRIC),
                expected_version=0,
            )
        assert pg_store.get(record.id).version == 1

    def test_conditional_update_missing(self, pg_store):
        with pytest.raises(NotFound):
            pg_store.conditional_update("does-not-exist", S.PENDING_VERIFICATION, lambda r: r)

    def test_identity_numbers_are_unique(self, pg_store):
        pg_store.insert(RegistrationRecord(status=S.ACTIVE_VERIFIED, identity_number=TAKEN_NUMBER))
        record = pg_store.insert(RegistrationRecord(status=S.BIOMETRICS_VERIFIED))

        with pytest.raises(DuplicateIdentityConflict):
            pg_store.conditional_update(
                record.id,
                S.BIOMETRICS_VERIFIED,
                lambda r: r.evolve(status=S.ACTIVE_VERIFIED, identity_number=TAKEN_NUMBER),
            )

        # Transaction rolled back
        loaded = pg_store.get(record.id)
        assert loaded.status == S.BIOMETRICS_VERIFIED
        assert loaded.version == 0

    def test_biometric_records(self, pg_store):
        record = pg_store.insert(RegistrationRecord(status=S.APPROVED_FOR_BIOMETRIC))
        positions = [FingerPosition.RIGHT_THUMB, FingerPosition.RIGHT_INDEX]

        stored = pg_store.insert_biometric_records(
            [fingerprint_record(record.id, "attempt-1", p) for p in positions]
        )
        pg_store.insert_biometric_records([fingerprint_record(record.id, "attempt-2", FingerPosition.LEFT_THUMB)])

        assert all(r.biometric_id is not None for r in stored)
        assert stored[0].biometric_id < stored[1].biometric_id
        assert pg_store.mark_dedup_status(record.id, "attempt-1", DedupStatus.UNIQUE) == 2

        loaded = pg_store.list_biometric_records(record.id)
        assert [r.position for r in loaded] == positions + [FingerPosition.LEFT_THUMB]
        assert [r.dedup_status for r in loaded] == [DedupStatus.UNIQUE, DedupStatus.UNIQUE, DedupStatus.PENDING]
        assert loaded[0].template_hash == hash_template("tpl-right_thumb")

    def test_insert_no_biometric_records(self, pg_store):
        assert pg_store.insert_biometric_records([]) == []

    def test_list_and_count(self, pg_store):
        first = pg_store.insert(RegistrationRecord(created_at=utcnow() - timedelta(minutes=5)))
        second = pg_store.insert(RegistrationRecord())
        pg_store.insert(RegistrationRecord(status=S.REJECTED))

        pending = pg_store.list_registrations(status=S.PENDING_VERIFICATION)
        assert [r.id for r in pending] == [first.id, second.id]
        assert len(pg_store.list_registrations(limit=2)) == 2

        counts = pg_store.count_by_status()
        assert counts["pending_verification"] == 2
        assert counts["rejected"] == 1
        assert counts["active_verified"] == 0

    def test_identity_issuer_retries_collision(self, pg_store):
        pg_store.insert(RegistrationRecord(status=S.ACTIVE_VERIFIED, identity_number=TAKEN_NUMBER))
        record = pg_store.insert(RegistrationRecord(status=S.BIOMETRICS_VERIFIED))
        numbers = iter([TAKEN_NUMBER, "482915730260"])

        issued = IdentityIssuer(pg_store, number_generator=lambda: next(numbers)).issue(record.id)

        assert issued.attempts == 2
        loaded = pg_store.get(record.id)
        assert loaded.identity_number == "482915730260"
        assert loaded.verification_token_hash is not None
        assert loaded.verification_token_hash != issued.verification_token


# =======================
# AUDIT SINK
# =======================

@pytest.mark.integration
class TestPostgresAuditSink:
    """Tests for PostgresAuditSink and the audit query helpers"""

    def test_record_and_query(self, pg_audit, clean_db):
        now = utcnow()
        pg_audit.record("reg-1", "registration_created", "admin-07", {"to_status": "pending_verification"}, now)
        pg_audit.record("reg-2", "registration_created", None, {}, now)
        pg_audit.record(
            "reg-1", "approved_for_biometric", "admin-07",
            {"from_status": "pending_verification", "to_status": "approved_for_biometric"},
            now + timedelta(seconds=1),
        )

        events = pg_audit.events_for("reg-1")

        assert [e.event_type for e in events] == [
            AuditEventType.REGISTRATION_CREATED,
            AuditEventType.APPROVED_FOR_BIOMETRIC,
        ]
        assert events[0].payload == {"to_status": "pending_verification"}
        assert events[0].actor_id == "admin-07"
        assert events[0].created_at == now
        assert len(pg_audit.events_for("reg-1", limit=1)) == 1

    def test_audit_summary(self, pg_audit, clean_db):
        now = utcnow()
        pg_audit.record("reg-1", "registration_created", None, {}, now)
        pg_audit.record("reg-1", "approved_for_biometric", None, {}, now)
        pg_audit.record("reg-2", "registration_created", None, {}, now)

        summary = get_audit_summary(clean_db)
        assert summary["total_events"] == 3
        assert summary["registrations_touched"] == 2
        assert summary["events_by_type"] == {"registration_created": 2, "approved_for_biometric": 1}

        single = get_audit_summary(clean_db, registration_id="reg-2")
        assert single == {
            "total_events": 1,
            "registrations_touched": 1,
            "events_by_type": {"registration_created": 1},
        }


# =======================
# STATE MACHINE OVER POSTGRESQL
# =======================

@pytest.mark.integration
class TestStateMachineOnPostgres:
    """Full lifecycles with PostgreSQL as the record store and audit sink"""

    def test_happy_path(self, pg_store, pg_audit):
        identifier = FakeIdentifier()
        machine = build_machine(store=pg_store, identifier=identifier, audit_sink=pg_audit)

        registration_id = machine.register(DEMOGRAPHICS, actor_id="admin-07").registration_id
        machine.approve_for_biometric(registration_id, actor_id="admin-07")
        machine.schedule_biometric(registration_id, future(), actor_id="admin-07")
        outcome = machine.submit_capture(registration_id, full_capture(), actor_id="admin-07")
        issued = machine.issue_identity(registration_id, actor_id="admin-07")

        assert outcome.outcome == "unique"
        assert is_valid_identity_number(issued.identity_number)

        view = machine.get_registration(registration_id)
        assert view.record.status == S.ACTIVE_VERIFIED
        assert view.record.identity_number == issued.identity_number
        assert view.record.scheduled_capture_at is not None
        assert len(view.biometric_records) == 12
        assert {r.dedup_status for r in view.biometric_records} == {DedupStatus.UNIQUE}

        trail = machine.audit_trail(registration_id)
        assert [e.event_type for e in trail] == [
            AuditEventType.REGISTRATION_CREATED,
            AuditEventType.APPROVED_FOR_BIOMETRIC,
            AuditEventType.BIOMETRIC_SCHEDULED,
            AuditEventType.CAPTURE_UNIQUE,
            AuditEventType.IDENTITY_ISSUED,
        ]
        assert trail[-1].payload["identity_number"] == "XXXXXXXX" + issued.identity_number[-4:]

    def test_duplicate_flagged_and_resolved(self, pg_store, pg_audit):
        identifier = FakeIdentifier(duplicate_verdict())
        machine = build_machine(store=pg_store, identifier=identifier, audit_sink=pg_audit)
        registration_id = machine.register(DEMOGRAPHICS).registration_id
        machine.approve_for_biometric(registration_id)

        outcome = machine.submit_capture(registration_id, full_capture())
        assert outcome.status == S.FLAGGED_DUPLICATE
        assert {r.dedup_status for r in pg_store.list_biometric_records(registration_id)} == {
            DedupStatus.DUPLICATE_FOUND
        }

        result = machine.resolve_duplicate(registration_id, "merge", note="same person")
        assert result.status == S.REJECTED
        assert pg_store.get(registration_id).resolution_notes == "merge: same person"

    def test_quality_failure_keeps_status(self, pg_store, pg_audit):
        machine = build_machine(
            store=pg_store, scorer=FakeScorer(scores={"face": 30.0}), audit_sink=pg_audit
        )
        registration_id = machine.register(DEMOGRAPHICS).registration_id
        machine.approve_for_biometric(registration_id)

        outcome = machine.submit_capture(registration_id, full_capture())

        record = pg_store.get(registration_id)
        assert outcome.outcome == "quality_check_failed"
        assert record.status == S.APPROVED_FOR_BIOMETRIC
        assert record.biometric_status == BiometricStatus.QUALITY_CHECK_FAILED

    def test_statistics(self, pg_store, pg_audit):
        machine = build_machine(store=pg_store, audit_sink=pg_audit)
        for _ in range(3):
            machine.register(DEMOGRAPHICS)

        stats = machine.registration_statistics()

        assert stats["total"] == 3
        assert stats["by_status"]["pending_verification"] == 3

    @pytest.mark.slow
    def test_concurrent_issuance_issues_once(self, pg_store, pg_audit):
        identifier = FakeIdentifier()
        machine = build_machine(store=pg_store, identifier=identifier, audit_sink=pg_audit)
        registration_id = machine.register(DEMOGRAPHICS).registration_id
        machine.approve_for_biometric(registration_id)
        machine.submit_capture(registration_id, full_capture())

        callers = 6
        barrier = threading.Barrier(callers)
        issued, lost, unexpected = [], [], []

        def issue():
            barrier.wait()
            try:
                issued.append(machine.issue_identity(registration_id))
            except PreconditionFailed as e:
                lost.append(e)
            except Exception as e:
                unexpected.append(e)

        threads = [threading.Thread(target=issue) for _ in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert unexpected == []
        assert len(issued) == 1
        assert len(lost) == callers - 1
        assert all(e.details["current_status"] == "active_verified" for e in lost)
        assert pg_store.get(registration_id).identity_number == issued[0].identity_number
