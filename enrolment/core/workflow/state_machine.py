"""
Registration state machine.

Orchestrates every command on a registration record: validates the payload,
checks the source status against the transition table, drives the quality
gate and deduplication coordinator, writes with one conditional update and
emits an audit event.
"""

import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import pydantic

from enrolment.core.config import EnrolmentSettings
from enrolment.core.errors import (
    AuditUnavailable,
    EnrolmentError,
    PreconditionFailed,
    StoreConflict,
    ValidationError,
)
from enrolment.core.models import (
    AuditEvent,
    AuditEventType,
    BiometricRecord,
    BiometricSample,
    BiometricSampleSet,
    BiometricStatus,
    CaptureOutcome,
    CommandResult,
    DedupStatus,
    DedupVerdict,
    IssuedIdentity,
    RegistrationRecord,
    RegistrationStatus,
    RegistrationView,
    hash_template,
    utcnow,
)
from enrolment.observability.audit_emitter import AuditEmitter
from enrolment.observability.logger import get_logger, log_operation
from enrolment.observability.metrics import (
    capture_outcomes_total,
    command_duration_seconds,
    commands_total,
    increment_counter,
    record_transition,
    track_duration,
)
from enrolment.services.deduplication import DeduplicationCoordinator, HttpIdentificationClient
from enrolment.services.quality_gate import HttpQualityScorer, QualityGate
from enrolment.store.base import AuditSink, RegistrationStore
from enrolment.utils.validation import (
    validate_actor_id,
    validate_correction_fields,
    validate_demographics,
    validate_limit,
    validate_registration_id,
    validate_text,
)

from .completeness import evaluate_completeness
from .identity_issuer import IdentityIssuer
from .transitions import check_target, get_transition, require_transition

logger = get_logger(__name__)

DUPLICATE_DECISIONS: tuple[str, ...] = ("approve", "reject", "merge")


def _mask_identity_number(identity_number: str, show_last: int = 4) -> str:
    return "X" * (len(identity_number) - show_last) + identity_number[-show_last:]


class RegistrationStateMachine:
    """
    Owns every legal transition of a registration record.

    Usage:
        machine = RegistrationStateMachine(store, gate, coordinator, audit_sink=sink)
        result = machine.register({"first_name": "Amina", ...}, actor_id="admin-07")
        machine.approve_for_biometric(result.registration_id, actor_id="admin-07")
    """

    def __init__(
        self,
        store: RegistrationStore,
        quality_gate: QualityGate,
        coordinator: DeduplicationCoordinator,
        audit_sink: AuditSink | None = None,
        issuer: IdentityIssuer | None = None,
        max_issuance_attempts: int = 5,
    ):
        """
        Initialize the state machine.

        Args:
            store: Registration record store
            quality_gate: Scores every sample of a capture attempt
            coordinator: Runs deduplication for complete attempts
            audit_sink: Receives one event per transition (optional)
            issuer: Identity issuer (defaults to one bound to ``store``)
            max_issuance_attempts: Collision retries for the default issuer
        """
        self.store = store
        self.quality_gate = quality_gate
        self.coordinator = coordinator
        self.audit_sink = audit_sink
        self.audit = AuditEmitter(audit_sink)
        self.issuer = issuer or IdentityIssuer(store, max_attempts=max_issuance_attempts)

    @classmethod
    def from_settings(
        cls,
        settings: EnrolmentSettings,
        store: RegistrationStore,
        audit_sink: AuditSink | None = None,
    ) -> "RegistrationStateMachine":
        """Wire the HTTP service clients described by ``settings``."""
        quality = settings.quality_service
        identification = settings.identification_service
        return cls(
            store=store,
            quality_gate=QualityGate(
                HttpQualityScorer(quality.url, quality.timeout_seconds),
                workers=quality.workers,
            ),
            coordinator=DeduplicationCoordinator(
                HttpIdentificationClient(identification.url, identification.timeout_seconds)
            ),
            audit_sink=audit_sink,
            max_issuance_attempts=settings.issuance.max_attempts,
        )

    # =======================
    # COMMANDS
    # =======================

    def register(self, demographics: dict[str, Any], actor_id: str | None = None) -> CommandResult:
        """
        Create a record in ``pending_verification``.

        Raises:
            ValidationError: If demographics are invalid
        """
        with self._command("register"):
            actor_id = validate_actor_id(actor_id)
            record = RegistrationRecord(demographics=validate_demographics(demographics))
            record = self.store.insert(record)

            logger.info(
                f"Registered {record.id}",
                extra={"registration_id": record.id, "command": "register",
                       "to_status": record.status.value},
            )
            self.audit.emit(
                record.id,
                AuditEventType.REGISTRATION_CREATED,
                actor_id=actor_id,
                to_status=record.status,
            )
            return self._result("register", record, record)

    def approve_for_biometric(self, registration_id: str, actor_id: str | None = None) -> CommandResult:
        """
        pending_verification -> approved_for_biometric.

        Raises:
            NotFound: If the record does not exist
            PreconditionFailed: If the record is not pending verification (409)
        """
        return self._simple_transition(
            "approve_for_biometric",
            registration_id,
            actor_id,
            target=RegistrationStatus.APPROVED_FOR_BIOMETRIC,
            event_type=AuditEventType.APPROVED_FOR_BIOMETRIC,
        )

    def request_correction(
        self,
        registration_id: str,
        fields: list[str],
        note: str | None = None,
        actor_id: str | None = None,
    ) -> CommandResult:
        """
        Send a record back to the enrollee for corrections.

        Raises:
            ValidationError: If ``fields`` is empty or names an unknown field
            PreconditionFailed: If the record is neither pending nor approved (409)
        """
        with self._command("request_correction", registration_id):
            fields = validate_correction_fields(fields)
            note = validate_text(note, "note", required=False)
            return self._transition_body(
                "request_correction",
                registration_id,
                validate_actor_id(actor_id),
                target=RegistrationStatus.CORRECTION_REQUESTED,
                event_type=AuditEventType.CORRECTION_REQUESTED,
                changes=lambda r: {
                    "correction_fields": fields,
                    "correction_origin": r.status,
                    "resolution_notes": note,
                },
                payload={"fields": fields, "note": note},
            )

    def submit_correction(
        self,
        registration_id: str,
        updates: dict[str, Any],
        actor_id: str | None = None,
    ) -> CommandResult:
        """
        Apply corrected demographics and return the record to the status the
        correction was requested from.

        ``updates`` must supply a value for every field under correction and
        may not touch any other field.

        Raises:
            ValidationError: If updates are malformed or do not cover the correction fields
            PreconditionFailed: If the record is not awaiting corrections (409)
        """
        command = "submit_correction"
        with self._command(command, registration_id):
            registration_id = validate_registration_id(registration_id)
            actor_id = validate_actor_id(actor_id)
            updates = validate_demographics(updates, required=())

            current = self.store.get(registration_id)
            transition = require_transition(command, current.status)

            requested = current.correction_fields
            missing = [f for f in requested if updates.get(f) in (None, "")]
            if missing:
                raise ValidationError(
                    f"Corrections missing for: {', '.join(missing)}",
                    correction_fields=requested,
                )
            unexpected = sorted(set(updates) - set(requested))
            if unexpected:
                raise ValidationError(
                    f"Fields not under correction: {', '.join(unexpected)}",
                    correction_fields=requested,
                )

            demographics = validate_demographics({**current.demographics, **updates})
            origin = current.correction_origin or RegistrationStatus.PENDING_VERIFICATION
            target = check_target(transition, origin)
            record = self.store.conditional_update(
                registration_id,
                current.status,
                lambda r: r.evolve(
                    status=target, demographics=demographics, correction_fields=[], correction_origin=None
                ),
                expected_version=current.version,
            )
            self._after_transition(
                command, current, record, AuditEventType.CORRECTION_SUBMITTED, actor_id,
                fields=requested, returned_to=target.value,
            )
            return self._result(command, current, record)

    def reject(self, registration_id: str, reason: str, actor_id: str | None = None) -> CommandResult:
        """
        Reject a record that has not reached a terminal status.

        Raises:
            ValidationError: If ``reason`` is empty
            PreconditionFailed: If the record is already terminal (409)
        """
        with self._command("reject", registration_id):
            reason = validate_text(reason, "reason")
            return self._transition_body(
                "reject",
                registration_id,
                validate_actor_id(actor_id),
                target=RegistrationStatus.REJECTED,
                event_type=AuditEventType.REGISTRATION_REJECTED,
                changes={"resolution_notes": reason, "correction_fields": [], "correction_origin": None},
                payload={"reason": reason},
            )

    def schedule_biometric(
        self,
        registration_id: str,
        when: datetime | str,
        actor_id: str | None = None,
    ) -> CommandResult:
        """
        Record the biometric capture appointment; status is unchanged.

        Naive datetimes are taken as UTC.

        Raises:
            ValidationError: If ``when`` is not a datetime or lies in the past
            PreconditionFailed: If the record is not approved_for_biometric (400)
        """
        with self._command("schedule_biometric", registration_id):
            when = self._parse_appointment(when)
            return self._transition_body(
                "schedule_biometric",
                registration_id,
                validate_actor_id(actor_id),
                target=RegistrationStatus.APPROVED_FOR_BIOMETRIC,
                event_type=AuditEventType.BIOMETRIC_SCHEDULED,
                changes={"scheduled_capture_at": when},
                payload={"scheduled_capture_at": when},
            )

    def submit_capture(
        self,
        registration_id: str,
        samples: BiometricSampleSet | list[BiometricSample | dict[str, Any]],
        actor_id: str | None = None,
    ) -> CaptureOutcome:
        """
        Evaluate one capture attempt.

        Every sample is scored first. Then, in order:
        1. any failed sample: biometric_status -> quality_check_failed, status unchanged
        2. incomplete set: biometric_status -> partial, status unchanged
        3. complete set: samples persisted, deduplication run, then
           biometrics_verified (unique) or flagged_duplicate (duplicate)

        The write passes the version read at the start, so two concurrent
        evaluations cannot both land.

        Raises:
            ValidationError: If the sample set is malformed
            PreconditionFailed: If the record is not approved_for_biometric,
                or another write landed first (409)
            ServiceUnavailable: If quality scoring or deduplication failed; no state changes
        """
        command = "submit_capture"
        with self._command(command, registration_id):
            registration_id = validate_registration_id(registration_id)
            actor_id = validate_actor_id(actor_id)
            sample_set = self._parse_samples(samples)

            current = self.store.get(registration_id)
            transition = require_transition(command, current.status)

            sample_quality = self.quality_gate.check_all(sample_set.samples)
            completeness = evaluate_completeness(sample_set.samples)
            attempt_id = str(uuid.uuid4())
            captured_at = utcnow()
            biometric_records = [
                BiometricRecord(
                    registration_id=registration_id,
                    capture_attempt_id=attempt_id,
                    modality=sample.modality,
                    position=sample.position,
                    quality_score=quality.score,
                    template_hash=hash_template(sample.template_handle),
                    captured_by=actor_id,
                    captured_at=captured_at,
                )
                for sample, quality in zip(sample_set.samples, sample_quality)
            ]

            verdict: DedupVerdict | None = None
            changes: dict[str, Any]
            failed = [q for q in sample_quality if not q.passed]

            if failed:
                outcome = "quality_check_failed"
                event_type = AuditEventType.CAPTURE_QUALITY_FAILED
                changes = {"biometric_status": BiometricStatus.QUALITY_CHECK_FAILED}
                self.store.insert_biometric_records(biometric_records)
            elif not completeness.is_complete:
                outcome = "partial"
                event_type = AuditEventType.CAPTURE_PARTIAL
                changes = {"biometric_status": BiometricStatus.PARTIAL}
                self.store.insert_biometric_records(biometric_records)
            else:
                stored = self.store.insert_biometric_records(biometric_records)
                verdict = self.coordinator.identify(registration_id, stored)
                if verdict.duplicate_found:
                    outcome = "duplicate_found"
                    event_type = AuditEventType.DUPLICATE_FLAGGED
                    changes = {
                        "status": check_target(transition, RegistrationStatus.FLAGGED_DUPLICATE),
                        "biometric_status": BiometricStatus.CAPTURED,
                        "resolution_notes": self._duplicate_note(verdict),
                    }
                else:
                    outcome = "unique"
                    event_type = AuditEventType.CAPTURE_UNIQUE
                    changes = {
                        "status": check_target(transition, RegistrationStatus.BIOMETRICS_VERIFIED),
                        "biometric_status": BiometricStatus.CAPTURED,
                    }

            record = self.store.conditional_update(
                registration_id,
                current.status,
                lambda r: r.evolve(**changes),
                expected_version=current.version,
            )

            if verdict is not None:
                self.store.mark_dedup_status(
                    registration_id,
                    attempt_id,
                    DedupStatus.DUPLICATE_FOUND if verdict.duplicate_found else DedupStatus.UNIQUE,
                )

            increment_counter(capture_outcomes_total, outcome=outcome)
            self._after_transition(
                command, current, record, event_type, actor_id,
                outcome=outcome,
                capture_attempt_id=attempt_id,
                sample_count=len(sample_set),
                failed_samples=[
                    f"{q.modality.value}:{q.position.value}" if q.position else q.modality.value
                    for q in failed
                ],
                missing_modalities=completeness.missing_modalities,
                missing_finger_positions=completeness.missing_finger_positions,
                match_confidence=verdict.match_confidence if verdict else None,
                matched_id=verdict.matched_id if verdict else None,
            )

            return CaptureOutcome(
                registration_id=record.id,
                command=command,
                previous_status=current.status,
                status=record.status,
                biometric_status=record.biometric_status,
                record=record,
                outcome=outcome,
                capture_attempt_id=attempt_id,
                sample_quality=sample_quality,
                missing_modalities=[] if failed else completeness.missing_modalities,
                missing_finger_positions=[] if failed else completeness.missing_finger_positions,
                verdict=verdict,
            )

    def resolve_duplicate(
        self,
        registration_id: str,
        decision: str,
        note: str | None = None,
        actor_id: str | None = None,
    ) -> CommandResult:
        """
        Resolve a flagged duplicate.

        ``approve`` clears the flag (biometrics_verified). ``reject`` and
        ``merge`` both reject the record; ``merge`` is recorded as such but
        no records are merged.

        Raises:
            ValidationError: If the decision is unknown
            PreconditionFailed: If the record is not flagged_duplicate (400)
        """
        with self._command("resolve_duplicate", registration_id):
            if isinstance(decision, str):
                decision = decision.strip().lower()
            if decision not in DUPLICATE_DECISIONS:
                raise ValidationError(
                    f"Unknown duplicate decision {decision!r}",
                    allowed=list(DUPLICATE_DECISIONS),
                )
            note = validate_text(note, "note", required=False)

            if decision == "approve":
                target = RegistrationStatus.BIOMETRICS_VERIFIED
            else:
                target = RegistrationStatus.REJECTED

            return self._transition_body(
                "resolve_duplicate",
                registration_id,
                validate_actor_id(actor_id),
                target=target,
                event_type=AuditEventType.DUPLICATE_RESOLVED,
                changes={"resolution_notes": f"{decision}: {note}" if note else decision},
                payload={"decision": decision, "note": note},
            )

    def issue_identity(self, registration_id: str, actor_id: str | None = None) -> IssuedIdentity:
        """
        Issue the identity number and verification token (once per record).

        Raises:
            PreconditionFailed: If the record is not biometrics_verified, or a
                concurrent issuance won (409)
            DuplicateIdentityConflict: If every generated number collided
        """
        command = "issue_identity"
        with self._command(command, registration_id):
            registration_id = validate_registration_id(registration_id)
            actor_id = validate_actor_id(actor_id)

            current = self.store.get(registration_id)
            require_transition(command, current.status)

            issued = self.issuer.issue(registration_id)
            self._after_transition(
                command, current, issued.record, AuditEventType.IDENTITY_ISSUED, actor_id,
                identity_number=_mask_identity_number(issued.identity_number),
                attempts=issued.attempts,
            )
            return issued

    # =======================
    # READ SIDE
    # =======================

    def get_registration(self, registration_id: str) -> RegistrationView:
        """
        Record plus its biometric records.

        Raises:
            NotFound: If the record does not exist
        """
        registration_id = validate_registration_id(registration_id)
        record = self.store.get(registration_id)
        return RegistrationView(
            record=record,
            biometric_records=self.store.list_biometric_records(registration_id),
        )

    def list_registrations(
        self, status: RegistrationStatus | str | None = None, limit: int = 100
    ) -> list[RegistrationRecord]:
        """
        Review queue, oldest first.

        Raises:
            ValidationError: If the status or limit is invalid
        """
        limit = validate_limit(limit)
        if status is not None:
            try:
                status = RegistrationStatus(status)
            except ValueError:
                raise ValidationError(
                    f"Unknown status {status!r}",
                    allowed=[s.value for s in RegistrationStatus],
                )
        return self.store.list_registrations(status=status, limit=limit)

    def registration_statistics(self) -> dict[str, Any]:
        """Counts per status plus a total."""
        counts = self.store.count_by_status()
        return {"total": sum(counts.values()), "by_status": counts}

    def audit_trail(self, registration_id: str, limit: int = 100) -> list[AuditEvent]:
        """
        Audit events for one record, oldest first.

        Raises:
            NotFound: If the record does not exist
            AuditUnavailable: If no queryable audit sink is configured
        """
        registration_id = validate_registration_id(registration_id)
        limit = validate_limit(limit)
        self.store.get(registration_id)
        if self.audit_sink is None:
            raise AuditUnavailable("No audit sink configured", registration_id=registration_id)
        return self.audit_sink.events_for(registration_id, limit=limit)

    def health_check(self) -> dict[str, Any]:
        """Availability of the quality and identification services; never raises."""
        services = [
            self.quality_gate.scorer.health_check(),
            self.coordinator.client.health_check(),
        ]
        return {
            "healthy": all(s["available"] for s in services),
            "services": {s["service"]: s for s in services},
        }

    def close(self) -> None:
        """Close the external service clients."""
        self.quality_gate.scorer.close()
        self.coordinator.client.close()

    # =======================
    # INTERNALS
    # =======================

    @contextmanager
    def _command(self, command: str, registration_id: str | None = None) -> Iterator[None]:
        """Time, log and count one command; turn lost races into PreconditionFailed."""
        with track_duration(command_duration_seconds, command=command):
            try:
                with log_operation(command, logger=logger, registration_id=registration_id):
                    try:
                        yield
                    except StoreConflict as e:
                        raise self._lost_race(command, e) from e
            except EnrolmentError as e:
                increment_counter(commands_total, command=command, outcome=e.kind)
                raise
            except Exception:
                increment_counter(commands_total, command=command, outcome="internal_error")
                raise
            increment_counter(commands_total, command=command, outcome="ok")

    @staticmethod
    def _lost_race(command: str, conflict: StoreConflict) -> PreconditionFailed:
        status_code = 409
        if conflict.actual_status is not None:
            transition = get_transition(command)
            if RegistrationStatus(conflict.actual_status) not in transition.sources:
                status_code = transition.mismatch_status_code
        logger.warning(
            f"{command} lost a concurrent write on {conflict.registration_id}",
            extra={
                "registration_id": conflict.registration_id,
                "command": command,
                "expected_status": conflict.expected_status,
                "actual_status": conflict.actual_status,
            },
        )
        return PreconditionFailed(
            f"Registration changed while running {command}: now {conflict.actual_status}; "
            "re-fetch before retrying",
            current_status=conflict.actual_status,
            status_code=status_code,
            command=command,
        )

    def _simple_transition(
        self,
        command: str,
        registration_id: str,
        actor_id: str | None,
        target: RegistrationStatus,
        event_type: AuditEventType,
    ) -> CommandResult:
        with self._command(command, registration_id):
            return self._transition_body(
                command, registration_id, validate_actor_id(actor_id), target, event_type,
            )

    def _transition_body(
        self,
        command: str,
        registration_id: str,
        actor_id: str | None,
        target: RegistrationStatus,
        event_type: AuditEventType,
        changes: dict[str, Any] | Callable[[RegistrationRecord], dict[str, Any]] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> CommandResult:
        """
        Get, check the table, write conditionally, audit. Runs inside ``_command``.

        ``changes`` may be a callable taking the record as read under the lock.
        """
        registration_id = validate_registration_id(registration_id)
        current = self.store.get(registration_id)
        transition = require_transition(command, current.status)
        check_target(transition, target)

        def mutate(r: RegistrationRecord) -> RegistrationRecord:
            resolved = changes(r) if callable(changes) else (changes or {})
            return r.evolve(**{**resolved, "status": target})

        record = self.store.conditional_update(
            registration_id,
            current.status,
            mutate,
            expected_version=current.version,
        )
        self._after_transition(command, current, record, event_type, actor_id, **(payload or {}))
        return self._result(command, current, record)

    def _after_transition(
        self,
        command: str,
        before: RegistrationRecord,
        after: RegistrationRecord,
        event_type: AuditEventType,
        actor_id: str | None,
        **payload: Any,
    ) -> None:
        record_transition(before.status.value, after.status.value)
        logger.info(
            f"{command}: {before.status.value} -> {after.status.value}",
            extra={
                "registration_id": after.id,
                "command": command,
                "from_status": before.status.value,
                "to_status": after.status.value,
                "biometric_status": after.biometric_status.value,
                "version": after.version,
            },
        )
        self.audit.emit(
            after.id,
            event_type,
            actor_id=actor_id,
            timestamp=after.updated_at,
            from_status=before.status,
            to_status=after.status,
            biometric_status=after.biometric_status,
            **payload,
        )

    @staticmethod
    def _result(command: str, before: RegistrationRecord, after: RegistrationRecord) -> CommandResult:
        return CommandResult(
            registration_id=after.id,
            command=command,
            previous_status=before.status,
            status=after.status,
            biometric_status=after.biometric_status,
            record=after,
        )

    @staticmethod
    def _parse_samples(samples: Any) -> BiometricSampleSet:
        if isinstance(samples, BiometricSampleSet):
            return samples
        try:
            return BiometricSampleSet.model_validate({"samples": samples})
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid biometric sample set: {e.error_count()} error(s)",
                errors=[
                    {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                    for err in e.errors()
                ],
            ) from e

    @staticmethod
    def _parse_appointment(when: Any) -> datetime:
        if isinstance(when, str):
            raw = when.strip()
            if raw.endswith(("Z", "z")):
                raw = raw[:-1] + "+00:00"
            try:
                when = datetime.fromisoformat(raw)
            except ValueError:
                raise ValidationError(f"Appointment must be an ISO datetime, got {when!r}")
        if not isinstance(when, datetime):
            raise ValidationError("Appointment must be a datetime")
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        if when <= utcnow():
            raise ValidationError("Appointment must be in the future", scheduled_capture_at=when.isoformat())
        return when

    @staticmethod
    def _duplicate_note(verdict: DedupVerdict) -> str:
        note = "Potential duplicate"
        if verdict.match_confidence is not None:
            note += f" (match confidence {verdict.match_confidence:g}%)"
        if verdict.matched_id:
            note += f" of registration {verdict.matched_id}"
        return note
