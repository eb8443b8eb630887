"""
Test doubles and builders shared by unit, integration and e2e tests.

Kept out of conftest.py so hypothesis tests can build fresh machines per
example instead of relying on function-scoped fixtures.
"""
import threading
from datetime import timedelta

from enrolment.core.errors import ServiceUnavailable
from enrolment.core.models import (
    CANONICAL_FINGER_POSITIONS,
    BiometricRecord,
    BiometricSample,
    DedupVerdict,
    FingerPosition,
    Modality,
    RegistrationStatus,
    utcnow,
)
from enrolment.core.workflow import RegistrationStateMachine
from enrolment.services import DeduplicationCoordinator, IdentificationClient, QualityGate, QualityScorer
from enrolment.store import AuditSink, InMemoryAuditSink, InMemoryRegistrationStore

DEMOGRAPHICS = {
    "first_name": "Amina",
    "last_name": "Yusuf",
    "date_of_birth": "1991-04-12",
    "nationality": "KE",
}


# =======================
# FAKE SERVICES
# =======================

class FakeScorer(QualityScorer):
    """Scores every sample ``default`` unless its label has an override."""

    def __init__(self, default: float = 90.0, scores: dict[str, float] | None = None):
        self.default = default
        self.scores = dict(scores or {})
        self.error: Exception | None = None
        self.calls = 0
        self._lock = threading.Lock()

    def score(self, sample: BiometricSample) -> float:
        with self._lock:
            self.calls += 1
        if self.error is not None:
            raise self.error
        return self.scores.get(sample.label, self.default)

    def fail_with(self, message: str = "connection refused") -> None:
        self.error = ServiceUnavailable("quality_service", message, reason="transport")


class FakeIdentifier(IdentificationClient):
    """Returns ``verdict`` for every call; records what it was sent."""

    def __init__(self, verdict: DedupVerdict | None = None):
        self.verdict = verdict or DedupVerdict(duplicate_found=False)
        self.error: Exception | None = None
        self.calls: list[tuple[str, list[BiometricRecord]]] = []

    def identify(self, registration_id: str, templates: list[BiometricRecord]) -> DedupVerdict:
        self.calls.append((registration_id, templates))
        if self.error is not None:
            raise self.error
        return self.verdict

    def fail_with(self, message: str = "identify timed out after 30.0s") -> None:
        self.error = ServiceUnavailable("identification_service", message, reason="timeout")


class FailingAuditSink(AuditSink):
    """Audit sink whose every delivery fails."""

    def __init__(self):
        self.attempts = 0

    def record(self, registration_id, event_type, actor_id, payload, timestamp) -> None:
        self.attempts += 1
        raise RuntimeError("audit store unreachable")


def duplicate_verdict(confidence: float = 92.0, matched_id: str = "reg-existing-0001") -> DedupVerdict:
    return DedupVerdict(duplicate_found=True, match_confidence=confidence, matched_id=matched_id)


# =======================
# SAMPLE BUILDERS
# =======================

def fingerprint(position: FingerPosition, handle: str | None = None) -> dict:
    return {
        "modality": "fingerprint",
        "position": position.value,
        "template_handle": handle or f"tpl-{position.value}",
    }


def full_capture(tag: str = "a") -> list[dict]:
    """Face, signature and all ten fingerprints."""
    samples = [
        {"modality": "face", "template_handle": f"tpl-face-{tag}"},
        {"modality": "signature", "template_handle": f"tpl-signature-{tag}"},
    ]
    samples.extend(fingerprint(p, f"tpl-{p.value}-{tag}") for p in CANONICAL_FINGER_POSITIONS)
    return samples


def capture_without(*positions: FingerPosition, tag: str = "a") -> list[dict]:
    """Complete capture minus the given finger positions."""
    skipped = {p.value for p in positions}
    return [s for s in full_capture(tag) if s.get("position") not in skipped]


def capture_without_modality(modality: Modality, tag: str = "a") -> list[dict]:
    return [s for s in full_capture(tag) if s["modality"] != modality.value]


def future(hours: int = 48):
    return utcnow() + timedelta(hours=hours)


# =======================
# MACHINE BUILDERS
# =======================

def build_machine(
    store=None,
    scorer: QualityScorer | None = None,
    identifier: IdentificationClient | None = None,
    audit_sink: AuditSink | None = None,
    workers: int = 1,
    **kwargs,
) -> RegistrationStateMachine:
    """State machine over in-memory collaborators unless others are given."""
    return RegistrationStateMachine(
        store=store if store is not None else InMemoryRegistrationStore(),
        quality_gate=QualityGate(scorer or FakeScorer(), workers=workers),
        coordinator=DeduplicationCoordinator(identifier or FakeIdentifier()),
        audit_sink=audit_sink if audit_sink is not None else InMemoryAuditSink(),
        **kwargs,
    )


def advance_to(
    machine: RegistrationStateMachine,
    identifier: FakeIdentifier,
    status: RegistrationStatus,
    actor_id: str = "admin-07",
) -> str:
    """
    Register a fresh enrollee and drive it to ``status``.

    Returns:
        The registration id
    """
    S = RegistrationStatus
    registration_id = machine.register(DEMOGRAPHICS, actor_id=actor_id).registration_id
    if status == S.PENDING_VERIFICATION:
        return registration_id
    if status == S.REJECTED:
        machine.reject(registration_id, "incomplete documents", actor_id=actor_id)
        return registration_id
    machine.approve_for_biometric(registration_id, actor_id=actor_id)
    if status == S.APPROVED_FOR_BIOMETRIC:
        return registration_id
    if status == S.CORRECTION_REQUESTED:
        machine.request_correction(registration_id, ["last_name"], actor_id=actor_id)
        return registration_id

    previous = identifier.verdict
    if status == S.FLAGGED_DUPLICATE:
        identifier.verdict = duplicate_verdict()
    try:
        machine.submit_capture(registration_id, full_capture(registration_id[:8]), actor_id=actor_id)
    finally:
        identifier.verdict = previous
    if status in (S.BIOMETRICS_VERIFIED, S.FLAGGED_DUPLICATE):
        return registration_id

    machine.issue_identity(registration_id, actor_id=actor_id)
    return registration_id
