"""
Core data models for the identity enrolment registry.

All models use Pydantic for runtime validation and type safety.
"""

from .audit_event import AuditEvent, AuditEventType
from .biometric import (
    CANONICAL_FINGER_POSITIONS,
    BiometricRecord,
    BiometricSample,
    BiometricSampleSet,
    DedupStatus,
    FingerPosition,
    Modality,
    hash_template,
)
from .registration_record import (
    CORRECTION_ORIGINS,
    TERMINAL_STATUSES,
    BiometricStatus,
    RegistrationRecord,
    RegistrationStatus,
    utcnow,
)
from .results import (
    CaptureOutcome,
    CommandResult,
    DedupVerdict,
    IssuedIdentity,
    QualityResult,
    RegistrationView,
    SampleQuality,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "BiometricRecord",
    "BiometricSample",
    "BiometricSampleSet",
    "BiometricStatus",
    "CANONICAL_FINGER_POSITIONS",
    "CORRECTION_ORIGINS",
    "CaptureOutcome",
    "CommandResult",
    "DedupStatus",
    "DedupVerdict",
    "FingerPosition",
    "IssuedIdentity",
    "Modality",
    "QualityResult",
    "RegistrationRecord",
    "RegistrationStatus",
    "RegistrationView",
    "SampleQuality",
    "TERMINAL_STATUSES",
    "hash_template",
    "utcnow",
]
