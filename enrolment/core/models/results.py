"""
Result models returned by the quality gate, the deduplication coordinator
and the state machine commands (ephemeral, not persisted).
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .biometric import BiometricRecord, FingerPosition, Modality
from .registration_record import BiometricStatus, RegistrationRecord, RegistrationStatus


class QualityResult(BaseModel):
    """
    Quality gate verdict for one sample.

    Attributes:
        score: Score from the quality service (0-100)
        passed: Whether the score reaches the pass threshold
    """

    score: float = Field(..., ge=0.0, le=100.0)
    passed: bool


class SampleQuality(BaseModel):
    """Quality verdict tied back to the sample it was computed for."""

    modality: Modality
    position: FingerPosition | None = None
    score: float = Field(..., ge=0.0, le=100.0)
    passed: bool


class DedupVerdict(BaseModel):
    """
    Deduplication verdict from the identification service.

    Attributes:
        duplicate_found: Whether any enrolled candidate matched
        match_confidence: Confidence of the best candidate (0-100)
        matched_id: Registration id of the best candidate, if reported
    """

    duplicate_found: bool
    match_confidence: float | None = Field(None, ge=0.0, le=100.0)
    matched_id: str | None = None

    @field_validator("matched_id")
    @classmethod
    def blank_matched_id_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class CommandResult(BaseModel):
    """
    Outcome of a state machine command.

    Attributes:
        registration_id: Target registration
        command: Command name
        previous_status: Status before the command
        status: Status after the command
        biometric_status: Biometric status after the command
        record: Full record as written
    """

    registration_id: str
    command: str
    previous_status: RegistrationStatus
    status: RegistrationStatus
    biometric_status: BiometricStatus
    record: RegistrationRecord


class CaptureOutcome(CommandResult):
    """
    Outcome of submit_capture.

    Attributes:
        outcome: Which branch of the capture evaluation was taken
        capture_attempt_id: Id grouping the stored biometric records
        sample_quality: Per-sample quality verdicts
        missing_modalities: Required modalities absent from the attempt
        missing_finger_positions: Canonical finger positions absent from the attempt
        verdict: Deduplication verdict, when deduplication ran
    """

    outcome: Literal["quality_check_failed", "partial", "unique", "duplicate_found"]
    capture_attempt_id: str
    sample_quality: list[SampleQuality] = Field(default_factory=list)
    missing_modalities: list[Modality] = Field(default_factory=list)
    missing_finger_positions: list[FingerPosition] = Field(default_factory=list)
    verdict: DedupVerdict | None = None

    @property
    def failed_samples(self) -> list[SampleQuality]:
        return [s for s in self.sample_quality if not s.passed]


class IssuedIdentity(CommandResult):
    """
    Outcome of issue_identity.

    The plaintext verification token is only ever returned here; the store
    keeps its hash.
    """

    identity_number: str
    verification_token: str
    issued_at: datetime
    attempts: int = Field(1, ge=1)


class RegistrationView(BaseModel):
    """Registration record plus its biometric records, for administrative review."""

    record: RegistrationRecord
    biometric_records: list[BiometricRecord] = Field(default_factory=list)
