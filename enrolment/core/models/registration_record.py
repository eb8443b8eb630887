"""
RegistrationRecord model: one record per enrollee and its pipeline status.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegistrationStatus(str, Enum):
    """Closed set of registration statuses."""

    PENDING_VERIFICATION = "pending_verification"
    APPROVED_FOR_BIOMETRIC = "approved_for_biometric"
    CORRECTION_REQUESTED = "correction_requested"
    BIOMETRICS_VERIFIED = "biometrics_verified"
    FLAGGED_DUPLICATE = "flagged_duplicate"
    ACTIVE_VERIFIED = "active_verified"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RegistrationStatus.ACTIVE_VERIFIED, RegistrationStatus.REJECTED})

CORRECTION_ORIGINS = frozenset(
    {RegistrationStatus.PENDING_VERIFICATION, RegistrationStatus.APPROVED_FOR_BIOMETRIC}
)


class BiometricStatus(str, Enum):
    """Outcome of the most recent capture attempt."""

    NONE = "none"
    PARTIAL = "partial"
    CAPTURED = "captured"
    QUALITY_CHECK_FAILED = "quality_check_failed"


class RegistrationRecord(BaseModel):
    """
    Durable registration record.

    Attributes:
        id: Opaque, immutable registration identifier
        status: Current pipeline status
        biometric_status: Evaluation of the latest capture attempt
        identity_number: Issued identity number (only when active_verified)
        verification_token_hash: SHA-256 of the verification token handed out at issuance
        issued_at: When the identity number was issued
        scheduled_capture_at: Appointment for biometric capture
        correction_fields: Demographic fields awaiting correction
        correction_origin: Status the correction was requested from; the record returns there
        resolution_notes: Free text from rejection, duplicate flagging or resolution
        demographics: Demographic data captured at intake
        version: Optimistic concurrency token, bumped on every write
        created_at: When the record was created
        updated_at: Last successful write
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    status: RegistrationStatus = RegistrationStatus.PENDING_VERIFICATION
    biometric_status: BiometricStatus = BiometricStatus.NONE
    identity_number: str | None = None
    verification_token_hash: str | None = None
    issued_at: datetime | None = None
    scheduled_capture_at: datetime | None = None
    correction_fields: list[str] = Field(default_factory=list)
    correction_origin: RegistrationStatus | None = None
    resolution_notes: str | None = None
    demographics: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("correction_fields")
    @classmethod
    def dedupe_correction_fields(cls, v: list[str]) -> list[str]:
        """Correction fields behave as a set; keep first-seen order."""
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def check_invariants(self) -> "RegistrationRecord":
        """Reject any state that breaks the record invariants."""
        is_active = self.status == RegistrationStatus.ACTIVE_VERIFIED
        if is_active != (self.identity_number is not None):
            raise ValueError(
                "identity_number must be set if and only if status is active_verified "
                f"(status={self.status.value}, identity_number={self.identity_number!r})"
            )
        if self.correction_fields and self.status != RegistrationStatus.CORRECTION_REQUESTED:
            raise ValueError(
                "correction_fields may only be non-empty while status is correction_requested"
            )
        if self.correction_origin is not None:
            if self.status != RegistrationStatus.CORRECTION_REQUESTED:
                raise ValueError("correction_origin may only be set while status is correction_requested")
            if self.correction_origin not in CORRECTION_ORIGINS:
                raise ValueError(
                    f"correction_origin must be one of {sorted(s.value for s in CORRECTION_ORIGINS)}"
                )
        return self

    def evolve(self, **changes: Any) -> "RegistrationRecord":
        """
        Return a copy with ``changes`` applied, re-running validation.

        ``model_copy(update=...)`` skips validators, so invariants would not be
        checked on the new state.
        """
        return type(self).model_validate({**self.model_dump(), **changes})

    class Config:
        json_schema_extra = {
            "example": {
                "id": "0f8c7a0e-3f6b-4b8a-9d38-5c1d7f0b2a11",
                "status": "active_verified",
                "biometric_status": "captured",
                "identity_number": "482915730260",
                "scheduled_capture_at": "2026-02-03T09:30:00Z",
                "correction_fields": [],
                "correction_origin": None,
                "resolution_notes": None,
                "demographics": {
                    "first_name": "Amina",
                    "last_name": "Yusuf",
                    "date_of_birth": "1991-04-12"
                },
                "version": 5
            }
        }
