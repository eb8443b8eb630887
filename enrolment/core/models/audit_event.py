"""
AuditEvent model representing one immutable entry in the registration audit trail.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .registration_record import utcnow


class AuditEventType(str, Enum):
    REGISTRATION_CREATED = "registration_created"
    APPROVED_FOR_BIOMETRIC = "approved_for_biometric"
    CORRECTION_REQUESTED = "correction_requested"
    CORRECTION_SUBMITTED = "correction_submitted"
    REGISTRATION_REJECTED = "registration_rejected"
    BIOMETRIC_SCHEDULED = "biometric_scheduled"
    CAPTURE_QUALITY_FAILED = "capture_quality_failed"
    CAPTURE_PARTIAL = "capture_partial"
    CAPTURE_UNIQUE = "capture_unique"
    DUPLICATE_FLAGGED = "duplicate_flagged"
    DUPLICATE_RESOLVED = "duplicate_resolved"
    IDENTITY_ISSUED = "identity_issued"


class AuditEvent(BaseModel):
    """
    Immutable audit entry emitted for every transition.

    Attributes:
        event_id: Auto-increment primary key (assigned by the sink)
        registration_id: Which registration the event belongs to
        event_type: What happened
        actor_id: Administrative actor who issued the command
        payload: Event-specific details (statuses, notes, verdicts)
        created_at: When the event occurred
    """

    event_id: int | None = None
    registration_id: str = Field(..., min_length=1)
    event_type: AuditEventType
    actor_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "event_id": 42,
                "registration_id": "0f8c7a0e-3f6b-4b8a-9d38-5c1d7f0b2a11",
                "event_type": "duplicate_flagged",
                "actor_id": "admin-07",
                "payload": {
                    "from_status": "approved_for_biometric",
                    "to_status": "flagged_duplicate",
                    "match_confidence": 92.0
                }
            }
        }
