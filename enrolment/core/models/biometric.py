"""
Biometric sample and record models.

A BiometricSample is submitted per capture attempt and never stored as-is;
a BiometricRecord is what gets persisted once the sample has been scored.
"""

import hashlib
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from .registration_record import utcnow


class Modality(str, Enum):
    FACE = "face"
    FINGERPRINT = "fingerprint"
    SIGNATURE = "signature"
    IRIS = "iris"


class FingerPosition(str, Enum):
    RIGHT_THUMB = "right_thumb"
    RIGHT_INDEX = "right_index"
    RIGHT_MIDDLE = "right_middle"
    RIGHT_RING = "right_ring"
    RIGHT_LITTLE = "right_little"
    LEFT_THUMB = "left_thumb"
    LEFT_INDEX = "left_index"
    LEFT_MIDDLE = "left_middle"
    LEFT_RING = "left_ring"
    LEFT_LITTLE = "left_little"


# Declaration order is the canonical order used when reporting missing fingers
CANONICAL_FINGER_POSITIONS: tuple[FingerPosition, ...] = tuple(FingerPosition)


class DedupStatus(str, Enum):
    PENDING = "pending"
    UNIQUE = "unique"
    DUPLICATE_FOUND = "duplicate_found"


def hash_template(template_handle: str) -> str:
    """SHA-256 hex digest of a template handle; raw templates are never persisted."""
    return hashlib.sha256(template_handle.encode("utf-8")).hexdigest()


class BiometricSample(BaseModel):
    """
    One captured sample in a capture attempt (ephemeral).

    Attributes:
        modality: face, fingerprint, signature or iris
        position: Finger position, required for fingerprints and forbidden otherwise
        quality_score: Device-reported score; informational, the quality gate decides
        template_handle: Opaque reference to the captured template
    """

    modality: Modality
    position: FingerPosition | None = None
    quality_score: float | None = Field(None, ge=0.0, le=100.0)
    template_handle: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_position(self) -> "BiometricSample":
        if self.modality == Modality.FINGERPRINT and self.position is None:
            raise ValueError("fingerprint samples require a finger position")
        if self.modality != Modality.FINGERPRINT and self.position is not None:
            raise ValueError(f"{self.modality.value} samples cannot carry a finger position")
        return self

    @property
    def label(self) -> str:
        """Human-readable sample label, e.g. ``fingerprint:left_index``."""
        if self.position is not None:
            return f"{self.modality.value}:{self.position.value}"
        return self.modality.value


class BiometricSampleSet(BaseModel):
    """Ordered set of samples submitted in one capture attempt."""

    samples: list[BiometricSample] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_unique_fingers(self) -> "BiometricSampleSet":
        seen: set[FingerPosition] = set()
        for sample in self.samples:
            if sample.position is None:
                continue
            if sample.position in seen:
                raise ValueError(f"duplicate fingerprint sample for {sample.position.value}")
            seen.add(sample.position)
        return self

    def __iter__(self):
        return iter(self.samples)

    def __len__(self) -> int:
        return len(self.samples)


class BiometricRecord(BaseModel):
    """
    Persisted, append-only record of one scored sample.

    Attributes:
        biometric_id: Store-assigned primary key
        registration_id: Owning registration
        capture_attempt_id: Groups the samples of one submit_capture call
        modality: Sample modality
        position: Finger position for fingerprints
        quality_score: Score assigned by the quality gate
        template_hash: SHA-256 of the template handle
        dedup_status: Deduplication outcome for this attempt
        captured_by: Actor who submitted the capture
        captured_at: Submission time
    """

    biometric_id: int | None = None
    registration_id: str = Field(..., min_length=1)
    capture_attempt_id: str = Field(..., min_length=1)
    modality: Modality
    position: FingerPosition | None = None
    quality_score: float = Field(..., ge=0.0, le=100.0)
    template_hash: str = Field(..., min_length=64, max_length=64)
    dedup_status: DedupStatus = DedupStatus.PENDING
    captured_by: str | None = None
    captured_at: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "biometric_id": 17,
                "registration_id": "0f8c7a0e-3f6b-4b8a-9d38-5c1d7f0b2a11",
                "capture_attempt_id": "a3c5d8e1-7b64-4f0e-8a1c-2d9e6b3f4c70",
                "modality": "fingerprint",
                "position": "left_index",
                "quality_score": 88.0,
                "template_hash": "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
                "dedup_status": "unique",
                "captured_by": "admin-07"
            }
        }
