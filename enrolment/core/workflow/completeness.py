"""
Required-set rule for a capture attempt.

An attempt is complete iff it has a face sample, a signature sample and
one fingerprint per canonical finger position. Iris samples are accepted
but never required.
"""

from pydantic import BaseModel, Field

from enrolment.core.models import (
    CANONICAL_FINGER_POSITIONS,
    BiometricSample,
    FingerPosition,
    Modality,
)

REQUIRED_MODALITIES: tuple[Modality, ...] = (Modality.FACE, Modality.FINGERPRINT, Modality.SIGNATURE)


class Completeness(BaseModel):
    """What an attempt is missing; complete when both lists are empty."""

    missing_modalities: list[Modality] = Field(default_factory=list)
    missing_finger_positions: list[FingerPosition] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.missing_modalities and not self.missing_finger_positions


def evaluate_completeness(samples: list[BiometricSample]) -> Completeness:
    """
    Compare one attempt against the required set.

    Missing finger positions are reported in canonical order. ``fingerprint``
    is listed as a missing modality only when no fingerprint was supplied.
    """
    present_modalities = {s.modality for s in samples}
    present_fingers = {s.position for s in samples if s.modality == Modality.FINGERPRINT}

    missing_modalities = [m for m in REQUIRED_MODALITIES if m not in present_modalities]

    return Completeness(
        missing_modalities=missing_modalities,
        missing_finger_positions=[p for p in CANONICAL_FINGER_POSITIONS if p not in present_fingers],
    )
