"""
Biometric quality gate.

Scores each captured sample through the external quality service and
decides pass/fail against a fixed threshold. The gate never assumes
success: any failure to obtain a score raises ServiceUnavailable.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor

import httpx

from enrolment.core.models import (
    BiometricSample,
    FingerPosition,
    Modality,
    QualityResult,
    SampleQuality,
)
from enrolment.observability.logger import get_logger
from enrolment.observability.metrics import increment_counter, quality_rejections_total

from .http_client import ServiceClient

logger = get_logger(__name__)

# Fixed policy: a sample passes iff its score reaches this value
QUALITY_PASS_THRESHOLD = 60.0

QUALITY_SERVICE = "quality_service"

BIO_TYPES: dict[Modality, str] = {
    Modality.FACE: "Face",
    Modality.FINGERPRINT: "Finger",
    Modality.IRIS: "Iris",
    Modality.SIGNATURE: "Signature",
}

_FINGER_NAMES = {
    "thumb": "Thumb",
    "index": "IndexFinger",
    "middle": "MiddleFinger",
    "ring": "RingFinger",
    "little": "LittleFinger",
}


def bio_sub_type(position: FingerPosition | None) -> str:
    """
    Service sub-type label for a finger position.

    Examples:
        >>> bio_sub_type(FingerPosition.LEFT_INDEX)
        'Left IndexFinger'
        >>> bio_sub_type(None)
        'UNKNOWN'
    """
    if position is None:
        return "UNKNOWN"
    hand, finger = position.value.split("_", 1)
    return f"{hand.capitalize()} {_FINGER_NAMES[finger]}"


class QualityScorer(ABC):
    """Source of quality scores (0-100) for single samples."""

    @abstractmethod
    def score(self, sample: BiometricSample) -> float:
        """
        Score one sample.

        Raises:
            ServiceUnavailable: If no usable score could be obtained
        """

    def health_check(self) -> dict:
        """Availability of the score source; local scorers are always up."""
        return {"service": QUALITY_SERVICE, "url": None, "available": True, "detail": "local"}

    def close(self) -> None:
        """Release connections; local scorers hold none."""


class HttpQualityScorer(QualityScorer):
    """
    Quality scorer backed by ``POST {base}/check-quality``.

    The score is read from ``response.scores[0].score``.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 30.0,
                 transport: httpx.BaseTransport | None = None):
        self.client = ServiceClient(QUALITY_SERVICE, base_url, timeout_seconds, transport=transport)

    def score(self, sample: BiometricSample) -> float:
        bio_type = BIO_TYPES[sample.modality]
        body = {
            "sample": {
                "bioType": bio_type,
                "bioSubType": bio_sub_type(sample.position),
                "bioValue": sample.template_handle,
            },
            "modalities": [bio_type],
        }
        data = self.client.post_json("/check-quality", body, operation="check_quality")

        response = data.get("response")
        scores = response.get("scores") if isinstance(response, dict) else None
        first = scores[0] if isinstance(scores, list) and scores else None
        score = first.get("score") if isinstance(first, dict) else None

        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise self.client.bad_response(f"no usable score for {sample.label}")
        if not 0 <= score <= 100:
            raise self.client.bad_response(f"score {score} for {sample.label} is outside 0-100")
        return float(score)

    def health_check(self) -> dict:
        return self.client.health_check()

    def close(self) -> None:
        self.client.close()


class QualityGate:
    """
    Applies the pass threshold to scores from a QualityScorer.

    Usage:
        gate = QualityGate(HttpQualityScorer("http://quality:8080"), workers=4)
        results = gate.check_all(sample_set.samples)
    """

    def __init__(self, scorer: QualityScorer, workers: int = 1):
        """
        Initialize the gate.

        Args:
            scorer: Score source
            workers: Number of samples scored concurrently by check_all
        """
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")
        self.scorer = scorer
        self.workers = workers

    def check_quality(self, sample: BiometricSample) -> QualityResult:
        """
        Score one sample and apply the threshold.

        Raises:
            ServiceUnavailable: If the scorer cannot produce a score
        """
        score = self.scorer.score(sample)
        passed = score >= QUALITY_PASS_THRESHOLD
        if not passed:
            increment_counter(quality_rejections_total, modality=sample.modality.value)
            logger.info(
                f"Sample {sample.label} failed quality check: {score} < {QUALITY_PASS_THRESHOLD}"
            )
        return QualityResult(score=score, passed=passed)

    def check_all(self, samples: list[BiometricSample]) -> list[SampleQuality]:
        """
        Score every sample; results are returned in submission order.

        All samples are scored before returning. If any call fails, the first
        failure (in submission order) is raised.

        Raises:
            ServiceUnavailable: If any sample could not be scored
        """
        if self.workers == 1 or len(samples) <= 1:
            results = [self.check_quality(sample) for sample in samples]
        else:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(samples))) as executor:
                futures = [executor.submit(self.check_quality, sample) for sample in samples]
                results = [future.result() for future in futures]

        return [
            SampleQuality(
                modality=sample.modality,
                position=sample.position,
                score=result.score,
                passed=result.passed,
            )
            for sample, result in zip(samples, results)
        ]
