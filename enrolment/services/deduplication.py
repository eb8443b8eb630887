"""
Deduplication coordinator.

Submits a complete biometric set to the identification service and turns
the candidate list into a DedupVerdict. Advisory only: nothing here touches
the record store, and a failed call is never read as "unique".
"""

import uuid
from abc import ABC, abstractmethod
from typing import Any

import httpx

from enrolment.core.models import BiometricRecord, DedupVerdict, utcnow
from enrolment.observability.logger import get_logger

from .http_client import ServiceClient

logger = get_logger(__name__)

IDENTIFICATION_SERVICE = "identification_service"
API_VERSION = "1.1"
MAX_RESULTS = 30

# Registration ids never contain ":"
REFERENCE_SEPARATOR = ":"


def reference_id(registration_id: str, capture_attempt_id: str) -> str:
    """Gallery reference for one capture attempt of a registration."""
    return f"{registration_id}{REFERENCE_SEPARATOR}{capture_attempt_id}"


def registration_of(reference: str) -> str:
    """Registration id behind a gallery reference; bare registration ids pass through."""
    return reference.partition(REFERENCE_SEPARATOR)[0]


class IdentificationClient(ABC):
    """Identification (1:N match) service."""

    @abstractmethod
    def identify(self, registration_id: str, templates: list[BiometricRecord]) -> DedupVerdict:
        """
        Match ``templates`` against the enrolled population.

        Raises:
            ServiceUnavailable: If the service could not give a verdict
        """

    def health_check(self) -> dict:
        """Availability of the service; local clients are always up."""
        return {"service": IDENTIFICATION_SERVICE, "url": None, "available": True, "detail": "local"}

    def close(self) -> None:
        """Release connections; local clients hold none."""


class HttpIdentificationClient(IdentificationClient):
    """
    Identification client for an ABIS-style HTTP API.

    Each capture attempt is inserted into the gallery under its own
    reference with ``POST /v1/insert`` and then matched with
    ``POST /v1/identify``. A retried attempt never reuses a reference.
    Candidates belonging to any attempt of the same registration are ignored;
    any other candidate is a duplicate.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 30.0,
                 transport: httpx.BaseTransport | None = None):
        self.client = ServiceClient(IDENTIFICATION_SERVICE, base_url, timeout_seconds, transport=transport)

    def identify(self, registration_id: str, templates: list[BiometricRecord]) -> DedupVerdict:
        attempt_ids = sorted({t.capture_attempt_id for t in templates})
        reference = reference_id(registration_id, "+".join(attempt_ids))

        insert_reply = self.client.post_json(
            "/v1/insert", self._request_body("insert", registration_id, reference, templates), operation="insert"
        )
        self._check_return_value(insert_reply, "insert")

        identify_body = self._request_body("identify", registration_id, reference, templates)
        identify_body["gallery"] = {"referenceIds": []}
        identify_body["flags"] = {"maxResults": MAX_RESULTS}
        identify_reply = self.client.post_json("/v1/identify", identify_body, operation="identify")
        self._check_return_value(identify_reply, "identify")

        candidates = self._candidates(identify_reply, registration_id)
        if not candidates:
            return DedupVerdict(duplicate_found=False)

        best = candidates[0]
        return DedupVerdict(
            duplicate_found=True,
            match_confidence=self._confidence(best),
            matched_id=registration_of(str(best.get("referenceId") or "")) or None,
        )

    def health_check(self) -> dict:
        return self.client.health_check()

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _request_body(operation: str, registration_id: str, reference: str,
                      templates: list[BiometricRecord]) -> dict[str, Any]:
        attempt_ids = sorted({t.capture_attempt_id for t in templates})
        return {
            "id": f"enrolment.abis.{operation}",
            "version": API_VERSION,
            "requestId": uuid.uuid4().hex,
            "requesttime": utcnow().isoformat(),
            "referenceId": reference,
            "referenceURL": f"enrolment://registrations/{registration_id}/captures/{','.join(attempt_ids)}",
            "templates": [
                {
                    "modality": t.modality.value,
                    "position": t.position.value if t.position else None,
                    "templateHash": t.template_hash,
                }
                for t in templates
            ],
        }

    def _check_return_value(self, reply: dict[str, Any], operation: str) -> None:
        # 1 is success; anything else reported by the service is a failure
        return_value = reply.get("returnValue", 1)
        if str(return_value) != "1":
            raise self.client.bad_response(
                f"{operation} reported failure (returnValue={return_value}, "
                f"failureReason={reply.get('failureReason')})"
            )

    def _candidates(self, reply: dict[str, Any], registration_id: str) -> list[dict[str, Any]]:
        candidate_list = reply.get("candidateList")
        if not isinstance(candidate_list, dict):
            raise self.client.bad_response("identify reply has no candidateList")

        candidates = candidate_list.get("candidates") or []
        if not isinstance(candidates, list) or not all(isinstance(c, dict) for c in candidates):
            raise self.client.bad_response("identify reply has a malformed candidate list")

        return [
            c for c in candidates
            if registration_of(str(c.get("referenceId") or "")) != registration_id
        ]

    def _confidence(self, candidate: dict[str, Any]) -> float | None:
        analytics = candidate.get("analytics")
        raw = analytics.get("confidence") if isinstance(analytics, dict) else None
        if raw is None:
            return None
        try:
            confidence = float(raw)
        except (TypeError, ValueError):
            raise self.client.bad_response(f"candidate confidence {raw!r} is not a number")
        if not 0 <= confidence <= 100:
            raise self.client.bad_response(f"candidate confidence {confidence} is outside 0-100")
        return confidence


class DeduplicationCoordinator:
    """
    Runs identification for a registration and logs the verdict.

    Usage:
        coordinator = DeduplicationCoordinator(HttpIdentificationClient("http://abis:8081"))
        verdict = coordinator.identify(record.id, stored_records)
    """

    def __init__(self, client: IdentificationClient):
        self.client = client

    def identify(self, registration_id: str, templates: list[BiometricRecord]) -> DedupVerdict:
        """
        Submit the templates of one complete capture attempt.

        Raises:
            ServiceUnavailable: Propagated unchanged from the client
        """
        logger.info(
            f"Submitting {len(templates)} templates for deduplication",
            extra={"registration_id": registration_id},
        )
        verdict = self.client.identify(registration_id, templates)

        if verdict.matched_id == registration_id:
            verdict = DedupVerdict(duplicate_found=False)

        logger.info(
            f"Deduplication verdict for {registration_id}: "
            f"{'duplicate' if verdict.duplicate_found else 'unique'}",
            extra={
                "registration_id": registration_id,
                "match_confidence": verdict.match_confidence,
                "matched_id": verdict.matched_id,
            },
        )
        return verdict
