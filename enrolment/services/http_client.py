"""
Shared HTTP plumbing for the external biometric services.

Every failure mode of a call (transport error, timeout, non-2xx status,
undecodable body) is turned into ``ServiceUnavailable`` so callers fail
closed.
"""

from typing import Any

import httpx

from enrolment.core.errors import ServiceUnavailable
from enrolment.observability.logger import get_logger
from enrolment.observability.metrics import (
    external_call_duration_seconds,
    record_external_failure,
    track_duration,
)

logger = get_logger(__name__)

HEALTH_PATH = "/actuator/health"
HEALTH_TIMEOUT_SECONDS = 5.0


class ServiceClient:
    """
    Thin httpx wrapper bound to one external service.

    Args:
        service: Service name used in errors, logs and metrics
        base_url: Service base URL
        timeout_seconds: Per-request timeout
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
    """

    def __init__(
        self,
        service: str,
        base_url: str,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.service = service
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def post_json(self, path: str, body: dict[str, Any], operation: str) -> dict[str, Any]:
        """
        POST ``body`` and return the decoded JSON object.

        Raises:
            ServiceUnavailable: On any failure to obtain a usable JSON object
        """
        with track_duration(external_call_duration_seconds, service=self.service, operation=operation):
            try:
                response = self._client.post(path, json=body)
                response.raise_for_status()
            except httpx.TimeoutException as e:
                raise self._failure("timeout", f"{operation} timed out after {self.timeout_seconds}s") from e
            except httpx.HTTPStatusError as e:
                raise self._failure(
                    "http_status",
                    f"{operation} returned HTTP {e.response.status_code}",
                    status_code=e.response.status_code,
                ) from e
            except httpx.HTTPError as e:
                raise self._failure("transport", f"{operation} failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise self._failure("bad_response", f"{operation} returned a non-JSON body") from e

        if not isinstance(data, dict):
            raise self._failure("bad_response", f"{operation} returned a non-object JSON body")
        return data

    def bad_response(self, message: str) -> ServiceUnavailable:
        """Error for a well-formed reply that carries no usable answer."""
        return self._failure("bad_response", message)

    def health_check(self) -> dict[str, Any]:
        """
        Probe ``/actuator/health``; never raises.

        Returns:
            ``{"service", "url", "available", "detail"}``
        """
        try:
            response = self._client.get(HEALTH_PATH, timeout=HEALTH_TIMEOUT_SECONDS)
            available = response.is_success
            detail = f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            available = False
            detail = str(e) or type(e).__name__

        if not available:
            logger.warning(f"{self.service} health check failed: {detail}")
        return {"service": self.service, "url": self.base_url, "available": available, "detail": detail}

    def close(self) -> None:
        self._client.close()

    def _failure(self, reason: str, message: str, **details: Any) -> ServiceUnavailable:
        record_external_failure(self.service, reason)
        logger.error(
            f"{self.service} call failed: {message}",
            extra={"service": self.service, "reason": reason},
        )
        return ServiceUnavailable(self.service, message, reason=reason, **details)
