"""
Audit trail emission.

This module provides an AuditEmitter class that forwards one immutable event
per transition to an audit sink. Delivery is fire-and-forget: a sink failure
is logged and counted, and the transition that produced the event stands.
"""

from datetime import datetime
from typing import Any

from enrolment.core.models import AuditEvent, AuditEventType, utcnow
from enrolment.observability.logger import get_logger
from enrolment.observability.metrics import audit_delivery_failures_total, increment_counter
from enrolment.store.base import AuditSink

logger = get_logger(__name__)


def _payload_value(value: Any) -> Any:
    """Enums by value, datetimes as ISO strings, so the payload stays JSON-safe."""
    if isinstance(value, (list, tuple)):
        return [_payload_value(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return getattr(value, "value", value)


class AuditEmitter:
    """
    Emits audit events for registration transitions.

    Usage:
        emitter = AuditEmitter(PostgresAuditSink(pool))
        emitter.emit(
            registration_id=record.id,
            event_type=AuditEventType.APPROVED_FOR_BIOMETRIC,
            actor_id="admin-07",
            from_status="pending_verification",
            to_status="approved_for_biometric",
        )
    """

    def __init__(self, sink: AuditSink | None = None):
        """
        Initialize audit emitter.

        Args:
            sink: Audit sink (optional; events are only logged without one)
        """
        self.sink = sink

    def emit(
        self,
        registration_id: str,
        event_type: AuditEventType,
        actor_id: str | None = None,
        timestamp: datetime | None = None,
        **payload: Any,
    ) -> AuditEvent:
        """
        Build and deliver one event.

        Args:
            registration_id: Registration the event belongs to
            event_type: What happened
            actor_id: Administrative actor who issued the command
            timestamp: Event time (defaults to now)
            **payload: Event details; enums are stored by value

        Returns:
            The event as built, whether or not delivery succeeded
        """
        event = AuditEvent(
            registration_id=registration_id,
            event_type=event_type,
            actor_id=actor_id,
            payload={key: _payload_value(value) for key, value in payload.items()},
            created_at=timestamp or utcnow(),
        )

        if self.sink is None:
            logger.debug(f"No audit sink configured; dropping {event_type.value} for {registration_id}")
            return event

        try:
            self.sink.record(
                event.registration_id,
                event.event_type.value,
                event.actor_id,
                event.payload,
                event.created_at,
            )
        except Exception as e:
            increment_counter(audit_delivery_failures_total, event_type=event_type.value)
            logger.error(
                f"Failed to deliver audit event {event_type.value} for {registration_id}: {e}",
                extra={
                    "registration_id": registration_id,
                    "event_type": event_type.value,
                    "error_type": type(e).__name__,
                },
            )

        return event
