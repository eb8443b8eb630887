"""
Audit event persistence.

This module provides the PostgreSQL audit sink plus query helpers over the
``audit_event`` table for the administrative audit trail.
"""

from datetime import datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from enrolment.core.models import AuditEvent
from enrolment.observability.logger import get_logger

from .base import AuditSink
from .connection import DatabaseConnectionPool

logger = get_logger(__name__)


class PostgresAuditSink(AuditSink):
    """Writes one row to ``audit_event`` per delivered event."""

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def record(
        self,
        registration_id: str,
        event_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
        timestamp: datetime,
    ) -> None:
        insert_audit_event(pool=self.pool, registration_id=registration_id,
                           event_type=event_type, actor_id=actor_id,
                           payload=payload, created_at=timestamp)

    def events_for(self, registration_id: str, limit: int = 100) -> list[AuditEvent]:
        return query_audit_events_by_registration(self.pool, registration_id, limit=limit)


def insert_audit_event(
    pool: DatabaseConnectionPool,
    registration_id: str,
    event_type: str,
    actor_id: str | None,
    payload: dict[str, Any],
    created_at: datetime,
) -> int:
    """
    Insert a single audit event.

    Args:
        pool: Database connection pool
        registration_id: Registration the event belongs to
        event_type: Audit event type value
        actor_id: Administrative actor (optional)
        payload: Event details, stored as JSONB
        created_at: Event time

    Returns:
        event_id: Generated event ID

    Raises:
        psycopg.DatabaseError: If insert fails
    """
    insert_sql = """
        INSERT INTO audit_event (
            registration_id,
            event_type,
            actor_id,
            payload,
            created_at
        ) VALUES (
            %(registration_id)s,
            %(event_type)s,
            %(actor_id)s,
            %(payload)s,
            %(created_at)s
        ) RETURNING event_id;
    """

    try:
        with pool.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    insert_sql,
                    {
                        "registration_id": registration_id,
                        "event_type": event_type,
                        "actor_id": actor_id,
                        "payload": Jsonb(payload),
                        "created_at": created_at,
                    },
                )
                event_id = cur.fetchone()["event_id"]
            conn.commit()

    except psycopg.DatabaseError as e:
        logger.error(f"Failed to insert audit event: {e}")
        raise

    logger.debug(
        f"Inserted audit event: event_id={event_id}, "
        f"registration_id={registration_id}, type={event_type}"
    )
    return event_id


def query_audit_events_by_registration(
    pool: DatabaseConnectionPool,
    registration_id: str,
    limit: int = 100
) -> list[AuditEvent]:
    """
    Audit trail for one registration, oldest first.

    Args:
        pool: Database connection pool
        registration_id: Registration to query
        limit: Maximum number of events to return

    Returns:
        List of AuditEvent models

    Raises:
        psycopg.DatabaseError: If query fails
    """
    query_sql = """
        SELECT event_id, registration_id, event_type, actor_id, payload, created_at
        FROM audit_event
        WHERE registration_id = %(registration_id)s
        ORDER BY created_at, event_id
        LIMIT %(limit)s;
    """

    try:
        rows = pool.execute_query(query_sql, {"registration_id": registration_id, "limit": limit})
    except psycopg.DatabaseError as e:
        logger.error(f"Failed to query audit events by registration: {e}")
        raise

    logger.debug(f"Found {len(rows)} audit events for registration_id={registration_id}")
    return [AuditEvent.model_validate(row) for row in rows]


def get_audit_summary(
    pool: DatabaseConnectionPool,
    registration_id: str | None = None
) -> dict[str, Any]:
    """
    Summary statistics from the audit table.

    Args:
        pool: Database connection pool
        registration_id: Optional registration to filter

    Returns:
        Dictionary with:
        - total_events
        - registrations_touched
        - events_by_type

    Raises:
        psycopg.DatabaseError: If query fails
    """
    where = " WHERE registration_id = %(registration_id)s" if registration_id else ""
    params = {"registration_id": registration_id} if registration_id else {}

    try:
        by_type_rows = pool.execute_query(
            f"SELECT event_type, COUNT(*) AS type_count FROM audit_event{where} GROUP BY event_type",
            params or None,
        )
        touched_rows = pool.execute_query(
            f"SELECT COUNT(DISTINCT registration_id) AS touched FROM audit_event{where}",
            params or None,
        )
    except psycopg.DatabaseError as e:
        logger.error(f"Failed to get audit summary: {e}")
        raise

    by_type = {r["event_type"]: r["type_count"] for r in by_type_rows}
    summary = {
        "total_events": sum(by_type.values()),
        "registrations_touched": touched_rows[0]["touched"] if touched_rows else 0,
        "events_by_type": by_type,
    }
    logger.info(f"Audit summary: {summary}")
    return summary
