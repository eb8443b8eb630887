"""
Schema DDL for the PostgreSQL store.
"""

from importlib import resources

import psycopg

from enrolment.observability.logger import get_logger

from .connection import DatabaseConnectionPool

logger = get_logger(__name__)

# Tables in dependency order (children first), used for truncation in tests
TABLES: tuple[str, ...] = ("audit_event", "biometric_record", "registration_record")


def load_schema_sql() -> str:
    """The bundled ``schema.sql``."""
    return resources.files("enrolment.store").joinpath("schema.sql").read_text(encoding="utf-8")


def apply_schema(pool: DatabaseConnectionPool) -> None:
    """
    Create the registry tables if they do not exist.

    Raises:
        psycopg.DatabaseError: If the DDL fails
    """
    sql = load_schema_sql()
    try:
        with pool.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql)
            conn.commit()
    except psycopg.DatabaseError as e:
        logger.error(f"Failed to apply schema: {e}")
        raise
    logger.info(f"Schema applied ({', '.join(reversed(TABLES))})")
