"""
Pytest configuration and fixtures for enrolment registry tests

This module provides shared fixtures for unit, integration, and E2E tests.
"""
from typing import Callable, Generator

import pytest
from testcontainers.postgres import PostgresContainer

from enrolment.core.models import RegistrationStatus
from enrolment.core.workflow import RegistrationStateMachine
from enrolment.store import InMemoryAuditSink, InMemoryRegistrationStore
from enrolment.store.connection import DatabaseConnectionPool
from enrolment.store.schema import TABLES, apply_schema

from support import FakeIdentifier, FakeScorer, advance_to, build_machine


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that drive complete enrolment scenarios"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance with the registry schema applied
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_enrolment",
        password="test_password",
        dbname="test_registry"
    ) as postgres:
        # Wait for container to be ready
        postgres.get_connection_url()

        with DatabaseConnectionPool(**_pool_kwargs(postgres)) as pool:
            apply_schema(pool)

        yield postgres


def _pool_kwargs(postgres: PostgresContainer) -> dict:
    return {
        "host": postgres.get_container_host_ip(),
        "port": int(postgres.get_exposed_port(5432)),
        "database": "test_registry",
        "user": "test_enrolment",
        "password": "test_password",
    }


@pytest.fixture(scope="function")
def db_pool(postgres_container) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Provide an open connection pool for a single test

    Args:
        postgres_container: PostgreSQL container fixture

    Yields:
        Open DatabaseConnectionPool
    """
    pool = DatabaseConnectionPool(**_pool_kwargs(postgres_container), min_size=1, max_size=10)
    pool.open()
    yield pool
    pool.close()


@pytest.fixture(scope="function")
def clean_db(db_pool) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Provide a clean database by truncating all tables before each test

    Args:
        db_pool: Connection pool fixture

    Yields:
        DatabaseConnectionPool over empty tables
    """
    db_pool.execute_command(f"TRUNCATE TABLE {', '.join(TABLES)} CASCADE")
    yield db_pool


# =======================
# WORKFLOW FIXTURES
# =======================

@pytest.fixture
def store() -> InMemoryRegistrationStore:
    return InMemoryRegistrationStore()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def scorer() -> FakeScorer:
    return FakeScorer()


@pytest.fixture
def identifier() -> FakeIdentifier:
    return FakeIdentifier()


@pytest.fixture
def machine(store, scorer, identifier, audit_sink) -> RegistrationStateMachine:
    """State machine over the in-memory store, fake services and in-memory audit sink"""
    return build_machine(store=store, scorer=scorer, identifier=identifier, audit_sink=audit_sink)


@pytest.fixture
def record_in(machine, identifier) -> Callable[[RegistrationStatus], str]:
    """
    Factory driving a fresh registration to the requested status

    Usage:
        registration_id = record_in(RegistrationStatus.BIOMETRICS_VERIFIED)
    """
    def _make(status: RegistrationStatus) -> str:
        return advance_to(machine, identifier, status)

    return _make
