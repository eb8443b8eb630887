"""
Registration record stores and audit sinks.
"""

from .base import AuditSink, RegistrationStore
from .memory import InMemoryAuditSink, InMemoryRegistrationStore

__all__ = [
    "AuditSink",
    "InMemoryAuditSink",
    "InMemoryRegistrationStore",
    "RegistrationStore",
]
