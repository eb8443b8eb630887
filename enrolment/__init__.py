"""
Identity enrolment registry.

Drives an enrollee from demographic intake through biometric capture,
quality gating and deduplication to the issuance of a single identity number.
"""

__version__ = "0.1.0"
