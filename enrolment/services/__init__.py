"""
Clients for the external quality and identification services.
"""

from .deduplication import DeduplicationCoordinator, HttpIdentificationClient, IdentificationClient
from .quality_gate import QUALITY_PASS_THRESHOLD, HttpQualityScorer, QualityGate, QualityScorer

__all__ = [
    "DeduplicationCoordinator",
    "HttpIdentificationClient",
    "HttpQualityScorer",
    "IdentificationClient",
    "QUALITY_PASS_THRESHOLD",
    "QualityGate",
    "QualityScorer",
]
