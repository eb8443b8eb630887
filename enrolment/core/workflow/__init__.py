"""
Registration workflow: transition table, capture completeness, identity
issuance and the state machine that ties them together.
"""

from .completeness import Completeness, evaluate_completeness
from .identity_issuer import IdentityIssuer, Verhoeff, is_valid_identity_number
from .state_machine import DUPLICATE_DECISIONS, RegistrationStateMachine
from .transitions import COMMANDS, TRANSITIONS, Transition, require_transition

__all__ = [
    "COMMANDS",
    "Completeness",
    "DUPLICATE_DECISIONS",
    "IdentityIssuer",
    "RegistrationStateMachine",
    "TRANSITIONS",
    "Transition",
    "Verhoeff",
    "evaluate_completeness",
    "is_valid_identity_number",
    "require_transition",
]
