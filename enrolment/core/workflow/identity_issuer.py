"""
Identity issuance.

Identity numbers are 12 decimal digits: first digit 2-9, last digit a
Verhoeff check digit over the first eleven. Uniqueness is left to the
store's unique constraint; a collision is retried with a fresh number.
"""

import hashlib
import secrets
from collections.abc import Callable

from enrolment.core.errors import DuplicateIdentityConflict
from enrolment.core.models import (
    IssuedIdentity,
    RegistrationRecord,
    RegistrationStatus,
    utcnow,
)
from enrolment.observability.logger import get_logger
from enrolment.observability.metrics import (
    identities_issued_total,
    increment_counter,
    issuance_collisions_total,
)
from enrolment.store.base import RegistrationStore

logger = get_logger(__name__)

IDENTITY_NUMBER_LENGTH = 12
TOKEN_BYTES = 32


class Verhoeff:
    """Verhoeff check digit (dihedral group D5)."""

    MULTIPLICATION_TABLE = [
        [0, 1, 2, 3, 4, 5, 6, 7, 8, 9],
        [1, 2, 3, 4, 0, 6, 7, 8, 9, 5],
        [2, 3, 4, 0, 1, 7, 8, 9, 5, 6],
        [3, 4, 0, 1, 2, 8, 9, 5, 6, 7],
        [4, 0, 1, 2, 3, 9, 5, 6, 7, 8],
        [5, 9, 8, 7, 6, 0, 4, 3, 2, 1],
        [6, 5, 9, 8, 7, 1, 0, 4, 3, 2],
        [7, 6, 5, 9, 8, 2, 1, 0, 4, 3],
        [8, 7, 6, 5, 9, 3, 2, 1, 0, 4],
        [9, 8, 7, 6, 5, 4, 3, 2, 1, 0],
    ]

    PERMUTATION_TABLE = [
        [0, 1, 2, 3, 4, 5, 6, 7, 8, 9],
        [1, 5, 7, 6, 2, 8, 3, 0, 9, 4],
        [5, 8, 0, 3, 7, 9, 6, 1, 4, 2],
        [8, 9, 1, 6, 0, 4, 3, 5, 2, 7],
        [9, 4, 5, 3, 1, 2, 6, 8, 7, 0],
        [4, 2, 8, 6, 5, 7, 3, 9, 0, 1],
        [2, 7, 9, 3, 8, 0, 6, 4, 1, 5],
        [7, 0, 4, 6, 9, 1, 3, 2, 5, 8],
    ]

    INVERSE_TABLE = [0, 4, 3, 2, 1, 5, 6, 7, 8, 9]

    @classmethod
    def check_digit(cls, digits: str) -> str:
        """
        Check digit to append to ``digits``.

        Examples:
            >>> Verhoeff.check_digit("236")
            '3'
        """
        checksum = 0
        # Position 0 is reserved for the check digit itself
        for i, digit in enumerate(reversed(digits), start=1):
            checksum = cls.MULTIPLICATION_TABLE[checksum][cls.PERMUTATION_TABLE[i % 8][int(digit)]]
        return str(cls.INVERSE_TABLE[checksum])

    @classmethod
    def validate(cls, number: str) -> bool:
        """True if the last digit of ``number`` is its Verhoeff check digit."""
        if not number.isdigit():
            return False
        checksum = 0
        for i, digit in enumerate(reversed(number)):
            checksum = cls.MULTIPLICATION_TABLE[checksum][cls.PERMUTATION_TABLE[i % 8][int(digit)]]
        return checksum == 0


def generate_identity_number() -> str:
    """Random 12-digit identity number with a leading 2-9 and a Verhoeff check digit."""
    body = str(secrets.choice("23456789")) + "".join(
        secrets.choice("0123456789") for _ in range(IDENTITY_NUMBER_LENGTH - 2)
    )
    return body + Verhoeff.check_digit(body)


def is_valid_identity_number(number: str | None) -> bool:
    """
    Format check for identity numbers.

    Examples:
        >>> is_valid_identity_number("234123412346")
        True
        >>> is_valid_identity_number("123456789012")
        False
    """
    return (
        isinstance(number, str)
        and len(number) == IDENTITY_NUMBER_LENGTH
        and number.isdigit()
        and number[0] in "23456789"
        and Verhoeff.validate(number)
    )


def generate_verification_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a verification token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class IdentityIssuer:
    """
    Issues identity numbers with a conditional write.

    The write expects ``biometrics_verified``; when two callers race, the
    store serializes them and the loser sees ``active_verified`` and gets a
    StoreConflict.
    """

    def __init__(
        self,
        store: RegistrationStore,
        max_attempts: int = 5,
        number_generator: Callable[[], str] = generate_identity_number,
        token_generator: Callable[[], str] = generate_verification_token,
    ):
        """
        Initialize the issuer.

        Args:
            store: Registration store holding the unique identity constraint
            max_attempts: Numbers tried before giving up on collisions
            number_generator: Identity number source
            token_generator: Verification token source
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.store = store
        self.max_attempts = max_attempts
        self.number_generator = number_generator
        self.token_generator = token_generator

    def issue(self, registration_id: str, expected_version: int | None = None) -> IssuedIdentity:
        """
        Move a record to ``active_verified`` with a fresh identity number.

        Returns:
            IssuedIdentity carrying the plaintext token (never stored)

        Raises:
            StoreConflict: If the record is no longer biometrics_verified
            DuplicateIdentityConflict: If every attempt collided
        """
        last_error: DuplicateIdentityConflict | None = None

        for attempt in range(1, self.max_attempts + 1):
            identity_number = self.number_generator()
            token = self.token_generator()
            issued_at = utcnow()

            def activate(record: RegistrationRecord) -> RegistrationRecord:
                return record.evolve(
                    status=RegistrationStatus.ACTIVE_VERIFIED,
                    identity_number=identity_number,
                    verification_token_hash=hash_token(token),
                    issued_at=issued_at,
                )

            try:
                record = self.store.conditional_update(
                    registration_id,
                    RegistrationStatus.BIOMETRICS_VERIFIED,
                    activate,
                    expected_version=expected_version,
                )
            except DuplicateIdentityConflict as e:
                last_error = e
                increment_counter(issuance_collisions_total)
                logger.warning(
                    f"Identity number collision on attempt {attempt}/{self.max_attempts}",
                    extra={"registration_id": registration_id},
                )
                continue

            increment_counter(identities_issued_total)
            return IssuedIdentity(
                registration_id=registration_id,
                command="issue_identity",
                previous_status=RegistrationStatus.BIOMETRICS_VERIFIED,
                status=record.status,
                biometric_status=record.biometric_status,
                record=record,
                identity_number=identity_number,
                verification_token=token,
                issued_at=issued_at,
                attempts=attempt,
            )

        raise DuplicateIdentityConflict(
            f"Could not issue a unique identity number after {self.max_attempts} attempts",
            registration_id=registration_id,
            attempts=self.max_attempts,
        ) from last_error
