"""
Input validation utilities for enrolment commands.

Reusable checks for registration ids, actor ids, free-text notes, query
limits and demographic payloads. Every check raises
``enrolment.core.errors.ValidationError`` so command callers get the same
structured 400 whatever the source of the problem.
"""

import re
from datetime import date
from typing import Any

from enrolment.core.errors import ValidationError

# Demographic fields an administrator may ask an enrollee to correct
DEMOGRAPHIC_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "date_of_birth",
    "gender",
    "nationality",
    "place_of_birth",
    "father_name",
    "mother_name",
    "marital_status",
    "current_address",
    "phone",
    "email",
)

REQUIRED_DEMOGRAPHIC_FIELDS: tuple[str, ...] = ("first_name", "last_name", "date_of_birth")

MAX_NOTE_LENGTH = 2000

_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_\-\.]+$')


def validate_registration_id(registration_id: str, field_name: str = "registration_id") -> str:
    """
    Validate a registration id.

    Registration ids are opaque, but must be non-empty strings of
    alphanumerics, hyphens, underscores and dots.

    Args:
        registration_id: The id to validate
        field_name: Name of the field (for error messages)

    Returns:
        The validated id (stripped of whitespace)

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> validate_registration_id("0f8c7a0e-3f6b-4b8a-9d38-5c1d7f0b2a11")
        '0f8c7a0e-3f6b-4b8a-9d38-5c1d7f0b2a11'
        >>> validate_registration_id("bad id!")  # doctest: +SKIP
        ValidationError: registration_id contains invalid characters
    """
    if not registration_id or not isinstance(registration_id, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    registration_id = registration_id.strip()

    if not registration_id:
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if not _ID_PATTERN.match(registration_id):
        raise ValidationError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric, hyphens, underscores, and dots are allowed."
        )

    if len(registration_id) > 255:
        raise ValidationError(f"{field_name} exceeds maximum length of 255 characters")

    return registration_id


def validate_actor_id(actor_id: str | None, field_name: str = "actor_id") -> str | None:
    """Actor ids follow the registration id rules but may be omitted."""
    if actor_id is None:
        return None
    return validate_registration_id(actor_id, field_name)


def validate_text(value: str | None, field_name: str, required: bool = True) -> str | None:
    """
    Validate a free-text note or reason.

    Args:
        value: The text to validate
        field_name: Name of the field (for error messages)
        required: Whether empty text is an error

    Returns:
        The stripped text, or None for an allowed empty value

    Raises:
        ValidationError: If a required value is empty or the text is too long
    """
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")

    text = (value or "").strip()
    if not text:
        if required:
            raise ValidationError(f"{field_name} is required and cannot be empty")
        return None

    if len(text) > MAX_NOTE_LENGTH:
        raise ValidationError(f"{field_name} exceeds maximum length of {MAX_NOTE_LENGTH} characters")

    return text


def validate_limit(limit: int, field_name: str = "limit", max_limit: int = 1000) -> int:
    """
    Validate a limit parameter for listing queries.

    Examples:
        >>> validate_limit(100)
        100
        >>> validate_limit(0)  # doctest: +SKIP
        ValidationError: limit must be a positive integer
    """
    if not isinstance(limit, int) or isinstance(limit, bool):
        raise ValidationError(f"{field_name} must be an integer, got {type(limit).__name__}")

    if limit <= 0:
        raise ValidationError(f"{field_name} must be a positive integer, got {limit}")

    if limit > max_limit:
        raise ValidationError(f"{field_name} exceeds maximum of {max_limit}")

    return limit


def validate_correction_fields(fields: list[str] | None) -> list[str]:
    """
    Validate the list of demographic fields to send back for correction.

    Returns:
        The de-duplicated field list, in submitted order

    Raises:
        ValidationError: If the list is empty or names an unknown field
    """
    if not fields:
        raise ValidationError("correction fields must name at least one field")

    cleaned = []
    for field in fields:
        if not isinstance(field, str) or not field.strip():
            raise ValidationError("correction fields must be non-empty strings")
        cleaned.append(field.strip())

    unknown = sorted(set(cleaned) - set(DEMOGRAPHIC_FIELDS))
    if unknown:
        raise ValidationError(
            f"Unknown correction fields: {', '.join(unknown)}",
            allowed_fields=list(DEMOGRAPHIC_FIELDS),
        )

    return list(dict.fromkeys(cleaned))


def validate_demographics(
    demographics: dict[str, Any] | None,
    required: tuple[str, ...] = REQUIRED_DEMOGRAPHIC_FIELDS,
) -> dict[str, Any]:
    """
    Validate a demographic payload at intake or correction.

    Only known demographic fields are accepted. String values are stripped;
    ``date_of_birth`` must be an ISO date in the past.

    Args:
        demographics: Field name to value mapping
        required: Fields that must be present and non-empty

    Returns:
        The cleaned mapping

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(demographics, dict):
        raise ValidationError("demographics must be a mapping of field name to value")

    unknown = sorted(set(demographics) - set(DEMOGRAPHIC_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown demographic fields: {', '.join(unknown)}")

    cleaned: dict[str, Any] = {}
    for name, value in demographics.items():
        if isinstance(value, str):
            value = value.strip()
        cleaned[name] = value

    missing = [name for name in required if cleaned.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required demographic fields: {', '.join(missing)}")

    if cleaned.get("date_of_birth") not in (None, ""):
        cleaned["date_of_birth"] = _validate_birth_date(cleaned["date_of_birth"])

    return cleaned


def _validate_birth_date(value: Any) -> str:
    if isinstance(value, date):
        parsed = value
    else:
        try:
            parsed = date.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"date_of_birth must be an ISO date (YYYY-MM-DD), got {value!r}")

    if parsed > date.today():
        raise ValidationError("date_of_birth cannot be in the future")

    return parsed.isoformat()
