"""Phone number and e-mail address validation."""
from __future__ import annotations

import phonenumbers
from email_validator import EmailNotValidError, validate_email

from .errors import ValidationFailed


def to_e164(value: str | None, default_region: str = "US") -> str | None:
    """Return the E.164 form of ``value`` or ``None`` when it is not a valid number."""

    if not value or not str(value).strip():
        return None
    try:
        parsed = phonenumbers.parse(str(value).strip(), default_region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_valid_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def require_e164(value: str | None, field: str) -> str:
    """Validate a number that callers must already send in E.164 form."""

    if not value or not str(value).startswith("+"):
        raise ValidationFailed(f"{field} must be an E.164 phone number", fields=[field])
    normalized = to_e164(value)
    if normalized is None:
        raise ValidationFailed(f"{field} must be an E.164 phone number", fields=[field])
    return normalized


def require_email(value: str | None, field: str = "to") -> str:
    """Validate an RFC 5322 address without DNS lookups."""

    if not value:
        raise ValidationFailed(f"{field} is required", detail="missing-field", fields=[field])
    try:
        result = validate_email(value, check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationFailed(f"{field} is not a valid e-mail address", fields=[field]) from exc
    return result.normalized
