"""
Validation utilities for input validation and error handling.
"""
import re
from typing import Any

from ..services.application_status import DRAFT, STATUSES, normalize_status
from .error_handlers import ValidationError, get_error_message


def validate_string_field(
    value: Any,
    field_name: str,
    min_length: int = 1,
    max_length: int = 1000,
    required: bool = True,
    pattern: str | None = None,
) -> str | None:
    """Validate a string field with common rules."""
    if value is None:
        if required:
            raise ValidationError(f"{field_name} is required")
        return None

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")

    value = value.strip()

    if required and not value:
        raise ValidationError(f"{field_name} cannot be empty")

    if not value:
        return None

    if len(value) < min_length:
        raise ValidationError(f"{field_name} must be at least {min_length} characters")

    if len(value) > max_length:
        raise ValidationError(f"{field_name} must not exceed {max_length} characters")

    if pattern and not re.match(pattern, value):
        raise ValidationError(f"{field_name} format is invalid")

    return value


def validate_application_status(status: Any) -> str:
    """Validate an application status; missing means Draft."""
    if status is None or (isinstance(status, str) and not status.strip()):
        return DRAFT

    normalized = normalize_status(status) if isinstance(status, str) else None
    if normalized is None:
        raise ValidationError(
            f"{get_error_message('invalid_status')} Must be one of: {', '.join(STATUSES)}"
        )
    return normalized
