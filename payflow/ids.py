import uuid

from payflow.errors import ValidationError


def is_valid_uuid(value) -> bool:
    """True for the canonical 36-char hyphenated UUID form only."""
    if not isinstance(value, str) or len(value) != 36:
        return False
    try:
        return str(uuid.UUID(value)) == value.lower()
    except ValueError:
        return False


def require_uuid(value, label):
    if not is_valid_uuid(value):
        raise ValidationError(f"Invalid {label} ID format")
    return value
