import uuid
from campus_fulfillment.core.errors import ValidationError


def parse_uuid(value, field: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}")


def require_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of minor units")
    return value
