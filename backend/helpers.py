import math
from datetime import datetime
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId

from errors import ValidationError


def utcnow() -> datetime:
    return datetime.utcnow()


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def parse_bool(value, default=False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def normalize_object_id_value(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value).strip())
    except (InvalidId, TypeError):
        return None


def require_object_id(value, label: str = "identifier") -> ObjectId:
    object_id = normalize_object_id_value(value)
    if object_id is None:
        raise ValidationError(f"Invalid {label}.", code="INVALID_ID")
    return object_id


def isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def money(value) -> float:
    return round(safe_float(value, 0.0), 2)
