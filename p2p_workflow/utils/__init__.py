"""
Shared utilities and helpers.
"""

import json
from typing import Any, Dict
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def serialize_for_json(obj: Any) -> Any:
    """Serialize objects that aren't JSON-serializable by default."""
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif hasattr(obj, "model_dump"):  # Pydantic model
        return obj.model_dump(mode="json")
    elif isinstance(obj, set):
        return sorted(obj)
    return str(obj)


def dict_to_json_string(data: Dict) -> str:
    """Convert dict to JSON string, handling non-serializable types."""
    return json.dumps(data, default=serialize_for_json, indent=2)


def round_money(amount: float) -> float:
    """Round a monetary amount to cents."""
    return round(float(amount), 2)


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safe division with default value."""
    if denominator == 0:
        return default
    return numerator / denominator


def calculate_percentage_variance(actual: float, expected: float) -> float:
    """Calculate percentage variance between actual and expected."""
    if expected == 0:
        return 0.0 if actual == 0 else 1.0
    return abs(actual - expected) / abs(expected)
