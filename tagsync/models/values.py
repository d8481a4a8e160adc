"""
Value helpers shared by the store adapters, the offline queue and the engine.
"""
import hashlib
import json
from datetime import date
from decimal import Decimal
from typing import Any


class _Absent:
    """Marker for a tag that holds no value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Absent, ())


ABSENT = _Absent()

FORBIDDEN_TAG_CHARS = set(".#$[]/")


def is_absent(value: Any) -> bool:
    return value is ABSENT


def json_serialize_fallback(obj: Any) -> Any:
    """
    JSON serialization fallback for non-standard types.

    Args:
        obj: Object to serialize

    Returns:
        Serializable representation of the object

    Raises:
        TypeError: If object is not serializable
    """
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def dumps(value: Any) -> str:
    """Serialize a value with keys sorted so equal values give equal text."""
    return json.dumps(value, default=json_serialize_fallback, sort_keys=True, separators=(",", ":"))


def fingerprint(value: Any) -> str:
    """Content hash of a value, used where the backend provides no version."""
    if is_absent(value):
        return "absent"
    return hashlib.sha1(dumps(value).encode("utf-8")).hexdigest()


def to_host(value: Any) -> Any:
    """Host callbacks see None where the store holds ABSENT."""
    return None if is_absent(value) else value
