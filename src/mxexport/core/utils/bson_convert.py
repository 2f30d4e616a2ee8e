"""
BSON to JSON-serializable converter utility.

Converts MongoDB BSON types found in change events to JSON-serializable
Python types before they are written to the wire.
"""

from bson import ObjectId, Decimal128, Timestamp
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from uuid import UUID
import base64
from typing import Any


def bson_safe(value: Any) -> Any:
    """
    Recursively convert BSON types to JSON-serializable Python types.

    Handles:
    - ObjectId -> str
    - datetime -> ISO string
    - Decimal128 / Decimal -> str
    - bytes (and bson.Binary) -> base64 string
    - Timestamp -> {"t": seconds, "i": increment}
    - UUID -> str
    - Nested dicts and lists

    Anything else is returned unchanged, so an unsupported type still fails
    loudly when the caller serializes the result.

    Args:
        value: Value to convert (can be any BSON type)

    Returns:
        JSON-serializable Python value

    Example:
        >>> from bson import ObjectId
        >>> doc = {"_id": ObjectId(), "name": "test"}
        >>> safe = bson_safe(doc)
        >>> isinstance(safe["_id"], str)
        True
    """
    if value is None:
        return None

    if isinstance(value, ObjectId):
        return str(value)

    if isinstance(value, datetime):
        return value.isoformat()

    if isinstance(value, (Decimal128, Decimal)):
        return str(value)

    if isinstance(value, Timestamp):
        return {"t": value.time, "i": value.inc}

    if isinstance(value, UUID):
        return str(value)

    if isinstance(value, bytes):
        return base64.b64encode(value).decode('ascii')

    if isinstance(value, Mapping):
        return {k: bson_safe(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [bson_safe(v) for v in value]

    if isinstance(value, (set, frozenset)):
        return [bson_safe(v) for v in value]

    return value
