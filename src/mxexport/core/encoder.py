"""
Wire encoding for EventRecords.

A record becomes seven text fields, always in this order::

    ID | OperationType | ClusterTime | FullDocument | Namespace | DocumentKey | UpdateDescription

Structured fields are compact JSON, absent ones are ``null`` and the cluster
time is ``YYYY-MM-DD HH:MM:SS`` in UTC. A field that cannot be serialized
fails the whole record with EncodingError.
"""

import json
from datetime import datetime, timezone
from typing import Any, List, Sequence

from .errors import EncodingError
from .models import EventRecord
from .utils.bson_convert import bson_safe

DELIMITER = "|"
CLUSTER_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# JSON only emits "|" inside string content; the escape keeps it off the wire.
_ESCAPED_DELIMITER = "\\u007c"


def format_cluster_time(seconds: int) -> str:
    """Format epoch seconds as ``YYYY-MM-DD HH:MM:SS`` (UTC).

    Raises:
        EncodingError: If the value is outside the representable date range
    """
    try:
        moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        raise EncodingError(f"cannot format clusterTime {seconds}: {e}", field="clusterTime") from e
    return moment.strftime(CLUSTER_TIME_FORMAT)


def encode_json(value: Any, field: str) -> str:
    """Serialize one structured field.

    Raises:
        EncodingError: If the value holds a type JSON cannot represent,
            a NaN/Infinity float, or a reference cycle
    """
    try:
        text = json.dumps(
            bson_safe(value),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        )
    except (TypeError, ValueError, RecursionError) as e:
        raise EncodingError(f"cannot serialize field '{field}': {e}", field=field) from e
    return text.replace(DELIMITER, _ESCAPED_DELIMITER)


def encode_scalar(value: str, field: str) -> str:
    if DELIMITER in value or "\n" in value:
        raise EncodingError(f"field '{field}' contains a reserved character: {value!r}", field=field)
    return value


def encode(record: EventRecord) -> List[str]:
    """
    Encode a record into its ordered wire fields.

    Args:
        record: Decoded change event

    Returns:
        Seven text fields in wire order

    Raises:
        EncodingError: If any field cannot be serialized

    Example:
        >>> encode(decode(change))
        ['{"_data":"abc"}', 'insert', '2023-11-14 22:13:20', '{"a":1}',
         '{"db":"d","coll":"c"}', '{"_id":1}', 'null']
    """
    return [
        encode_json(record.id, "_id"),
        encode_scalar(record.operation_name, "operationType"),
        format_cluster_time(record.cluster_time),
        encode_json(record.full_document, "fullDocument"),
        encode_json(record.namespace, "ns"),
        encode_json(record.document_key, "documentKey"),
        encode_json(record.update_description, "updateDescription"),
    ]


def join_fields(fields: Sequence[str], terminator: str = "") -> bytes:
    """Join wire fields with the delimiter and return UTF-8 bytes."""
    return (DELIMITER.join(fields) + terminator).encode("utf-8")
