"""
Canonical change event model and sink targets.

`decode` turns one raw change stream document (as yielded by
``pymongo.collection.Collection.watch``) into an immutable EventRecord.
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from bson import Timestamp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import MalformedEventError


class OperationType(str, Enum):
    """Change stream operation types."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"
    INVALIDATE = "invalidate"
    OTHER = "other"

    @classmethod
    def parse(cls, name: str) -> "OperationType":
        """Map a change stream operationType string onto the enum.

        Collection and database level events (drop, rename, dropDatabase, ...)
        map to OTHER.
        """
        try:
            member = cls(name)
        except ValueError:
            return cls.OTHER
        return member

    @property
    def is_document_level(self) -> bool:
        """Whether the event always carries ``ns`` and ``documentKey``."""
        return self in _DOCUMENT_LEVEL


_DOCUMENT_LEVEL = frozenset({
    OperationType.INSERT,
    OperationType.UPDATE,
    OperationType.DELETE,
    OperationType.REPLACE,
})


class EventRecord(BaseModel):
    """One change stream event, normalized.

    Built per incoming event and discarded after one delivery attempt; what
    has been processed is tracked by the watcher's resume token, never here.
    """
    model_config = ConfigDict(frozen=True)

    id: Dict[str, Any] = Field(..., description="Resume token document (_id)")
    operation_type: OperationType = Field(..., description="Normalized operation type")
    operation_name: str = Field(..., description="operationType exactly as received")
    cluster_time: int = Field(..., ge=0, description="Cluster time in seconds since epoch")
    full_document: Optional[Dict[str, Any]] = Field(None, description="Document after the change")
    namespace: Optional[Dict[str, Any]] = Field(None, description="ns: database and collection")
    document_key: Optional[Dict[str, Any]] = Field(None, description="documentKey of the changed document")
    update_description: Optional[Dict[str, Any]] = Field(None, description="Only set for update events")

    @property
    def partition_key(self) -> str:
        """Inner resume position (``_id._data``), used to route stream records."""
        return self.id["_data"]


class StreamTarget(BaseModel):
    """Partitioned stream destination."""
    model_config = ConfigDict(frozen=True)

    stream_name: str = Field(..., min_length=1)


class TopicTarget(BaseModel):
    """Topic/subscription destination."""
    model_config = ConfigDict(frozen=True)

    topic: str = Field(..., min_length=1)
    subscription: str = Field(..., min_length=1)


SinkTarget = Union[StreamTarget, TopicTarget]

# EventRecord attribute -> change event key
_FIELD_BY_ATTR = {
    "id": "_id",
    "operation_name": "operationType",
    "cluster_time": "clusterTime",
    "full_document": "fullDocument",
    "namespace": "ns",
    "document_key": "documentKey",
    "update_description": "updateDescription",
}


def _mapping(raw: Mapping, key: str, required: bool) -> Optional[Dict[str, Any]]:
    value = raw.get(key)
    if value is None:
        if required:
            raise MalformedEventError(f"missing required field '{key}'", field=key)
        return None
    if not isinstance(value, Mapping):
        raise MalformedEventError(
            f"field '{key}' must be a document, got {type(value).__name__}", field=key
        )
    return dict(value)


# Largest epoch second a datetime can represent (9999-12-31 23:59:59 UTC)
MAX_CLUSTER_SECONDS = int(datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc).timestamp())


def _cluster_seconds(value: Any) -> int:
    if value is None:
        raise MalformedEventError("missing required field 'clusterTime'", field="clusterTime")
    if isinstance(value, Timestamp):
        seconds = value.time
    elif isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        seconds = int(value.timestamp())
    # bool is an int subclass
    elif isinstance(value, int) and not isinstance(value, bool):
        seconds = value
    else:
        raise MalformedEventError(
            f"field 'clusterTime' must be a timestamp, got {type(value).__name__}", field="clusterTime"
        )

    if not 0 <= seconds <= MAX_CLUSTER_SECONDS:
        raise MalformedEventError(
            f"field 'clusterTime' out of range: {seconds}", field="clusterTime"
        )
    return seconds


def decode(raw: Any) -> EventRecord:
    """
    Build an EventRecord from a raw change stream document.

    Args:
        raw: Change event mapping with ``_id``, ``operationType``,
            ``clusterTime``, ``fullDocument``, ``ns``, ``documentKey`` and
            ``updateDescription`` keys

    Returns:
        The normalized record

    Raises:
        MalformedEventError: If a required field is missing or has the wrong shape

    Example:
        >>> record = decode({
        ...     "_id": {"_data": "abc"}, "operationType": "insert",
        ...     "clusterTime": 1700000000, "fullDocument": {"a": 1},
        ...     "ns": {"db": "d", "coll": "c"}, "documentKey": {"_id": 1},
        ... })
        >>> record.partition_key
        'abc'
    """
    if not isinstance(raw, Mapping):
        raise MalformedEventError(f"change event must be a document, got {type(raw).__name__}")

    token = _mapping(raw, "_id", required=True)
    if not isinstance(token.get("_data"), str):
        raise MalformedEventError("field '_id._data' must be a string resume position", field="_id")

    operation_name = raw.get("operationType")
    if not isinstance(operation_name, str) or not operation_name:
        raise MalformedEventError("field 'operationType' must be a non-empty string", field="operationType")
    operation_type = OperationType.parse(operation_name)

    cluster_time = _cluster_seconds(raw.get("clusterTime"))

    document_level = operation_type.is_document_level
    namespace = _mapping(raw, "ns", required=document_level)
    document_key = _mapping(raw, "documentKey", required=document_level)
    full_document = _mapping(raw, "fullDocument", required=False)

    update_description = None
    if operation_type is OperationType.UPDATE:
        update_description = _mapping(raw, "updateDescription", required=False)

    try:
        return EventRecord(
            id=token,
            operation_type=operation_type,
            operation_name=operation_name,
            cluster_time=cluster_time,
            full_document=full_document,
            namespace=namespace,
            document_key=document_key,
            update_description=update_description,
        )
    except ValidationError as e:
        error = e.errors()[0]
        raise MalformedEventError(
            f"change event rejected: {error['msg']}", field=_FIELD_BY_ATTR.get(error["loc"][0])
        ) from e
