"""
Event model, wire encoding and error taxonomy shared by every sink.
"""

from .context import ExportContext
from .encoder import DELIMITER, encode, format_cluster_time, join_fields
from .errors import (
    ContextCancelledError,
    DeliveryError,
    EncodingError,
    ExportError,
    MalformedEventError,
    ProvisioningError,
    StageError,
)
from .models import EventRecord, OperationType, SinkTarget, StreamTarget, TopicTarget, decode

__all__ = [
    "ExportContext",
    "DELIMITER",
    "encode",
    "format_cluster_time",
    "join_fields",
    "ContextCancelledError",
    "DeliveryError",
    "EncodingError",
    "ExportError",
    "MalformedEventError",
    "ProvisioningError",
    "StageError",
    "EventRecord",
    "OperationType",
    "SinkTarget",
    "StreamTarget",
    "TopicTarget",
    "decode",
]
