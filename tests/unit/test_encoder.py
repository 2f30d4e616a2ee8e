"""Unit tests for wire encoding."""

import json
import math
import pytest
from datetime import datetime, timezone
from bson import Decimal128, ObjectId, Timestamp

from mxexport.core.encoder import DELIMITER, encode, format_cluster_time, join_fields
from mxexport.core.errors import EncodingError
from mxexport.core.models import decode

EXAMPLE_CHANGE = {
    "_id": {"_data": "abc"},
    "operationType": "insert",
    "clusterTime": 1700000000,
    "fullDocument": {"a": 1},
    "ns": {"db": "d", "coll": "c"},
    "documentKey": {"_id": 1},
}


def test_format_cluster_time_is_utc():
    assert format_cluster_time(1700000000) == "2023-11-14 22:13:20"
    assert format_cluster_time(0) == "1970-01-01 00:00:00"


def test_encode_example_event():
    fields = encode(decode(EXAMPLE_CHANGE))
    assert fields == [
        '{"_data":"abc"}',
        "insert",
        "2023-11-14 22:13:20",
        '{"a":1}',
        '{"db":"d","coll":"c"}',
        '{"_id":1}',
        "null",
    ]


def test_join_fields():
    fields = encode(decode(EXAMPLE_CHANGE))
    assert join_fields(fields, terminator="\n") == (
        b'{"_data":"abc"}|insert|2023-11-14 22:13:20|{"a":1}|{"db":"d","coll":"c"}|{"_id":1}|null\n'
    )
    assert join_fields(fields).endswith(b"|null")


def test_invalidate_encodes_absent_fields_as_null():
    fields = encode(decode({"_id": {"_data": "x"}, "operationType": "invalidate", "clusterTime": 1}))
    assert fields[3:] == ["null", "null", "null", "null"]


@pytest.mark.parametrize("change", [
    EXAMPLE_CHANGE,
    {
        "_id": {"_data": "826554"},
        "operationType": "update",
        "clusterTime": 1700000001,
        "fullDocument": {"name": "Zoë", "tags": ["a", "b"], "nested": {"x": None, "y": 1.5}},
        "ns": {"db": "shop", "coll": "orders"},
        "documentKey": {"_id": "o-1"},
        "updateDescription": {"updatedFields": {"name": "Zoë"}, "removedFields": ["old"]},
    },
    {
        "_id": {"_data": "826555"},
        "operationType": "replace",
        "clusterTime": 1700000002,
        "fullDocument": {"note": "a|b||c", "empty": {}, "list": []},
        "ns": {"db": "shop", "coll": "orders"},
        "documentKey": {"_id": 2},
    },
])
def test_structured_fields_round_trip(change):
    record = decode(change)
    fields = encode(record)

    assert json.loads(fields[0]) == record.id
    assert json.loads(fields[3]) == record.full_document
    assert json.loads(fields[4]) == record.namespace
    assert json.loads(fields[5]) == record.document_key
    assert json.loads(fields[6]) == record.update_description


def test_pipe_in_string_content_never_reaches_the_wire():
    change = dict(EXAMPLE_CHANGE, fullDocument={"a|b": "x|y"})
    fields = encode(decode(change))

    assert all(DELIMITER not in f for f in fields)
    assert json.loads(fields[3]) == {"a|b": "x|y"}
    assert join_fields(fields).count(b"|") == 6


def test_non_ascii_kept_as_utf8():
    change = dict(EXAMPLE_CHANGE, fullDocument={"city": "Zürich"})
    payload = join_fields(encode(decode(change)))
    assert "Zürich".encode("utf-8") in payload


def test_bson_types_are_converted():
    oid = ObjectId("65535e8f2f8b4c0012345678")
    created = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    change = dict(
        EXAMPLE_CHANGE,
        documentKey={"_id": oid},
        fullDocument={
            "_id": oid,
            "created": created,
            "price": Decimal128("9.99"),
            "blob": b"\x00\x01",
            "ts": Timestamp(1700000000, 3),
        },
    )
    fields = encode(decode(change))

    assert json.loads(fields[5]) == {"_id": "65535e8f2f8b4c0012345678"}
    assert json.loads(fields[3]) == {
        "_id": "65535e8f2f8b4c0012345678",
        "created": "2023-11-14T22:13:20+00:00",
        "price": "9.99",
        "blob": "AAE=",
        "ts": {"t": 1700000000, "i": 3},
    }


def test_unserializable_value_fails_whole_record():
    change = dict(EXAMPLE_CHANGE, fullDocument={"a": object()})
    with pytest.raises(EncodingError) as exc_info:
        encode(decode(change))
    assert exc_info.value.field == "fullDocument"


def test_nan_fails_whole_record():
    change = dict(EXAMPLE_CHANGE, documentKey={"_id": math.nan})
    with pytest.raises(EncodingError) as exc_info:
        encode(decode(change))
    assert exc_info.value.field == "documentKey"


def test_reserved_character_in_operation_name():
    change = {"_id": {"_data": "x"}, "operationType": "weird|op", "clusterTime": 1}
    with pytest.raises(EncodingError) as exc_info:
        encode(decode(change))
    assert exc_info.value.field == "operationType"


def test_unrepresentable_cluster_time():
    with pytest.raises(EncodingError) as exc_info:
        format_cluster_time(10**12)
    assert exc_info.value.field == "clusterTime"
