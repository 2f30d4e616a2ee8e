"""Unit tests for the change stream watcher."""

import typing

import pytest
from unittest.mock import Mock, patch
from pymongo.collection import Collection
from pymongo.errors import ConnectionFailure, OperationFailure

from mxexport.connectors.cdc.mongo_changestream import (
    ChangeStreamWatcher, CDCConfig, CDCError, CheckpointError
)
from mxexport.core.errors import DeliveryError, MalformedEventError, StageError
from mxexport.core.models import StreamTarget
from mxexport.exporter import Exporter


def make_change(n):
    return {
        "_id": {"_data": f"token-{n}"},
        "operationType": "insert",
        "clusterTime": 1700000000 + n,
        "fullDocument": {"n": n},
        "ns": {"db": "d", "coll": "orders"},
        "documentKey": {"_id": n},
    }


class FakeStream:
    """Change stream that yields the given items, then reports closed.

    Exception instances in ``items`` are raised from ``try_next``.
    """

    def __init__(self, items):
        self.items = list(items)
        self.alive = True
        self.resume_token = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def try_next(self):
        if not self.items:
            self.alive = False
            return None
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        self.resume_token = item["_id"]
        return item


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("mxexport.connectors.cdc.mongo_changestream.time.sleep") as sleep:
        yield sleep


@pytest.fixture
def collection():
    collection = Mock(spec=Collection)
    collection.name = "orders"
    return collection


@pytest.fixture
def store():
    store = Mock()
    store.load_checkpoint.return_value = None
    return store


@pytest.fixture
def exporter():
    exporter = Mock()
    exporter.connector.name = "kinesis-stream"
    return exporter


def make_watcher(collection, exporter, store, **config):
    return ChangeStreamWatcher(
        collection=collection,
        exporter=exporter,
        checkpoint_store=store,
        config=CDCConfig(**config),
        job_id="test_job",
    )


def saved_tokens(store):
    return [c.kwargs["resume_token"] for c in store.save_checkpoint.call_args_list]


def deliver_failure():
    return StageError(StageError.DELIVER, DeliveryError("stream unavailable"))


class TestCDCConfig:
    """Test CDCConfig."""

    def test_defaults(self):
        config = CDCConfig()
        assert config.max_retries == 5
        assert config.full_document == "updateLookup"
        assert config.skip_malformed is False

    @pytest.mark.parametrize("kwargs,message", [
        ({"max_retries": -1}, "max_retries must be non-negative"),
        ({"retry_backoff_base": 0}, "retry_backoff_base must be positive"),
        ({"max_retry_delay": 0}, "max_retry_delay must be positive"),
        ({"export_timeout": 0}, "export_timeout must be positive"),
    ])
    def test_invalid_values(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            CDCConfig(**kwargs)


class TestChangeStreamWatcher:
    """Test ChangeStreamWatcher."""

    def test_init_validates_collection(self, exporter, store):
        with pytest.raises(TypeError, match="collection must be a PyMongo Collection"):
            make_watcher("not_a_collection", exporter, store)

    def test_init_validates_checkpoint_store(self, collection, exporter):
        with pytest.raises(TypeError, match="checkpoint_store"):
            make_watcher(collection, exporter, object())

    def test_exports_and_checkpoints_each_event(self, collection, exporter, store):
        collection.watch.return_value = FakeStream([make_change(1), make_change(2)])
        watcher = make_watcher(collection, exporter, store)

        watcher.start()

        assert [c.args[1] for c in exporter.export.call_args_list] == [make_change(1), make_change(2)]
        assert saved_tokens(store) == [{"_data": "token-1"}, {"_data": "token-2"}]
        assert store.save_checkpoint.call_args.kwargs["records_processed"] == 2
        assert watcher.records_processed == 2

    def test_opens_stream_with_full_document_mode(self, collection, exporter, store):
        collection.watch.return_value = FakeStream([])
        make_watcher(collection, exporter, store, full_document="whenAvailable").start()

        kwargs = collection.watch.call_args.kwargs
        assert kwargs["full_document"] == "whenAvailable"
        assert kwargs["pipeline"] == []
        assert "resume_after" not in kwargs

    def test_resumes_from_checkpoint(self, collection, exporter, store):
        store.load_checkpoint.return_value = {"_data": "token-0"}
        collection.watch.return_value = FakeStream([])

        make_watcher(collection, exporter, store).start()

        store.load_checkpoint.assert_called_once_with("test_job", "orders")
        assert collection.watch.call_args.kwargs["resume_after"] == {"_data": "token-0"}

    def test_checkpoint_load_failure(self, collection, exporter, store):
        store.load_checkpoint.side_effect = CheckpointError("db down")

        with pytest.raises(CDCError, match="Failed to load checkpoint"):
            make_watcher(collection, exporter, store).start()
        collection.watch.assert_not_called()

    def test_retryable_failure_is_retried_before_checkpoint(self, collection, exporter, store, no_sleep):
        exporter.export.side_effect = [deliver_failure(), deliver_failure(), None]
        collection.watch.return_value = FakeStream([make_change(1)])

        make_watcher(collection, exporter, store, max_retries=3).start()

        assert exporter.export.call_count == 3
        assert [c.args[0] for c in no_sleep.call_args_list] == [2, 4]
        assert saved_tokens(store) == [{"_data": "token-1"}]

    def test_backoff_is_capped(self, collection, exporter, store, no_sleep):
        exporter.export.side_effect = [deliver_failure()] * 4 + [None]
        collection.watch.return_value = FakeStream([make_change(1)])

        make_watcher(collection, exporter, store, max_retries=5, max_retry_delay=5).start()

        assert [c.args[0] for c in no_sleep.call_args_list] == [2, 4, 5, 5]

    def test_retries_exhausted_does_not_checkpoint(self, collection, exporter, store):
        exporter.export.side_effect = deliver_failure()
        collection.watch.return_value = FakeStream([make_change(1), make_change(2)])

        with pytest.raises(CDCError, match="Max retries exceeded exporting event"):
            make_watcher(collection, exporter, store, max_retries=2).start()

        assert exporter.export.call_count == 3
        store.save_checkpoint.assert_not_called()

    def test_malformed_event_stops_watcher(self, collection, exporter, store):
        exporter.export.side_effect = StageError(StageError.DECODE, MalformedEventError("bad", "ns"))
        collection.watch.return_value = FakeStream([make_change(1)])

        with pytest.raises(CDCError, match="Cannot export event"):
            make_watcher(collection, exporter, store).start()

        assert exporter.export.call_count == 1
        store.save_checkpoint.assert_not_called()

    def test_malformed_event_skipped_when_configured(self, collection, exporter, store):
        exporter.export.side_effect = [
            StageError(StageError.DECODE, MalformedEventError("bad", "ns")),
            None,
        ]
        collection.watch.return_value = FakeStream([make_change(1), make_change(2)])

        make_watcher(collection, exporter, store, skip_malformed=True).start()

        assert exporter.export.call_count == 2
        assert saved_tokens(store) == [{"_data": "token-1"}, {"_data": "token-2"}]

    def test_reopens_stream_after_connection_failure(self, collection, exporter, store, no_sleep):
        collection.watch.side_effect = [
            FakeStream([make_change(1), ConnectionFailure("connection reset")]),
            FakeStream([make_change(2)]),
        ]

        make_watcher(collection, exporter, store).start()

        assert collection.watch.call_count == 2
        assert collection.watch.call_args.kwargs["resume_after"] == {"_data": "token-1"}
        assert saved_tokens(store) == [{"_data": "token-1"}, {"_data": "token-2"}]
        no_sleep.assert_called_once_with(2)

    def test_connection_retries_exhausted(self, collection, exporter, store):
        collection.watch.side_effect = ConnectionFailure("no primary")

        with pytest.raises(CDCError, match="Max retries exceeded"):
            make_watcher(collection, exporter, store, max_retries=2).start()

        assert collection.watch.call_count == 3

    def test_fatal_operation_failure(self, collection, exporter, store, no_sleep):
        collection.watch.side_effect = OperationFailure("Authentication failed", code=18)

        with pytest.raises(CDCError, match="Non-retryable error"):
            make_watcher(collection, exporter, store).start()

        assert collection.watch.call_count == 1
        no_sleep.assert_not_called()

    def test_checkpoint_save_failure_does_not_stop_export(self, collection, exporter, store):
        store.save_checkpoint.side_effect = CheckpointError("db down")
        collection.watch.return_value = FakeStream([make_change(1), make_change(2)])

        watcher = make_watcher(collection, exporter, store)
        watcher.start()

        assert exporter.export.call_count == 2
        assert watcher.current_resume_token == {"_data": "token-2"}

    def test_stop_cancels_in_flight_export(self, collection, exporter, store):
        watcher = make_watcher(collection, exporter, store)
        seen = []

        def export(ctx, change):
            watcher.stop()
            seen.append(ctx.cancelled)
            raise deliver_failure()

        exporter.export.side_effect = export
        collection.watch.return_value = FakeStream([make_change(1), make_change(2)])

        watcher.start()

        assert seen == [True]
        assert exporter.export.call_count == 1
        store.save_checkpoint.assert_not_called()
        assert watcher.running is False

    def test_calculate_lag(self, collection, exporter, store):
        watcher = make_watcher(collection, exporter, store)
        assert watcher._calculate_lag("not a time") == 0.0
        assert watcher._calculate_lag(4102444800) == 0.0
        assert watcher._calculate_lag(0) > 0


def test_checkpoint_store_annotation_resolves():
    from mxexport.connectors.cdc import checkpoint_store, mongo_changestream

    hints = typing.get_type_hints(
        ChangeStreamWatcher.__init__,
        globalns={**vars(mongo_changestream), **vars(checkpoint_store)},
    )
    assert hints["checkpoint_store"] is checkpoint_store.CheckpointStore


def test_out_of_range_cluster_time_is_skipped_when_configured(collection, store):
    connector = Mock()
    connector.name = "kinesis-stream"
    connector.deliver.return_value = "4960"
    exporter = Exporter(StreamTarget(stream_name="cdc"), connector)
    bad = dict(make_change(1), clusterTime=10**12)
    collection.watch.return_value = FakeStream([bad, make_change(2)])

    make_watcher(collection, exporter, store, skip_malformed=True).start()

    assert connector.deliver.call_count == 1
    assert saved_tokens(store) == [{"_data": "token-1"}, {"_data": "token-2"}]
