"""Tests for the SQL checkpoint store, run against a SQLite file."""

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock
from sqlalchemy.exc import OperationalError

from mxexport.connectors.cdc import CheckpointError, CheckpointStore, TransientCheckpointError


@pytest.fixture
def store(tmp_path):
    store = CheckpointStore(f"sqlite:///{tmp_path / 'checkpoints.db'}")
    yield store
    store.close()


def test_load_missing_checkpoint(store):
    assert store.load_checkpoint("job", "orders") is None


def test_save_then_load(store):
    token = {"_data": "8265535E8F000000012B022C0100296E5A1004"}
    store.save_checkpoint("job", "orders", token, last_event_time=datetime.now(timezone.utc), records_processed=1)

    assert store.load_checkpoint("job", "orders") == token


def test_save_overwrites_previous_position(store):
    store.save_checkpoint("job", "orders", {"_data": "a"}, records_processed=1)
    store.save_checkpoint("job", "orders", {"_data": "b"}, records_processed=2)

    assert store.load_checkpoint("job", "orders") == {"_data": "b"}


def test_checkpoints_are_keyed_by_job_and_collection(store):
    store.save_checkpoint("job", "orders", {"_data": "a"})
    store.save_checkpoint("job", "users", {"_data": "b"})
    store.save_checkpoint("other", "orders", {"_data": "c"})

    assert store.load_checkpoint("job", "orders") == {"_data": "a"}
    assert store.load_checkpoint("job", "users") == {"_data": "b"}
    assert store.load_checkpoint("other", "orders") == {"_data": "c"}


def test_checkpoint_survives_reopen(tmp_path):
    url = f"sqlite:///{tmp_path / 'checkpoints.db'}"
    first = CheckpointStore(url)
    first.save_checkpoint("job", "orders", {"_data": "a"})
    first.close()

    second = CheckpointStore(url)
    try:
        assert second.load_checkpoint("job", "orders") == {"_data": "a"}
    finally:
        second.close()


@pytest.mark.parametrize("token", [None, {}, "token", ["_data"]])
def test_invalid_token_rejected(store, token):
    with pytest.raises(CheckpointError, match="Invalid resume token"):
        store.save_checkpoint("job", "orders", token)


def test_delete_checkpoint(store):
    store.save_checkpoint("job", "orders", {"_data": "a"})
    store.delete_checkpoint("job", "orders")

    assert store.load_checkpoint("job", "orders") is None


def test_transient_error_is_retried(store, monkeypatch):
    monkeypatch.setattr(CheckpointStore.save_checkpoint.retry, "sleep", lambda seconds: None)
    session = Mock()
    session.begin.side_effect = OperationalError("UPDATE", {}, Exception("database is locked"))
    store.SessionLocal = Mock(return_value=session)

    with pytest.raises(TransientCheckpointError):
        store.save_checkpoint("job", "orders", {"_data": "a"})

    assert session.begin.call_count == 3
    assert session.close.call_count == 3


def test_unreachable_database():
    with pytest.raises(CheckpointError, match="Database connection failed"):
        CheckpointStore("sqlite:////nonexistent-dir/sub/checkpoints.db")
