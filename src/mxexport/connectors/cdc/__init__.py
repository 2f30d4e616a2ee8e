"""
CDC (Change Data Capture) module for MongoDB changestream export.
"""

from .mongo_changestream import ChangeStreamWatcher, CDCConfig, CDCError, CheckpointError
from .checkpoint_store import CheckpointStore, CDCCheckpoint, TransientCheckpointError

__all__ = [
    "ChangeStreamWatcher",
    "CDCConfig",
    "CDCError",
    "CheckpointError",
    "TransientCheckpointError",
    "CheckpointStore",
    "CDCCheckpoint",
]
