"""
MongoDB change stream watcher that exports every event to the configured sink.

Responsibilities:
1. Watch a MongoDB collection for changes, resuming from the last checkpoint
2. Export each event through the Exporter, one at a time
3. Persist the resume token only after the sink acknowledged the event
4. Retry transient failures (sink or MongoDB) with exponential backoff
5. Graceful shutdown on SIGTERM/SIGINT
6. Metrics instrumentation (events, lag, retries)
"""

from pymongo.collection import Collection
from pymongo.errors import PyMongoError, OperationFailure, ConnectionFailure, ServerSelectionTimeoutError
from typing import TYPE_CHECKING, Optional, Dict, Any, List, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
import time
import threading
import signal

from bson import Timestamp
from prometheus_client import Counter, Gauge

from ...core.context import ExportContext
from ...core.errors import StageError
from ...exporter import Exporter
from ...utils.logging import get_logger

if TYPE_CHECKING:
    from .checkpoint_store import CheckpointStore

logger = get_logger(__name__)

# Prometheus metrics
cdc_events_processed = Counter(
    'mxexport_cdc_events_total',
    'Change events handled by the watcher',
    ['collection', 'outcome']
)

cdc_lag_seconds = Gauge(
    'mxexport_cdc_lag_seconds',
    'Lag between cluster time and export',
    ['collection']
)

cdc_retries_total = Counter(
    'mxexport_cdc_retries_total',
    'Retries after transient failures',
    ['collection', 'error_type']
)

# Non-retryable codes: 18 (AuthenticationFailed), 13 (Unauthorized),
# 286 (ChangeStreamHistoryLost), 280 (ChangeStreamFatalError)
_FATAL_OPERATION_CODES = {13, 18, 280, 286}


@dataclass
class CDCConfig:
    """Configuration for the change stream watcher."""
    max_retries: int = 5
    retry_backoff_base: int = 2  # Exponential backoff: 2^attempt seconds
    max_retry_delay: int = 60  # Max 60 seconds between retries
    export_timeout: float = 60.0  # Deadline for one export attempt
    full_document: str = "updateLookup"
    skip_malformed: bool = False
    pipeline_filter: Optional[List[Dict]] = None  # Changestream pipeline

    def __post_init__(self):
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.retry_backoff_base <= 0:
            raise ValueError("retry_backoff_base must be positive")
        if self.max_retry_delay <= 0:
            raise ValueError("max_retry_delay must be positive")
        if self.export_timeout <= 0:
            raise ValueError("export_timeout must be positive")


class CDCError(Exception):
    """Base exception for CDC errors."""
    pass


class CheckpointError(CDCError):
    """Error saving/loading checkpoint."""
    pass


class ChangeStreamWatcher:
    """
    Watch a MongoDB change stream and export each event.

    The resume token is saved after every acknowledged export, never before,
    so a crash or a delivery failure replays the event instead of losing it.

    Thread Safety: NOT thread-safe. Use one instance per collection.

    Example:
        >>> watcher = ChangeStreamWatcher(
        ...     collection=db['orders'],
        ...     exporter=exporter,
        ...     checkpoint_store=store,
        ...     config=CDCConfig(),
        ...     job_id="orders-export"
        ... )
        >>> watcher.start()
    """

    def __init__(
        self,
        collection: Collection,
        exporter: Exporter,
        checkpoint_store: 'CheckpointStore',
        config: CDCConfig,
        job_id: str
    ):
        """
        Initialize changestream watcher.

        Args:
            collection: PyMongo collection to watch
            exporter: Exporter every event is handed to
            checkpoint_store: Store for resume token persistence
            config: CDC configuration
            job_id: Job identifier for checkpoint storage

        Raises:
            TypeError: If collection or checkpoint store have the wrong type
        """
        if not isinstance(collection, Collection):
            raise TypeError("collection must be a PyMongo Collection instance")

        if not hasattr(checkpoint_store, 'save_checkpoint'):
            raise TypeError("checkpoint_store must be a CheckpointStore instance")

        self.collection = collection
        self.exporter = exporter
        self.checkpoint_store = checkpoint_store
        self.config = config
        self.job_id = job_id
        self.collection_name = collection.name

        # State management
        self.running: bool = False
        self.stop_requested: bool = False
        self.current_resume_token: Optional[Dict[str, Any]] = None
        self.records_processed: int = 0
        self._current_ctx: Optional[ExportContext] = None

        # Signal handlers
        self._original_sigterm = None
        self._original_sigint = None

        logger.info(
            f"Initialized ChangeStreamWatcher for collection {self.collection_name}",
            extra={
                "job_id": self.job_id,
                "collection": self.collection_name,
                "sink": self.exporter.connector.name
            }
        )

    def start(self) -> None:
        """
        Start watching the change stream (blocking call).

        Loads the resume token, opens the stream, exports events one by one
        and reopens the stream after transient MongoDB errors. Returns after
        ``stop()`` or when the stream is invalidated.

        Raises:
            CDCError: On unrecoverable errors or when retries are exhausted
        """
        self.running = True
        self.stop_requested = False

        self._setup_signal_handlers()

        try:
            self.current_resume_token = self.checkpoint_store.load_checkpoint(
                self.job_id,
                self.collection_name
            )
            if self.current_resume_token:
                logger.info(
                    f"Resuming from checkpoint for collection {self.collection_name}",
                    extra={"job_id": self.job_id, "collection": self.collection_name}
                )
        except CheckpointError as e:
            self._restore_signal_handlers()
            raise CDCError(f"Failed to load checkpoint: {e}") from e

        attempt = 0
        try:
            while self.running and not self.stop_requested:
                processed_before = self.records_processed
                try:
                    self._process_changestream()
                    break

                except (ConnectionFailure, ServerSelectionTimeoutError, OperationFailure) as e:
                    if self.records_processed > processed_before:
                        attempt = 0
                    if not self._is_retryable_error(e):
                        logger.error(
                            f"Non-retryable MongoDB error: {e}",
                            extra={"job_id": self.job_id, "collection": self.collection_name}
                        )
                        raise CDCError(f"Non-retryable error: {e}") from e

                    attempt += 1
                    if attempt > self.config.max_retries:
                        raise CDCError(f"Max retries exceeded: {e}") from e
                    self._backoff(e, attempt)

                except PyMongoError as e:
                    raise CDCError(f"MongoDB error: {e}") from e
        finally:
            self._shutdown()

    def _process_changestream(self) -> None:
        """Open the change stream and export events until stopped."""
        stream_options: Dict[str, Any] = {
            "full_document": self.config.full_document,
            "max_await_time_ms": 1000
        }
        if self.current_resume_token:
            stream_options["resume_after"] = self.current_resume_token

        pipeline = self.config.pipeline_filter or []

        logger.info(
            f"Opening changestream for collection {self.collection_name}",
            extra={
                "job_id": self.job_id,
                "collection": self.collection_name,
                "has_resume_token": self.current_resume_token is not None
            }
        )

        with self.collection.watch(pipeline=pipeline, **stream_options) as stream:
            while self.running and not self.stop_requested:
                change = stream.try_next()
                if change is None:
                    if not stream.alive:
                        logger.info(
                            "Changestream closed",
                            extra={"job_id": self.job_id, "collection": self.collection_name}
                        )
                        return
                    continue

                if not self._export_with_retry(change):
                    return

                self._checkpoint(stream.resume_token or change.get("_id"))

                if 'clusterTime' in change:
                    cdc_lag_seconds.labels(collection=self.collection_name).set(
                        self._calculate_lag(change['clusterTime'])
                    )

    def _export_with_retry(self, change: Mapping[str, Any]) -> bool:
        """
        Export one event, retrying retryable stage errors.

        Returns:
            True if the event was exported or skipped, False if a stop was
            requested before it could be exported

        Raises:
            CDCError: If retries are exhausted, or the event is malformed and
                ``skip_malformed`` is off
        """
        attempt = 0
        while True:
            if self.stop_requested:
                return False

            self._current_ctx = ExportContext.with_timeout(self.config.export_timeout)
            try:
                self.exporter.export(self._current_ctx, change)
                cdc_events_processed.labels(collection=self.collection_name, outcome="exported").inc()
                return True

            except StageError as e:
                if self.stop_requested:
                    return False

                if not e.retryable:
                    if self.config.skip_malformed:
                        logger.warning(
                            f"Skipping event that failed at {e.stage}: {e.cause}",
                            extra={
                                "job_id": self.job_id,
                                "collection": self.collection_name,
                                "stage": e.stage,
                                "resume_token": change.get("_id")
                            }
                        )
                        cdc_events_processed.labels(collection=self.collection_name, outcome="skipped").inc()
                        return True
                    raise CDCError(f"Cannot export event: {e}") from e

                attempt += 1
                if attempt > self.config.max_retries:
                    cdc_events_processed.labels(collection=self.collection_name, outcome="failed").inc()
                    raise CDCError(f"Max retries exceeded exporting event: {e}") from e
                self._backoff(e, attempt)

            finally:
                self._current_ctx = None

    def _checkpoint(self, resume_token: Optional[Dict[str, Any]]) -> None:
        """Record and persist the position of the last exported event."""
        if not resume_token:
            return

        self.current_resume_token = resume_token
        self.records_processed += 1
        try:
            self.checkpoint_store.save_checkpoint(
                job_id=self.job_id,
                collection=self.collection_name,
                resume_token=resume_token,
                last_event_time=datetime.now(timezone.utc),
                records_processed=self.records_processed
            )
        except CheckpointError as e:
            # The event is already delivered; a stale checkpoint only means a replay
            logger.error(
                f"Failed to save checkpoint: {e}",
                extra={"job_id": self.job_id, "collection": self.collection_name}
            )

    def stop(self) -> None:
        """Request a graceful stop and cancel any in-flight export."""
        logger.info(
            f"Stopping changestream watcher for collection {self.collection_name}",
            extra={"job_id": self.job_id, "collection": self.collection_name}
        )
        self.stop_requested = True
        self.running = False
        ctx = self._current_ctx
        if ctx is not None:
            ctx.cancel()

    def _shutdown(self) -> None:
        """Perform graceful shutdown."""
        self.running = False
        self._restore_signal_handlers()

        logger.info(
            f"Shutdown complete for collection {self.collection_name}",
            extra={
                "job_id": self.job_id,
                "collection": self.collection_name,
                "total_processed": self.records_processed
            }
        )

    def _backoff(self, error: Exception, attempt: int) -> None:
        """Sleep ``min(base ** attempt, max_delay)`` seconds before retrying."""
        delay = min(
            self.config.retry_backoff_base ** attempt,
            self.config.max_retry_delay
        )

        logger.warning(
            f"Error occurred, retrying in {delay}s (attempt {attempt}/{self.config.max_retries})",
            extra={
                "job_id": self.job_id,
                "collection": self.collection_name,
                "attempt": attempt,
                "max_retries": self.config.max_retries,
                "delay_seconds": delay,
                "error": str(error),
                "error_type": type(error).__name__
            }
        )
        cdc_retries_total.labels(
            collection=self.collection_name,
            error_type=type(error).__name__
        ).inc()

        time.sleep(delay)

    def _is_retryable_error(self, error: PyMongoError) -> bool:
        """Check if a MongoDB error is worth reopening the stream for."""
        if isinstance(error, OperationFailure):
            return error.code not in _FATAL_OPERATION_CODES
        return True

    def _calculate_lag(self, cluster_time: Any) -> float:
        """
        Seconds between the event's cluster time and now.

        Args:
            cluster_time: ``bson.Timestamp`` or epoch seconds

        Returns:
            Lag in seconds, never negative
        """
        if isinstance(cluster_time, Timestamp):
            seconds = cluster_time.time
        elif isinstance(cluster_time, (int, float)):
            seconds = cluster_time
        else:
            return 0.0
        return max(0.0, time.time() - seconds)

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return

        def signal_handler(signum, frame):
            logger.info(
                f"Received shutdown signal {signum}",
                extra={"job_id": self.job_id, "collection": self.collection_name}
            )
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
            self._original_sigterm = None
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
            self._original_sigint = None
