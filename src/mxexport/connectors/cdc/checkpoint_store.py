"""
SQL-backed checkpoint store for change stream resume tokens.

One row per (job_id, collection). The watcher writes a row only after the
event at that position was acknowledged by the sink.
"""

from sqlalchemy import create_engine, Column, String, DateTime, JSON, BigInteger, Integer, UniqueConstraint, Index, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from prometheus_client import Counter

from .mongo_changestream import CheckpointError
from ...utils.logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CDCCheckpoint(Base):
    """
    Resume position of one exporter job on one collection.

    Stores:
    - job_id: Exporter instance identifier
    - collection: MongoDB collection name
    - resume_token: Change stream resume token (JSON)
    - last_event_time: When the last event at this position was exported
    - records_processed: Events exported by the job so far
    """
    __tablename__ = "cdc_checkpoints"

    # SQLite only autoincrements INTEGER primary keys
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(String(255), nullable=False, index=True)
    collection = Column(String(255), nullable=False, index=True)
    resume_token = Column(JSON, nullable=False)
    last_event_time = Column(DateTime(timezone=True), nullable=True)
    records_processed = Column(BigInteger, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint('job_id', 'collection', name='uq_cdc_checkpoints_job_collection'),
        Index('idx_cdc_checkpoints_updated_at', 'updated_at'),
    )


checkpoint_saves_total = Counter(
    'mxexport_cdc_checkpoint_saves_total',
    'Total checkpoint saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'mxexport_cdc_checkpoint_loads_total',
    'Total checkpoint loads',
    ['status']
)


class TransientCheckpointError(CheckpointError):
    """Database was unreachable; the operation may succeed if retried."""
    pass


_retry_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TransientCheckpointError),
    reraise=True
)


def _validate_resume_token(token: Any) -> bool:
    """Resume tokens are non-empty documents."""
    return isinstance(token, dict) and len(token) > 0


class CheckpointStore:
    """
    Thread-safe checkpoint store.

    Features:
    - Transactions per save (PostgreSQL in production, SQLite for local runs)
    - Automatic retry on transient connection failures
    - Connection pooling
    - Metrics instrumentation

    Thread Safety: YES (SQLAlchemy session per call)

    Example:
        >>> store = CheckpointStore(database_url)
        >>> store.save_checkpoint(job_id, collection, resume_token)
        >>> token = store.load_checkpoint(job_id, collection)
    """

    def __init__(self, database_url: str):
        """
        Initialize checkpoint store.

        Args:
            database_url: SQLAlchemy connection URL

        Raises:
            CheckpointError: If database connection fails
        """
        engine_options: Dict[str, Any] = {"pool_pre_ping": True, "echo": False}
        if not database_url.startswith("sqlite"):
            engine_options.update(pool_size=5, max_overflow=10, pool_recycle=3600)

        try:
            self.engine = create_engine(database_url, **engine_options)

            self.SessionLocal = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False
            )

            Base.metadata.create_all(self.engine)

            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info("CheckpointStore initialized successfully")

        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize CheckpointStore: {e}")
            raise CheckpointError(f"Database connection failed: {e}") from e

    @_retry_transient
    def save_checkpoint(
        self,
        job_id: str,
        collection: str,
        resume_token: Dict[str, Any],
        last_event_time: Optional[datetime] = None,
        records_processed: int = 0
    ) -> None:
        """
        Save checkpoint (upsert).

        Args:
            job_id: Job identifier
            collection: MongoDB collection name
            resume_token: Change stream resume token
            last_event_time: Time the event at this position was exported
            records_processed: Total records processed so far

        Raises:
            CheckpointError: If save fails after retries
        """
        if not _validate_resume_token(resume_token):
            checkpoint_saves_total.labels(status='invalid').inc()
            raise CheckpointError("Invalid resume token structure")

        session: Session = self.SessionLocal()
        try:
            with session.begin():
                checkpoint = session.query(CDCCheckpoint).filter_by(
                    job_id=job_id,
                    collection=collection
                ).with_for_update().first()

                if checkpoint:
                    checkpoint.resume_token = resume_token
                    checkpoint.records_processed = records_processed
                    checkpoint.updated_at = _utcnow()
                    if last_event_time:
                        checkpoint.last_event_time = last_event_time
                else:
                    session.add(CDCCheckpoint(
                        job_id=job_id,
                        collection=collection,
                        resume_token=resume_token,
                        last_event_time=last_event_time,
                        records_processed=records_processed
                    ))

            checkpoint_saves_total.labels(status='success').inc()
            logger.debug(
                f"Saved checkpoint for job {job_id}, collection {collection}",
                extra={
                    "job_id": job_id,
                    "collection": collection,
                    "records_processed": records_processed
                }
            )

        except OperationalError as e:
            checkpoint_saves_total.labels(status='error').inc()
            logger.warning(
                f"Transient database error saving checkpoint: {e}",
                extra={"job_id": job_id, "collection": collection}
            )
            raise TransientCheckpointError(f"Database unavailable: {e}") from e

        except SQLAlchemyError as e:
            checkpoint_saves_total.labels(status='error').inc()
            logger.error(
                f"Database error saving checkpoint: {e}",
                extra={"job_id": job_id, "collection": collection}
            )
            raise CheckpointError(f"Database error: {e}") from e

        finally:
            session.close()

    @_retry_transient
    def load_checkpoint(
        self,
        job_id: str,
        collection: str
    ) -> Optional[Dict[str, Any]]:
        """
        Load checkpoint for job+collection.

        Args:
            job_id: Job identifier
            collection: MongoDB collection name

        Returns:
            Resume token dict if a valid one exists, None otherwise

        Raises:
            CheckpointError: If load fails after retries
        """
        session: Session = self.SessionLocal()
        try:
            checkpoint = session.query(CDCCheckpoint).filter_by(
                job_id=job_id,
                collection=collection
            ).first()

            if not checkpoint:
                checkpoint_loads_total.labels(status='not_found').inc()
                logger.debug(
                    f"No checkpoint found for job {job_id}, collection {collection}",
                    extra={"job_id": job_id, "collection": collection}
                )
                return None

            resume_token = checkpoint.resume_token
            if not _validate_resume_token(resume_token):
                logger.warning(
                    "Invalid resume token structure in checkpoint",
                    extra={"job_id": job_id, "collection": collection}
                )
                checkpoint_loads_total.labels(status='invalid').inc()
                return None

            checkpoint_loads_total.labels(status='success').inc()
            return resume_token

        except OperationalError as e:
            checkpoint_loads_total.labels(status='error').inc()
            raise TransientCheckpointError(f"Database unavailable: {e}") from e

        except SQLAlchemyError as e:
            logger.error(
                f"Database error loading checkpoint: {e}",
                extra={"job_id": job_id, "collection": collection}
            )
            checkpoint_loads_total.labels(status='error').inc()
            raise CheckpointError(f"Database error: {e}") from e

        finally:
            session.close()

    def delete_checkpoint(
        self,
        job_id: str,
        collection: str
    ) -> None:
        """
        Delete checkpoint so the next run starts from the current stream head.

        Args:
            job_id: Job identifier
            collection: MongoDB collection name
        """
        session: Session = self.SessionLocal()
        try:
            with session.begin():
                deleted = session.query(CDCCheckpoint).filter_by(
                    job_id=job_id,
                    collection=collection
                ).delete()

            logger.info(
                f"Deleted {deleted} checkpoint(s) for job {job_id}, collection {collection}",
                extra={"job_id": job_id, "collection": collection}
            )

        except SQLAlchemyError as e:
            logger.error(
                f"Database error deleting checkpoint: {e}",
                extra={"job_id": job_id, "collection": collection}
            )
            raise CheckpointError(f"Database error: {e}") from e

        finally:
            session.close()

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
        logger.info("CheckpointStore connections closed")
