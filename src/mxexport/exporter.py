"""
Export orchestration: one raw change event in, one acknowledged record out.

decode -> ensure resources -> encode -> deliver. A failure at any step is
raised as StageError naming the step. Nothing is retried here; the caller
decides, and must not advance its resume position past an event whose export
raised.
"""

import time
from dataclasses import dataclass
from typing import Any, Mapping

from prometheus_client import Counter, Histogram

from .core.context import ExportContext
from .core.encoder import encode
from .core.errors import ExportError, StageError
from .core.models import EventRecord, SinkTarget, decode
from .sinks.base import SinkConnector
from .utils.logging import CorrelationContext, get_logger

logger = get_logger(__name__)

events_exported = Counter(
    'mxexport_events_exported_total',
    'Change events delivered and acknowledged',
    ['sink', 'operation']
)

export_errors = Counter(
    'mxexport_export_errors_total',
    'Change events that failed to export',
    ['sink', 'stage', 'error_type']
)

delivery_duration = Histogram(
    'mxexport_delivery_seconds',
    'Time spent in connector deliver calls',
    ['sink']
)


@dataclass(frozen=True)
class ExportResult:
    """Outcome of one successful export."""
    partition_key: str
    operation_type: str
    receipt: str


class Exporter:
    """
    Export change events to the configured sink.

    Holds no state between calls beyond the target and the connector, so one
    instance can serve concurrent callers if the connector can.

    Example:
        >>> exporter = Exporter(target, build_connector(settings))
        >>> exporter.export(ExportContext.with_timeout(30), change)
    """

    def __init__(self, target: SinkTarget, connector: SinkConnector):
        self.target = target
        self.connector = connector

    def _fail(self, stage: str, error: ExportError, **extra: Any) -> StageError:
        export_errors.labels(
            sink=self.connector.name,
            stage=stage,
            error_type=type(error).__name__
        ).inc()
        logger.error(
            f"Export failed at {stage}: {error}",
            extra={"sink": self.connector.name, "stage": stage, **extra}
        )
        return StageError(stage, error)

    def export(self, ctx: ExportContext, raw_event: Mapping[str, Any]) -> ExportResult:
        """
        Export one raw change event.

        Args:
            ctx: Cancellation/deadline token passed to every remote call
            raw_event: Change stream document

        Returns:
            ExportResult with the sink's receipt

        Raises:
            StageError: If any step failed; ``.stage`` names it and
                ``.cause`` holds the original error
        """
        try:
            record: EventRecord = decode(raw_event)
        except ExportError as e:
            raise self._fail(StageError.DECODE, e) from e

        with CorrelationContext(record.partition_key):
            try:
                self.connector.ensure_resources(ctx)
            except ExportError as e:
                raise self._fail(StageError.PROVISION, e) from e

            try:
                fields = encode(record)
            except ExportError as e:
                raise self._fail(StageError.ENCODE, e, operation=record.operation_name) from e

            started = time.perf_counter()
            try:
                receipt = self.connector.deliver(ctx, record.partition_key, fields)
            except ExportError as e:
                raise self._fail(StageError.DELIVER, e, operation=record.operation_name) from e
            finally:
                delivery_duration.labels(sink=self.connector.name).observe(time.perf_counter() - started)

            events_exported.labels(sink=self.connector.name, operation=record.operation_type.value).inc()
            logger.debug(
                "Exported change event",
                extra={
                    "sink": self.connector.name,
                    "operation": record.operation_name,
                    "cluster_time": record.cluster_time,
                    "receipt": receipt,
                }
            )

        return ExportResult(
            partition_key=record.partition_key,
            operation_type=record.operation_name,
            receipt=receipt,
        )
