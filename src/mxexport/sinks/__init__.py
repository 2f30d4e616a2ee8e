"""
Sink connectors for exported change events.
"""

from ..config.settings import Settings
from ..core.models import StreamTarget, TopicTarget
from .base import SinkConnector
from .kinesis_stream import KinesisStreamConnector, create_kinesis_client
from .pubsub import PubSubConnector, ProvisioningState, create_publisher_client, create_subscriber_client


def kinesis_attempt_timeout(read_timeout: float, max_attempts: int, export_timeout: float) -> float:
    """Per-attempt connect/read timeout so every attempt of one put fits the export deadline."""
    # each attempt may spend the timeout once connecting and once reading
    return min(float(read_timeout), export_timeout / (2 * max(1, max_attempts)))


def build_connector(settings: Settings) -> SinkConnector:
    """
    Choose and construct the connector for the configured destination.

    Called once at start-up; the connector is then shared by every export.

    Raises:
        ValueError: If the destination is missing required settings
    """
    target = settings.sink_target()

    if isinstance(target, StreamTarget):
        attempt_timeout = kinesis_attempt_timeout(
            settings.kinesis.read_timeout,
            settings.kinesis.max_attempts,
            settings.watcher.export_timeout,
        )
        client = create_kinesis_client(
            region=settings.kinesis.region,
            endpoint_url=settings.kinesis.endpoint_url,
            read_timeout=attempt_timeout,
            max_attempts=settings.kinesis.max_attempts,
            connect_timeout=attempt_timeout,
        )
        return KinesisStreamConnector(client, target)

    return PubSubConnector(
        create_publisher_client(),
        create_subscriber_client(),
        project_id=settings.pubsub.project_id,
        target=target,
        publish_timeout=settings.pubsub.publish_timeout,
    )


__all__ = [
    "SinkConnector",
    "KinesisStreamConnector",
    "PubSubConnector",
    "ProvisioningState",
    "StreamTarget",
    "TopicTarget",
    "build_connector",
    "kinesis_attempt_timeout",
    "create_kinesis_client",
    "create_publisher_client",
    "create_subscriber_client",
]
