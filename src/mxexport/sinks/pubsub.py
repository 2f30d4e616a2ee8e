"""
Google Cloud Pub/Sub connector.

The topic is named after the watched database and the subscription after the
watched collection. Both are created on first use if missing. Creation is a
check-then-create sequence that is not atomic, so several exporters starting
together can all see a resource as missing; the loser of the race gets
AlreadyExists from the create call, which counts as success.
"""

import threading
from concurrent import futures
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from google.api_core import exceptions as gapi_exceptions
from google.cloud import pubsub_v1
from google.protobuf import duration_pb2
from prometheus_client import Counter

from ..core.context import ExportContext
from ..core.encoder import join_fields
from ..core.errors import ContextCancelledError, DeliveryError, ProvisioningError
from ..core.models import TopicTarget
from ..utils.logging import get_logger
from .base import SinkConnector

logger = get_logger(__name__)

ACK_DEADLINE_SECONDS = 60
RETENTION_SECONDS = 24 * 60 * 60

pubsub_resources_created = Counter(
    'mxexport_pubsub_resources_created_total',
    'Pub/Sub topics and subscriptions created by this process',
    ['resource']
)


class ProvisioningState(str, Enum):
    """How far provisioning has got. There is no teardown state."""
    UNSET = "unset"
    TOPIC_ENSURED = "topic_ensured"
    SUBSCRIPTION_ENSURED = "subscription_ensured"


_STATE_ORDER = [
    ProvisioningState.UNSET,
    ProvisioningState.TOPIC_ENSURED,
    ProvisioningState.SUBSCRIPTION_ENSURED,
]


def create_publisher_client() -> pubsub_v1.PublisherClient:
    """Publisher that sends every message in its own request."""
    return pubsub_v1.PublisherClient(
        batch_settings=pubsub_v1.types.BatchSettings(max_messages=1)
    )


def create_subscriber_client() -> pubsub_v1.SubscriberClient:
    return pubsub_v1.SubscriberClient()


def _timeout_kwargs(ctx: ExportContext) -> Dict[str, float]:
    timeout = ctx.timeout()
    return {} if timeout is None else {"timeout": timeout}


class PubSubConnector(SinkConnector):
    """
    Publish change events to a Pub/Sub topic, provisioning it on first use.

    Thread Safety: YES. Concurrent first calls to ``ensure_resources`` race
    on the remote check-then-create and rely on AlreadyExists tolerance; no
    lock is held across remote calls. State transitions are compare-and-set
    under a private lock, so the state never moves backwards.

    Example:
        >>> connector = PubSubConnector(
        ...     create_publisher_client(), create_subscriber_client(),
        ...     project_id="my-project",
        ...     target=TopicTarget(topic="shop", subscription="orders"),
        ... )
        >>> connector.ensure_resources(ctx)
        >>> connector.deliver(ctx, "8263...", fields)
    """

    name = "pubsub"

    def __init__(
        self,
        publisher: Any,
        subscriber: Any,
        project_id: str,
        target: TopicTarget,
        publish_timeout: float = 60.0
    ):
        """
        Args:
            publisher: ``pubsub_v1.PublisherClient``
            subscriber: ``pubsub_v1.SubscriberClient``
            project_id: GCP project owning the topic and subscription
            target: Topic and subscription IDs
            publish_timeout: Max seconds to wait for a publish acknowledgment
                when the context has no earlier deadline
        """
        self.publisher = publisher
        self.subscriber = subscriber
        self.project_id = project_id
        self.target = target
        self.publish_timeout = publish_timeout

        self.topic_path = pubsub_v1.PublisherClient.topic_path(project_id, target.topic)
        self.subscription_path = pubsub_v1.SubscriberClient.subscription_path(
            project_id, target.subscription
        )
        self.state = ProvisioningState.UNSET
        # guards only the state field; remote calls are never made under it
        self._state_lock = threading.Lock()

    def _advance(self, state: ProvisioningState) -> None:
        """Move the state forward; an older state never overwrites a newer one."""
        with self._state_lock:
            if _STATE_ORDER.index(state) > _STATE_ORDER.index(self.state):
                self.state = state

    def ensure_resources(self, ctx: ExportContext) -> None:
        """
        Ensure the topic, then the subscription, exist.

        Returns immediately once both have been ensured by this connector.
        A cancelled or interrupted run leaves whatever was already created in
        place; the next call picks up from there.

        Raises:
            ProvisioningError: On any failure other than AlreadyExists
        """
        if self.state is ProvisioningState.SUBSCRIPTION_ENSURED:
            return

        try:
            if self.state is ProvisioningState.UNSET:
                self._ensure_topic(ctx)
                self._advance(ProvisioningState.TOPIC_ENSURED)
            self._ensure_subscription(ctx)
            self._advance(ProvisioningState.SUBSCRIPTION_ENSURED)
        except ContextCancelledError as e:
            raise ProvisioningError(f"provisioning interrupted: {e}") from e

    def _ensure_topic(self, ctx: ExportContext) -> None:
        ctx.check()
        try:
            self.publisher.get_topic(request={"topic": self.topic_path}, **_timeout_kwargs(ctx))
            return
        except gapi_exceptions.NotFound:
            pass
        except gapi_exceptions.GoogleAPIError as e:
            raise ProvisioningError(f"failed to check topic {self.topic_path}: {e}") from e

        logger.info("Topic does not exist, creating it", extra={"topic": self.topic_path})
        ctx.check()
        try:
            self.publisher.create_topic(request={"name": self.topic_path}, **_timeout_kwargs(ctx))
        except gapi_exceptions.AlreadyExists:
            logger.info("Topic was created concurrently", extra={"topic": self.topic_path})
            return
        except gapi_exceptions.GoogleAPIError as e:
            raise ProvisioningError(f"failed to create topic {self.topic_path}: {e}") from e

        pubsub_resources_created.labels(resource="topic").inc()
        logger.info("Created topic", extra={"topic": self.topic_path})

    def _ensure_subscription(self, ctx: ExportContext) -> None:
        ctx.check()
        try:
            self.subscriber.get_subscription(
                request={"subscription": self.subscription_path}, **_timeout_kwargs(ctx)
            )
            return
        except gapi_exceptions.NotFound:
            pass
        except gapi_exceptions.GoogleAPIError as e:
            raise ProvisioningError(f"failed to check subscription {self.subscription_path}: {e}") from e

        logger.info(
            "Subscription does not exist, creating it",
            extra={"subscription": self.subscription_path, "topic": self.topic_path}
        )
        ctx.check()
        try:
            self.subscriber.create_subscription(
                request={
                    "name": self.subscription_path,
                    "topic": self.topic_path,
                    "ack_deadline_seconds": ACK_DEADLINE_SECONDS,
                    "message_retention_duration": duration_pb2.Duration(seconds=RETENTION_SECONDS),
                },
                **_timeout_kwargs(ctx)
            )
        except gapi_exceptions.AlreadyExists:
            logger.info(
                "Subscription was created concurrently",
                extra={"subscription": self.subscription_path}
            )
            return
        except gapi_exceptions.GoogleAPIError as e:
            raise ProvisioningError(
                f"failed to create subscription {self.subscription_path}: {e}"
            ) from e

        pubsub_resources_created.labels(resource="subscription").inc()
        logger.info("Created subscription", extra={"subscription": self.subscription_path})

    def deliver(self, ctx: ExportContext, partition_key: str, fields: Sequence[str]) -> str:
        """Publish one message and block until Pub/Sub acknowledges it."""
        timeout: Optional[float] = ctx.timeout(self.publish_timeout)
        try:
            ctx.check()
            future = self.publisher.publish(self.topic_path, join_fields(fields))
            message_id = future.result(timeout=timeout)
        except ContextCancelledError as e:
            raise DeliveryError(f"publish to {self.topic_path} not attempted: {e}") from e
        except futures.TimeoutError as e:
            raise DeliveryError(
                f"publish to {self.topic_path} not acknowledged within {timeout}s"
            ) from e
        except gapi_exceptions.GoogleAPIError as e:
            logger.error(
                f"Failed to publish message: {e}",
                extra={"topic": self.topic_path, "partition_key": partition_key}
            )
            raise DeliveryError(f"publish to {self.topic_path} failed: {e}") from e
        except Exception as e:
            logger.error(
                f"Unexpected error publishing message: {e}",
                extra={"topic": self.topic_path, "partition_key": partition_key}
            )
            raise DeliveryError(f"publish to {self.topic_path} failed: {e}") from e

        logger.debug("Published message", extra={"topic": self.topic_path, "message_id": message_id})
        return message_id

    def close(self) -> None:
        self.publisher.stop()
        self.subscriber.close()
