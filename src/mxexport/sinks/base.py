"""
Sink connector contract.

A connector owns one destination for the lifetime of the process. The
exporter calls ``ensure_resources`` before every ``deliver``, so provisioning
must be idempotent and cheap once done.
"""

from abc import ABC, abstractmethod
from typing import Sequence

from ..core.context import ExportContext


class SinkConnector(ABC):
    """Destination for encoded change events."""

    #: Short sink name used in logs and metric labels
    name: str = "sink"

    @abstractmethod
    def ensure_resources(self, ctx: ExportContext) -> None:
        """
        Make sure the destination exists.

        Raises:
            ProvisioningError: If setup failed for any reason other than the
                resource already existing
        """

    @abstractmethod
    def deliver(self, ctx: ExportContext, partition_key: str, fields: Sequence[str]) -> str:
        """
        Send one wire record and wait for the service to acknowledge it.

        Args:
            ctx: Cancellation/deadline token
            partition_key: Routing key derived from the event's resume position
            fields: Encoded wire fields in order

        Returns:
            The service's receipt for the record (sequence number, message ID)

        Raises:
            DeliveryError: If the record was not acknowledged
        """

    def close(self) -> None:
        """Release client resources."""
