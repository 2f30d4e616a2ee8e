"""
Error taxonomy for the export path.

Every failure is raised as a subclass of ExportError. The exporter wraps the
original error in a StageError naming the step that failed, so a caller can
tell a malformed event apart from a transport problem.
"""

from typing import Optional


class ExportError(Exception):
    """Base exception for export errors."""
    pass


class MalformedEventError(ExportError):
    """A required change event field is missing or has the wrong shape."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class EncodingError(ExportError):
    """A record field could not be serialized to its wire form."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ProvisioningError(ExportError):
    """Topic or subscription setup failed for a reason other than 'already exists'."""
    pass


class DeliveryError(ExportError):
    """The transport rejected or never acknowledged a put/publish."""
    pass


class ContextCancelledError(ExportError):
    """The caller cancelled the export or its deadline passed."""
    pass


class StageError(ExportError):
    """An export failed at a named stage.

    Attributes:
        stage: One of ``decode``, ``provision``, ``encode``, ``deliver``
        cause: The underlying ExportError
    """

    DECODE = "decode"
    PROVISION = "provision"
    ENCODE = "encode"
    DELIVER = "deliver"

    RETRYABLE_STAGES = frozenset({PROVISION, DELIVER})

    def __init__(self, stage: str, cause: ExportError):
        super().__init__(f"{stage} failed: {cause}")
        self.stage = stage
        self.cause = cause

    @property
    def retryable(self) -> bool:
        """Whether trying the same event again can succeed."""
        return self.stage in self.RETRYABLE_STAGES
