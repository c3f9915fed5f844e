"""Exceptions raised by the data export pipeline."""
from datetime import datetime


class ExportError(Exception):
    """Base class for export pipeline errors."""


class ValidationError(ExportError):
    """Raised when an export request is malformed (e.g. unsupported format)."""


class CooldownError(ExportError):
    """Raised when the owner already submitted an export within the cooldown window."""

    def __init__(self, last_requested_at: datetime):
        self.last_requested_at = last_requested_at
        super().__init__(
            f"You have already requested your data within the past month on "
            f"{last_requested_at.isoformat()}. Please try again later"
        )


class NotFoundError(ExportError):
    """Raised when an owner, record or artifact cannot be found."""


class RenderError(ExportError):
    """Raised by a renderer when an export could not be produced.

    The worker retries these under the queue's bounded-attempt policy.
    """


class NonRetryableRenderError(RenderError):
    """Raised by a renderer for failures that will never succeed on retry."""


class StaleDeliveryError(ExportError):
    """Raised when a queued job's record is no longer pending.

    Expected under at-least-once delivery; the worker discards the job.
    """


class InvalidSecretError(NotFoundError):
    """Raised when no live export matches the (owner, secret) pair."""


class ExportNotReadyError(ExportError):
    """Raised when a download is attempted before the export has completed."""

    def __init__(self, status: str, error: str = None):
        self.status = status
        self.error = error
        detail = f'Your export request is currently "{status}".'
        if error:
            detail += f" Error: {error}"
        else:
            detail += " Please wait until it is completed."
        super().__init__(detail)
