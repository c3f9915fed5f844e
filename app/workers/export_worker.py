"""
Dramatiq worker for rendering data exports.

Each message carries only an ExportRequest id. The worker claims the record
with a conditional pending -> processing transition, renders the artifact,
and moves the record to completed or failed. Duplicate deliveries lose the
claim and are discarded.
"""
import logging
import uuid
from typing import Optional

import dramatiq
from dramatiq.middleware import TimeLimitExceeded

# Import broker setup (must be before actor definitions)
from app.workers import broker  # noqa: F401
from app.config import settings
from app.database import SessionLocal
from app.models import ExportStatus
from app.services.export_errors import NonRetryableRenderError, RenderError, StaleDeliveryError
from app.services.export_renderers import get_renderer
from app.services.export_store import ExportRequestStore, utcnow
from app.services.file_service import ArtifactStorage, artifact_storage
from app.services.notifier import Notifier, build_download_url, get_notifier

logger = logging.getLogger(__name__)


def claim_export(store: ExportRequestStore, request_id: uuid.UUID) -> None:
    """
    Claim a pending export for this worker.

    The claim bumps the attempts counter. Later transitions by this worker
    are fenced on that value.

    Raises:
        StaleDeliveryError: If the record is no longer pending
    """
    if not store.transition(
        request_id, ExportStatus.PENDING, ExportStatus.PROCESSING, claimed_at=utcnow()
    ):
        raise StaleDeliveryError(f"ExportRequest {request_id} is no longer pending")


def run_export(
    request_id: uuid.UUID,
    storage: Optional[ArtifactStorage] = None,
    notifier: Optional[Notifier] = None,
    max_attempts: Optional[int] = None,
) -> Optional[str]:
    """
    Drive one export request through render and notification.

    Args:
        request_id: ExportRequest ID from the queue message
        storage: Artifact storage (defaults to the shared instance)
        notifier: Notifier (defaults to the configured one)
        max_attempts: Attempt budget (defaults to settings.export_max_attempts)

    Returns:
        The artifact path on success, None if the job was discarded or
        failed permanently without retry

    Raises:
        Exception: The render error, after the record has been reset to
            pending (retries remain) or marked failed (budget exhausted)
    """
    storage = storage or artifact_storage
    max_attempts = max_attempts or settings.export_max_attempts

    db = SessionLocal()
    store = ExportRequestStore(db)

    try:
        if store.get(request_id) is None:
            logger.info("ExportRequest %s not found, discarding job", request_id)
            return None

        try:
            claim_export(store, request_id)
        except StaleDeliveryError as e:
            logger.info("Discarding duplicate delivery: %s", e)
            return None

        record = store.get(request_id)
        if record is None:
            # Retired between claim and reload
            return None
        export_format = record.format
        secret = record.secret
        attempt = record.attempts
        owner_email = record.user.email

        logger.info(
            "Rendering %s export %s for %s (attempt %d/%d)",
            export_format, request_id, owner_email, attempt, max_attempts,
        )

        output_path = storage.new_output_path(export_format)
        try:
            render = get_renderer(export_format)
            render(owner_email, output_path)
            if not storage.exists(output_path):
                raise RenderError("Renderer did not produce an export file")
        except (Exception, TimeLimitExceeded) as e:
            if storage.exists(output_path):
                storage.delete(output_path)
            _record_failure(store, request_id, e, attempt, max_attempts)
            return None

        if not store.transition(
            request_id,
            ExportStatus.PROCESSING,
            ExportStatus.COMPLETED,
            expected_attempts=attempt,
            file_path=output_path,
            completed_at=utcnow(),
        ):
            # Reset by stuck-job recovery while we rendered, possibly claimed again
            logger.warning("ExportRequest %s lost its claim, dropping %s", request_id, output_path)
            storage.delete(output_path)
            return None

        logger.info("Export job completed for %s in %s format", owner_email, export_format)
        _notify(notifier or get_notifier(), owner_email, secret, export_format)
        return output_path

    finally:
        db.close()


def _record_failure(
    store: ExportRequestStore,
    request_id: uuid.UUID,
    error: BaseException,
    attempt: int,
    max_attempts: int,
) -> None:
    """Reset for retry or mark failed, then re-raise when the queue should know."""
    message = str(error) or error.__class__.__name__

    if isinstance(error, NonRetryableRenderError) or attempt >= max_attempts:
        if not store.transition(
            request_id,
            ExportStatus.PROCESSING,
            ExportStatus.FAILED,
            expected_attempts=attempt,
            error=message,
            completed_at=utcnow(),
        ):
            logger.warning("ExportRequest %s lost its claim, not recording failure: %s", request_id, message)
            return
        logger.error("Export job failed for ExportRequest ID %s: %s", request_id, message)
        if isinstance(error, NonRetryableRenderError):
            return
        raise error

    # Must be pending again before the queue redelivers, or the claim fails
    if not store.transition(
        request_id, ExportStatus.PROCESSING, ExportStatus.PENDING, expected_attempts=attempt
    ):
        logger.warning("ExportRequest %s lost its claim, not retrying: %s", request_id, message)
        return
    logger.warning(
        "Export attempt %d/%d failed for ExportRequest ID %s, retrying: %s",
        attempt, max_attempts, request_id, message,
    )
    raise error


def _notify(notifier: Notifier, email: str, secret: str, export_format: str) -> None:
    try:
        delivered = notifier.send_export_ready(email, build_download_url(email, secret), export_format)
    except Exception:
        logger.exception("Notifier raised while sending export link to %s", email)
        return
    if not delivered:
        logger.warning("Export link for %s was not delivered", email)


@dramatiq.actor(
    queue_name=settings.export_queue_name,
    max_retries=settings.export_max_attempts - 1,
    min_backoff=settings.export_retry_backoff_ms,
    max_backoff=settings.export_retry_backoff_ms,
    time_limit=settings.export_render_time_limit_ms,
)
def process_export(request_id: str):
    """
    Render one export request.

    Args:
        request_id: ExportRequest ID (string form of the UUID)
    """
    run_export(uuid.UUID(request_id))
