"""
Export request orchestration: submission, status and download.

The submission gate enforces the monthly cooldown, records the request and
queues it. The download side resolves (owner, secret) capabilities and
retires the record after a successful transfer.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.config import settings
from app.models import ExportRequest, ExportStatus, User
from app.services.auth import get_auth_provider
from app.services.export_errors import (
    CooldownError,
    ExportNotReadyError,
    InvalidSecretError,
    NotFoundError,
    ValidationError,
)
from app.services.export_queue_service import ExportQueueService, export_queue
from app.services.export_renderers import registered_formats
from app.services.export_store import ExportRequestStore, as_utc, parse_format, utcnow
from app.services.file_service import ArtifactStorage, artifact_storage

logger = logging.getLogger(__name__)


class ExportService:
    """Service for export submission, status checks and downloads."""

    def __init__(
        self,
        db: Session,
        queue: Optional[ExportQueueService] = None,
        storage: Optional[ArtifactStorage] = None,
    ):
        self.db = db
        self.store = ExportRequestStore(db)
        self.queue = queue or export_queue
        self.storage = storage or artifact_storage

    # =========================================================================
    # Submission
    # =========================================================================

    def in_cooldown(self, user: User, now: Optional[datetime] = None) -> bool:
        """Whether the user already submitted an export within the cooldown window."""
        if settings.export_cooldown_disabled:
            return False
        last = as_utc(user.last_export_requested_at)
        if last is None:
            return False
        now = now or utcnow()
        return now - timedelta(days=settings.export_cooldown_days) <= last <= now

    def can_request(self, user: User) -> bool:
        return not self.in_cooldown(user)

    def submit(self, user: User, format) -> ExportRequest:
        """
        Submit a new export request.

        Stamps the user's last submission time and creates the pending
        record in one commit, then enqueues it. The stamp is a conditional
        UPDATE, so of two concurrent submissions only one gets past the
        cooldown. A crash after the commit but before enqueue leaves a
        pending record that the reaper's reconciliation pass re-enqueues.

        Args:
            user: Requesting user
            format: Export format value

        Returns:
            The created ExportRequest

        Raises:
            ValidationError: If the format is unsupported or has no renderer
            CooldownError: If the user submitted within the cooldown window
        """
        export_format = parse_format(format)
        if export_format.value not in registered_formats():
            raise ValidationError(f"Export format {export_format.value} is not available")

        now = utcnow()
        if not self._stamp_submission(user, now):
            self.db.rollback()
            current = self.db.get(User, user.id, populate_existing=True)
            raise CooldownError(as_utc(current.last_export_requested_at))

        record = self.store.create(user.id, export_format)
        self.queue.enqueue(record.id)

        logger.info(
            "Export request added to queue for %s in %s format with ExportRequest ID %s",
            user.email, export_format.value, record.id,
        )
        return record

    def _stamp_submission(self, user: User, now: datetime) -> bool:
        # Left uncommitted; store.create commits it together with the record
        stmt = update(User).where(User.id == user.id)
        if not settings.export_cooldown_disabled:
            last = User.last_export_requested_at
            stmt = stmt.where(or_(
                last.is_(None),
                last < now - timedelta(days=settings.export_cooldown_days),
                last > now,
            ))
        result = self.db.execute(
            stmt.values(last_export_requested_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # =========================================================================
    # Status
    # =========================================================================

    def latest_request(self, user: User) -> ExportRequest:
        """
        Most recent export request for the user.

        Raises:
            NotFoundError: If the user has no live export request
        """
        record = self.store.latest_for_owner(user.id)
        if record is None:
            raise NotFoundError("No Request Made")
        return record

    # =========================================================================
    # Download
    # =========================================================================

    def resolve_download(self, email: str, secret: str) -> ExportRequest:
        """
        Resolve a download capability to a completed export.

        Raises:
            NotFoundError: Unknown owner, or a secret whose export was
                already downloaded or expired
            InvalidSecretError: The secret matches none of the owner's exports
            ExportNotReadyError: The export exists but has not completed
        """
        user = get_auth_provider().get_user_by_email(self.db, email)
        if not user:
            raise NotFoundError("User not found")

        record = self.store.find_by_owner_and_secret(user.id, secret)
        if record is None:
            if self.store.is_retired_secret(user.id, secret):
                raise NotFoundError("Export already downloaded or expired")
            raise InvalidSecretError("Invalid secret or export request not found")

        if record.status != ExportStatus.COMPLETED.value:
            raise ExportNotReadyError(record.status, record.error)

        if not self.storage.exists(record.file_path):
            logger.error("Export file missing for ExportRequest %s: %s", record.id, record.file_path)
            raise NotFoundError("File not found")

        return record

    def retire(self, request_id, owner_id, secret: str, file_path: str) -> None:
        """Delete the artifact then the record after a successful download."""
        self.storage.delete(file_path)
        self.store.retire(request_id, owner_id, secret)
        logger.info("ExportRequest %s downloaded and retired", request_id)

