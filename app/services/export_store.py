"""
Persistence for ExportRequest records.

All status changes go through transition(), which issues a single
conditional UPDATE so concurrent workers can never both claim a record.
"""
import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional

from sqlalchemy import and_, delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models import ExportFormat, ExportRequest, ExportStatus, RetiredExportSecret
from app.services.export_errors import ValidationError

logger = logging.getLogger(__name__)

# Columns the worker may set alongside a status change
TRANSITION_FIELDS = {"file_path", "error", "completed_at", "claimed_at"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_format(value) -> ExportFormat:
    """Coerce a user-supplied format into ExportFormat or raise ValidationError."""
    try:
        return ExportFormat(value)
    except ValueError:
        raise ValidationError("Invalid export format")


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class ExportRequestStore:
    """Record store for export requests."""

    def __init__(self, db: Session, batch_size: int = 100):
        self.db = db
        self.batch_size = batch_size

    def create(self, owner_id: uuid.UUID, format) -> ExportRequest:
        """
        Create a pending export request.

        Args:
            owner_id: ID of the requesting user
            format: ExportFormat or its string value

        Returns:
            The committed ExportRequest

        Raises:
            ValidationError: If format is not supported
        """
        export_format = parse_format(format)
        now = utcnow()
        record = ExportRequest(
            id=uuid.uuid4(),
            user_id=owner_id,
            format=export_format.value,
            status=ExportStatus.PENDING.value,
            secret=secrets.token_hex(32),
            attempts=0,
            requested_at=now,
            expires_at=now + timedelta(hours=settings.export_expiry_hours),
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def transition(
        self,
        request_id: uuid.UUID,
        from_status: ExportStatus,
        to_status: ExportStatus,
        expected_attempts: Optional[int] = None,
        **extra,
    ) -> bool:
        """
        Atomically move a record from one status to another.

        The status check and the write happen in one UPDATE statement.

        Args:
            expected_attempts: When given, the record's attempts counter must
                still equal it. A worker passes the value its claim produced
                so it cannot touch a record another worker has since claimed.

        Returns:
            True if this call performed the transition, False if the record
            was missing, no longer in from_status or claimed again
            ("already transitioned")
        """
        unknown = set(extra) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot set {sorted(unknown)} during a transition")

        values = dict(extra, status=ExportStatus(to_status).value)
        if to_status == ExportStatus.PROCESSING:
            values["attempts"] = ExportRequest.attempts + 1

        conditions = [
            ExportRequest.id == request_id,
            ExportRequest.status == ExportStatus(from_status).value,
        ]
        if expected_attempts is not None:
            conditions.append(ExportRequest.attempts == expected_attempts)

        result = self.db.execute(
            update(ExportRequest)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        changed = result.rowcount == 1
        if not changed:
            logger.debug(
                "Export %s already transitioned (wanted %s -> %s)",
                request_id, from_status, to_status,
            )
        return changed

    def get(self, request_id: uuid.UUID) -> Optional[ExportRequest]:
        return self.db.get(ExportRequest, request_id, populate_existing=True)

    def find_by_owner_and_secret(self, owner_id: uuid.UUID, secret: str) -> Optional[ExportRequest]:
        return (
            self.db.query(ExportRequest)
            .filter(ExportRequest.user_id == owner_id, ExportRequest.secret == secret)
            .populate_existing()
            .first()
        )

    def latest_for_owner(self, owner_id: uuid.UUID) -> Optional[ExportRequest]:
        """Most recent export request for the owner, if any."""
        return (
            self.db.query(ExportRequest)
            .filter(ExportRequest.user_id == owner_id)
            .order_by(ExportRequest.requested_at.desc())
            .populate_existing()
            .first()
        )

    def delete(self, request_id: uuid.UUID) -> bool:
        """
        Delete a record. Deleting an absent record is not an error.

        Returns:
            True if a row was removed, False if it was already gone
        """
        result = self.db.execute(
            delete(ExportRequest)
            .where(ExportRequest.id == request_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def retire(
        self,
        request_id: uuid.UUID,
        owner_id: uuid.UUID,
        secret: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Delete a record and remember its secret as spent, in one commit.

        The tombstone outlives the record by export_expiry_hours so a reused
        link can still be told apart from a wrong one.

        Returns:
            True if a row was removed, False if it was already gone
        """
        now = now or utcnow()
        secret_hash = hash_secret(secret)
        if self.db.get(RetiredExportSecret, secret_hash) is None:
            self.db.add(RetiredExportSecret(
                secret_hash=secret_hash,
                user_id=owner_id,
                retired_at=now,
                expires_at=now + timedelta(hours=settings.export_expiry_hours),
            ))

        result = self.db.execute(
            delete(ExportRequest)
            .where(ExportRequest.id == request_id)
            .execution_options(synchronize_session=False)
        )
        try:
            self.db.commit()
        except IntegrityError:
            # Another retirement of the same export wrote the tombstone first
            self.db.rollback()
            return self.delete(request_id)
        return result.rowcount == 1

    def is_retired_secret(self, owner_id: uuid.UUID, secret: str) -> bool:
        tombstone = self.db.get(RetiredExportSecret, hash_secret(secret), populate_existing=True)
        return tombstone is not None and tombstone.user_id == owner_id

    def purge_retired_secrets(self, now: Optional[datetime] = None) -> int:
        """Drop tombstones past their expiry. Returns how many were removed."""
        result = self.db.execute(
            delete(RetiredExportSecret)
            .where(RetiredExportSecret.expires_at < (now or utcnow()))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount

    def find_expired(self, now: Optional[datetime] = None) -> Iterator[ExportRequest]:
        """
        Lazily yield every record whose expires_at is before now.

        Reads in id-ordered batches so records deleted while iterating do
        not shift later pages. Calling it again starts a fresh read.
        """
        now = now or utcnow()
        last_id = None
        while True:
            query = self.db.query(ExportRequest).filter(ExportRequest.expires_at < now)
            if last_id is not None:
                query = query.filter(ExportRequest.id > last_id)
            batch = query.order_by(ExportRequest.id).limit(self.batch_size).all()
            if not batch:
                return
            last_id = batch[-1].id
            yield from self._detach(batch)
            if len(batch) < self.batch_size:
                return

    def find_orphaned_pending(self, idle_before: datetime) -> List[ExportRequest]:
        """
        Pending records untouched since idle_before, whose queue message may
        have been lost. A record reset for retry counts from its last claim.
        """
        return self._detach(
            self.db.query(ExportRequest)
            .filter(
                ExportRequest.status == ExportStatus.PENDING.value,
                or_(
                    and_(ExportRequest.claimed_at.is_(None), ExportRequest.requested_at < idle_before),
                    ExportRequest.claimed_at < idle_before,
                ),
            )
            .order_by(ExportRequest.requested_at)
            .all()
        )

    def find_stuck_processing(self, claimed_before: datetime) -> List[ExportRequest]:
        """Processing records whose worker never reached a terminal state."""
        return self._detach(
            self.db.query(ExportRequest)
            .filter(
                ExportRequest.status == ExportStatus.PROCESSING.value,
                ExportRequest.completed_at.is_(None),
                ExportRequest.claimed_at < claimed_before,
            )
            .order_by(ExportRequest.claimed_at)
            .all()
        )

    def _detach(self, records: List[ExportRequest]) -> List[ExportRequest]:
        # Callers commit while iterating; detached rows keep their loaded
        # values even if another process deletes them meanwhile.
        for record in records:
            self.db.expunge(record)
        return records
