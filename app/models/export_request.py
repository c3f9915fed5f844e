"""ExportRequest model tracking one data export through its lifecycle."""
import enum
import uuid

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship

from app.database import Base


class ExportFormat(str, enum.Enum):
    """Supported export file formats."""
    CSV = "csv"
    JSON = "json"
    ICS = "ics"
    XLSX = "xlsx"


class ExportStatus(str, enum.Enum):
    """Export lifecycle states.

    pending -> processing -> completed | failed. A failed attempt with retries
    left goes back to pending so the redelivered job can claim it again.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportRequest(Base):
    """Bulk data export request with a single-use download secret."""
    __tablename__ = "export_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    format = Column(String(10), nullable=False)  # ExportFormat value
    status = Column(String(20), nullable=False, default=ExportStatus.PENDING.value)
    secret = Column(String(64), nullable=False, unique=True)
    file_path = Column(String(512))  # Only set once completed
    error = Column(Text)  # Only set once failed
    attempts = Column(Integer, nullable=False, default=0)
    requested_at = Column(DateTime(timezone=True), nullable=False)
    claimed_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True), nullable=False)

    # Relationships
    user = relationship("User", back_populates="export_requests")

    __table_args__ = (
        Index('idx_export_requests_user_status', 'user_id', 'status'),
        Index('idx_export_requests_expires_at', 'expires_at'),
    )

    def __repr__(self):
        return f"<ExportRequest(id={self.id}, user_id={self.user_id}, format={self.format}, status={self.status})>"
