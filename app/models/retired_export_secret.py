"""Tombstones for download secrets whose export has been retired."""
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship

from app.database import Base


class RetiredExportSecret(Base):
    """
    Hash of a secret that belonged to a downloaded or reaped export.

    Lets the download endpoint tell a spent link apart from a wrong one
    without keeping the export record around. Only the SHA-256 of the
    secret is stored.
    """
    __tablename__ = "retired_export_secrets"

    secret_hash = Column(String(64), primary_key=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    retired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    user = relationship("User", back_populates="retired_export_secrets")

    __table_args__ = (
        Index('idx_retired_export_secrets_expires_at', 'expires_at'),
    )

    def __repr__(self):
        return f"<RetiredExportSecret(user_id={self.user_id}, retired_at={self.retired_at})>"
