from sqlalchemy import Column, String, DateTime, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid

from app.database import Base


class User(Base):
    """User account that owns workouts and data exports."""

    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Last successful export submission, read by the monthly cooldown check
    last_export_requested_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    export_requests = relationship(
        "ExportRequest", back_populates="user", cascade="all, delete-orphan"
    )
    sessions = relationship(
        "Session", back_populates="user", cascade="all, delete-orphan"
    )
    retired_export_secrets = relationship(
        "RetiredExportSecret", back_populates="user", cascade="all, delete-orphan"
    )
