"""
Factory functions for creating test data.

These factories commit so that worker threads and other sessions can
see the rows they create.
"""

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import bcrypt
from sqlalchemy.orm import Session

from app.models import ExportRequest, ExportStatus, User


# =============================================================================
# User Factory
# =============================================================================


def create_user(
    db: Session,
    email: Optional[str] = None,
    password: str = "testpassword123",
    **overrides,
) -> User:
    """
    Create a test user with hashed password.

    Args:
        db: Database session
        email: User email (auto-generated if not provided)
        password: Plain text password to hash
        **overrides: Additional fields to override

    Returns:
        Created User object
    """
    if email is None:
        email = f"testuser_{secrets.token_hex(4)}@example.com"

    password_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode(
        "utf-8"
    )

    user = User(email=email.lower(), password_hash=password_hash, **overrides)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# =============================================================================
# ExportRequest Factory
# =============================================================================


def create_export_request(
    db: Session,
    user: User,
    format: str = "csv",
    status: ExportStatus = ExportStatus.PENDING,
    requested_at: Optional[datetime] = None,
    file_path: Optional[str] = None,
    **overrides,
) -> ExportRequest:
    """
    Create an export request directly in any state.

    Args:
        db: Database session
        user: Owner
        format: Export format value
        status: Initial status
        requested_at: Creation time (defaults to now)
        file_path: Artifact path for completed records
        **overrides: Additional fields to override

    Returns:
        Created ExportRequest
    """
    requested_at = requested_at or datetime.now(timezone.utc)
    record = ExportRequest(
        id=uuid.uuid4(),
        user_id=user.id,
        format=format,
        status=ExportStatus(status).value,
        secret=secrets.token_hex(32),
        file_path=file_path,
        requested_at=requested_at,
        expires_at=requested_at + timedelta(hours=48),
        **overrides,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def create_completed_export(
    db: Session,
    user: User,
    export_dir: Path,
    content: bytes = b"field,value\nemail,testuser@example.com\n",
    **overrides,
) -> ExportRequest:
    """Create a completed export with an artifact on disk."""
    export_dir.mkdir(parents=True, exist_ok=True)
    file_path = export_dir / f"{uuid.uuid4().hex}_data.csv"
    file_path.write_bytes(content)
    return create_export_request(
        db,
        user,
        status=ExportStatus.COMPLETED,
        file_path=str(file_path),
        completed_at=datetime.now(timezone.utc),
        **overrides,
    )
