"""
Database models for the workout tracker export service.

Import all models here so Alembic can detect them for migrations.
"""

from app.database import Base
from app.models.user import User
from app.models.session import Session
from app.models.export_request import ExportRequest, ExportFormat, ExportStatus
from app.models.retired_export_secret import RetiredExportSecret

__all__ = [
    "Base",
    "User",
    "Session",
    "ExportRequest",
    "ExportFormat",
    "ExportStatus",
    "RetiredExportSecret",
]
