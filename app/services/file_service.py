"""File handling for rendered export artifacts."""
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from app.config import settings

logger = logging.getLogger(__name__)

FILE_SUFFIXES = {
    "csv": "_data.csv",
    "json": "_data.json",
    "ics": "_workouts.ics",
    "xlsx": "_data.xlsx",
}

MEDIA_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
    "ics": "text/calendar",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


class ArtifactStorage:
    """Service for allocating, locating and deleting export files on disk."""

    def __init__(self, export_dir: Optional[str] = None):
        self.export_dir = Path(export_dir or settings.export_dir)
        self.export_dir.mkdir(parents=True, exist_ok=True)

    def new_output_path(self, export_format: str) -> str:
        """
        Allocate a fresh, unique output path for a render.

        Args:
            export_format: Export format value (csv, json, ics, xlsx)

        Returns:
            Path the renderer should write to
        """
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        unique_id = uuid.uuid4().hex
        suffix = FILE_SUFFIXES.get(export_format, f".{export_format}")
        return str(self.export_dir / f"{timestamp}_{unique_id}{suffix}")

    def exists(self, file_path: Optional[str]) -> bool:
        return bool(file_path) and Path(file_path).is_file()

    def delete(self, file_path: Optional[str]) -> bool:
        """
        Delete an artifact from disk. A file that is already gone is not an error.

        Args:
            file_path: Path to file

        Returns:
            True if deleted, False if file not found
        """
        if not file_path:
            return False
        try:
            Path(file_path).unlink()
            return True
        except FileNotFoundError:
            logger.info("Export file %s already removed", file_path)
            return False

    def download_name(self, file_path: str) -> str:
        return Path(file_path).name

    def media_type(self, export_format: str) -> str:
        return MEDIA_TYPES.get(export_format, "application/octet-stream")


# Singleton instance
artifact_storage = ArtifactStorage()
