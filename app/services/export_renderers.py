"""
Renderer registry for data exports.

A renderer is a callable of (owner_email, output_path) that writes one export
artifact to output_path, raising RenderError (retried) or
NonRetryableRenderError (failed immediately) when it cannot.

Formats register independently of the pipeline:

    from app.services.export_renderers import renderer

    @renderer(ExportFormat.ICS)
    def render_calendar(email: str, output_path: str) -> None:
        ...
"""
import csv
import json
import logging
from typing import Callable, Dict, Optional

import openpyxl

from app.database import SessionLocal
from app.models import ExportFormat, User
from app.services.export_errors import NonRetryableRenderError, RenderError

logger = logging.getLogger(__name__)

Renderer = Callable[[str, str], None]

EXPORT_VERSION = "1.0"

_registry: Dict[ExportFormat, Renderer] = {}


def register_renderer(export_format: ExportFormat, fn: Renderer) -> Renderer:
    """Register fn as the renderer for export_format, replacing any existing one."""
    _registry[ExportFormat(export_format)] = fn
    return fn


def renderer(export_format: ExportFormat) -> Callable[[Renderer], Renderer]:
    """Decorator form of register_renderer."""
    def decorator(fn: Renderer) -> Renderer:
        return register_renderer(export_format, fn)
    return decorator


def unregister_renderer(export_format: ExportFormat) -> None:
    _registry.pop(ExportFormat(export_format), None)


def get_renderer(export_format) -> Renderer:
    """
    Look up the renderer for a format.

    Raises:
        NonRetryableRenderError: If nothing is registered for the format
    """
    fn = _registry.get(ExportFormat(export_format))
    if fn is None:
        raise NonRetryableRenderError(f"Unsupported export format: {export_format}")
    return fn


def registered_formats():
    return sorted(f.value for f in _registry)


# =============================================================================
# Default renderers (account profile)
# =============================================================================


def _load_profile(email: str) -> Dict:
    db = SessionLocal()
    try:
        user: Optional[User] = db.query(User).filter(User.email == email).first()
        if not user:
            raise NonRetryableRenderError(f"user with email {email} not found.")
        return {
            "version": EXPORT_VERSION,
            "email": user.email,
            "name": user.name,
            "createdAt": user.created_at.isoformat() if user.created_at else None,
            "updatedAt": user.updated_at.isoformat() if user.updated_at else None,
        }
    finally:
        db.close()


@renderer(ExportFormat.JSON)
def render_json(email: str, output_path: str) -> None:
    profile = _load_profile(email)
    try:
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(profile, f, indent=2)
    except OSError as e:
        raise RenderError(f"Could not write {output_path}: {e}") from e
    logger.debug("json file successfully written to %s", output_path)


@renderer(ExportFormat.CSV)
def render_csv(email: str, output_path: str) -> None:
    profile = _load_profile(email)
    try:
        with open(output_path, "w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(["field", "value"])
            for key, value in profile.items():
                writer.writerow([key, "" if value is None else value])
    except OSError as e:
        raise RenderError(f"Could not write {output_path}: {e}") from e
    logger.debug("csv file successfully written to %s", output_path)


@renderer(ExportFormat.XLSX)
def render_xlsx(email: str, output_path: str) -> None:
    profile = _load_profile(email)
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Profile"
    sheet.append(["field", "value"])
    for key, value in profile.items():
        sheet.append([key, "" if value is None else value])
    try:
        workbook.save(output_path)
    except OSError as e:
        raise RenderError(f"Could not write {output_path}: {e}") from e
    logger.debug("xlsx file successfully written to %s", output_path)
