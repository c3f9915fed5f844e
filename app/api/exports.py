"""Data export API endpoints: submit, status check and capability download."""
import logging
import os
from typing import BinaryIO, Iterator

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from app.config import settings
from app.database import get_db
from app.models import ExportStatus, User
from app.services.auth.dependencies import get_current_user
from app.services.export_errors import (
    CooldownError,
    ExportNotReadyError,
    InvalidSecretError,
    NotFoundError,
    ValidationError,
)
from app.services.export_service import ExportService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/udata", tags=["exports"])

CHUNK_SIZE = 64 * 1024


class ExportSubmitRequest(BaseModel):
    """Request model for submitting a data export."""

    format: str | None = None


class _Transfer:
    """Tracks whether the whole artifact was handed to the client."""

    def __init__(self):
        self.completed = False


def _iter_file(f: BinaryIO, transfer: _Transfer) -> Iterator[bytes]:
    with f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    transfer.completed = True


@router.post("/export", status_code=status.HTTP_202_ACCEPTED)
async def submit_export(
    request: ExportSubmitRequest = Body(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Queue a bulk export of the caller's data.

    Returns 202 once the request is recorded and queued, 400 for an invalid
    format and 429 if the caller already exported within the cooldown window.
    """
    service = ExportService(db)
    try:
        record = service.submit(user, request.format)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CooldownError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "message": str(e),
                "last_requested_at": e.last_requested_at.isoformat(),
            },
        )

    return {
        "id": str(record.id),
        "status": record.status,
        "message": (
            "Your data export request has been received and is being processed. "
            "You will receive an email once it is ready. "
            f"Please make sure you mark {settings.smtp_from_email} as not spam!"
        ),
    }


@router.get("/canrequest")
async def can_request_export(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Return 200 if the caller may submit an export now, 429 otherwise."""
    if not ExportService(db).can_request(user):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Export already requested within the past month",
        )
    return {"can_request": True}


@router.get("/status")
async def export_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Report the caller's most recent export.

    200 when completed, 500 with the stored error when failed,
    425 while pending or processing, 404 if nothing was requested.
    """
    try:
        record = ExportService(db).latest_request(user)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    if record.status == ExportStatus.COMPLETED.value:
        return {"status": record.status, "detail": "Request Completed"}
    if record.status == ExportStatus.FAILED.value:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=record.error)
    raise HTTPException(status_code=status.HTTP_425_TOO_EARLY, detail="Request Pending")


@router.get("/download")
def download_export(
    email: str | None = None,
    secret: str | None = None,
    db: Session = Depends(get_db),
):
    """
    Stream a completed export as an attachment.

    The (email, secret) pair is the capability; no session is required.
    The file and record are deleted only after the full transfer succeeds,
    so an interrupted download can be retried with the same link.
    """
    if not secret:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Missing required query parameter "secret"')
    if not email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Missing required query parameter "email"')

    service = ExportService(db)
    try:
        record = service.resolve_download(email, secret)
    except InvalidSecretError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ExportNotReadyError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": str(e), "status": e.status, "error": e.error},
        )

    request_id = record.id
    owner_id = record.user_id
    file_path = record.file_path
    try:
        # The open handle keeps serving the artifact even if it is unlinked mid-transfer
        f = open(file_path, "rb")
    except FileNotFoundError:
        logger.error("Export file vanished before transfer for ExportRequest %s: %s", request_id, file_path)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    size = os.fstat(f.fileno()).st_size
    transfer = _Transfer()

    def retire_after_transfer():
        if not transfer.completed:
            logger.warning("Download of ExportRequest %s did not complete, keeping link valid", request_id)
            return
        service.retire(request_id, owner_id, secret, file_path)

    filename = service.storage.download_name(file_path)
    return StreamingResponse(
        _iter_file(f, transfer),
        media_type=service.storage.media_type(record.format),
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(size),
        },
        background=BackgroundTask(retire_after_transfer),
    )

