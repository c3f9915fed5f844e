"""
Background sweep that reclaims expired exports.

Every interval the reaper:
- re-enqueues pending records whose queue message appears lost
- resets processing records whose worker died mid-render
- deletes the artifact and record of every export past its expiry,
  whether or not it was downloaded, keeping a tombstone of its secret
- purges tombstones that have outlived their expiry

All deletes are idempotent, so racing the download endpoint is harmless.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.models import ExportStatus
from app.services.export_queue_service import ExportQueueService, export_queue
from app.services.export_store import ExportRequestStore, utcnow
from app.services.file_service import ArtifactStorage, artifact_storage

logger = logging.getLogger(__name__)


class ExpiryReaper:
    """Periodic reclamation of expired, orphaned and stuck exports."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        storage: Optional[ArtifactStorage] = None,
        queue: Optional[ExportQueueService] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.storage = storage or artifact_storage
        self.queue = queue or export_queue
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None
            else settings.export_reaper_interval_seconds
        )
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # =========================================================================
    # Single passes
    # =========================================================================

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Delete every expired export's file and record.

        Returns:
            Number of records removed by this pass
        """
        now = now or utcnow()
        db = self.session_factory()
        store = ExportRequestStore(db)
        removed = 0
        try:
            for record in store.find_expired(now):
                try:
                    # Missing files are logged inside delete() and ignored
                    self.storage.delete(record.file_path)
                    if store.retire(record.id, record.user_id, record.secret, now):
                        removed += 1
                except Exception:
                    db.rollback()
                    logger.exception("Failed to reclaim expired ExportRequest %s", record.id)
            purged = store.purge_retired_secrets(now)
            if purged:
                logger.debug("Expiry sweep purged %d retired secret(s)", purged)
        finally:
            db.close()

        logger.debug("Expiry sweep removed %d export(s)", removed)
        return removed

    def reconcile(self, now: Optional[datetime] = None) -> int:
        """
        Recover exports the queue lost track of.

        Returns:
            Number of records re-enqueued
        """
        now = now or utcnow()
        orphan_cutoff = now - timedelta(seconds=settings.export_orphan_grace_seconds)
        stuck_cutoff = now - timedelta(seconds=settings.export_stuck_timeout_seconds)

        db = self.session_factory()
        store = ExportRequestStore(db)
        requeued = 0
        try:
            for record in store.find_stuck_processing(stuck_cutoff):
                if store.transition(
                    record.id, ExportStatus.PROCESSING, ExportStatus.PENDING,
                    expected_attempts=record.attempts,
                ):
                    logger.warning(
                        "ExportRequest %s stuck in processing since %s, resetting",
                        record.id, record.claimed_at,
                    )
                    self.queue.enqueue(record.id)
                    requeued += 1

            for record in store.find_orphaned_pending(orphan_cutoff):
                logger.warning("ExportRequest %s pending without a job, re-enqueuing", record.id)
                self.queue.enqueue(record.id)
                requeued += 1
        finally:
            db.close()

        return requeued

    def run_once(self, now: Optional[datetime] = None) -> dict:
        requeued = self.reconcile(now)
        removed = self.sweep(now)
        if requeued or removed:
            logger.info("Export reaper pass: %d re-enqueued, %d expired removed", requeued, removed)
        return {"requeued": requeued, "removed": removed}

    # =========================================================================
    # Supervised background loop
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the background loop on the running event loop."""
        if self.running:
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="export-expiry-reaper")
        logger.info("Export reaper started (interval %ss)", self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the current pass to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            logger.info("Export reaper stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("Export reaper pass failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
