"""
Unit tests for ExpiryReaper.

Tests the expiry sweep, recovery of orphaned and stuck records, and the
supervised asyncio loop.
"""
import asyncio
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.orm import Session

from app.models import ExportRequest, ExportStatus, RetiredExportSecret, User
from app.services.expiry_reaper import ExpiryReaper
from app.services.export_store import ExportRequestStore, utcnow
from tests.factories import create_completed_export, create_export_request


@pytest.fixture
def queue() -> MagicMock:
    return MagicMock()


@pytest.fixture
def reaper(session_factory, storage, queue) -> ExpiryReaper:
    return ExpiryReaper(session_factory=session_factory, storage=storage, queue=queue, interval_seconds=0.01)


def expired_at(now, hours: int = 49):
    return now - timedelta(hours=hours)


# =============================================================================
# sweep
# =============================================================================


class TestSweep:
    """Tests for deleting expired exports."""

    def test_removes_file_and_record_never_downloaded(self, reaper, db: Session, test_user: User, storage):
        now = utcnow()
        record = create_completed_export(db, test_user, storage.export_dir, requested_at=expired_at(now))

        assert reaper.sweep(now) == 1

        assert not Path(record.file_path).exists()
        assert ExportRequestStore(db).get(record.id) is None

    def test_removes_expired_records_in_any_status(self, reaper, db: Session, test_user: User):
        now = utcnow()
        for status in ExportStatus:
            create_export_request(db, test_user, status=status, requested_at=expired_at(now))

        assert reaper.sweep(now) == len(ExportStatus)
        assert db.query(ExportRequest).count() == 0

    def test_leaves_unexpired_records(self, reaper, db: Session, test_user: User, storage):
        now = utcnow()
        fresh = create_completed_export(db, test_user, storage.export_dir, requested_at=now - timedelta(hours=47))

        assert reaper.sweep(now) == 0

        assert Path(fresh.file_path).exists()
        assert ExportRequestStore(db).get(fresh.id) is not None

    def test_second_sweep_is_noop(self, reaper, db: Session, test_user: User, storage):
        now = utcnow()
        create_completed_export(db, test_user, storage.export_dir, requested_at=expired_at(now))

        assert reaper.sweep(now) == 1
        assert reaper.sweep(now) == 0

    def test_tolerates_already_missing_file(self, reaper, db: Session, test_user: User, storage):
        now = utcnow()
        record = create_completed_export(db, test_user, storage.export_dir, requested_at=expired_at(now))
        Path(record.file_path).unlink()

        assert reaper.sweep(now) == 1
        assert ExportRequestStore(db).get(record.id) is None

    def test_one_bad_record_does_not_stop_sweep(self, session_factory, queue, db: Session, test_user: User):
        now = utcnow()
        first = create_export_request(db, test_user, file_path="/bad/path", requested_at=expired_at(now))
        second = create_export_request(db, test_user, file_path="/good/path", requested_at=expired_at(now))

        broken_storage = MagicMock()

        def delete(path):
            if path == "/bad/path":
                raise PermissionError("read-only volume")
            return True

        broken_storage.delete.side_effect = delete
        reaper = ExpiryReaper(session_factory=session_factory, storage=broken_storage, queue=queue)

        assert reaper.sweep(now) == 1

        store = ExportRequestStore(db)
        assert store.get(first.id) is not None
        assert store.get(second.id) is None

    def test_remembers_secret_of_reaped_export(self, reaper, db: Session, test_user: User, storage):
        now = utcnow()
        record = create_completed_export(db, test_user, storage.export_dir, requested_at=expired_at(now))

        reaper.sweep(now)

        assert ExportRequestStore(db).is_retired_secret(test_user.id, record.secret) is True

    def test_purges_outlived_retired_secrets(self, reaper, db: Session, test_user: User):
        now = utcnow()
        store = ExportRequestStore(db)
        record = store.create(test_user.id, "csv")
        store.retire(record.id, test_user.id, record.secret, now=now - timedelta(hours=49))

        reaper.sweep(now)

        assert store.is_retired_secret(test_user.id, record.secret) is False
        assert db.query(RetiredExportSecret).count() == 0



# =============================================================================
# reconcile
# =============================================================================


class TestReconcile:
    """Tests for re-enqueuing lost work."""

    def test_requeues_orphaned_pending(self, reaper, queue, db: Session, test_user: User):
        now = utcnow()
        orphan = create_export_request(db, test_user, requested_at=now - timedelta(minutes=30))
        create_export_request(db, test_user, requested_at=now)

        assert reaper.reconcile(now) == 1

        queue.enqueue.assert_called_once_with(orphan.id)

    def test_resets_stuck_processing(self, reaper, queue, db: Session, test_user: User):
        now = utcnow()
        stuck = create_export_request(
            db, test_user, status=ExportStatus.PROCESSING, claimed_at=now - timedelta(hours=2), attempts=1
        )

        assert reaper.reconcile(now) == 1

        queue.enqueue.assert_called_once_with(stuck.id)
        record = ExportRequestStore(db).get(stuck.id)
        assert record.status == ExportStatus.PENDING.value
        assert record.attempts == 1

    def test_stuck_reset_skips_record_claimed_again(self, reaper, queue, db: Session, test_user: User):
        now = utcnow()
        record = create_export_request(
            db, test_user, status=ExportStatus.PROCESSING, claimed_at=now - timedelta(hours=2), attempts=2
        )
        # Snapshot taken before another worker re-claimed the record
        seen = SimpleNamespace(id=record.id, attempts=1, claimed_at=record.claimed_at)

        with patch.object(ExportRequestStore, "find_stuck_processing", return_value=[seen]):
            assert reaper.reconcile(now) == 0

        queue.enqueue.assert_not_called()
        reloaded = ExportRequestStore(db).get(record.id)
        assert reloaded.status == ExportStatus.PROCESSING.value
        assert reloaded.attempts == 2


    def test_leaves_active_work_alone(self, reaper, queue, db: Session, test_user: User):
        now = utcnow()
        create_export_request(
            db, test_user, status=ExportStatus.PROCESSING, claimed_at=now - timedelta(minutes=1)
        )
        create_export_request(db, test_user, status=ExportStatus.COMPLETED, requested_at=now - timedelta(hours=1))

        assert reaper.reconcile(now) == 0
        queue.enqueue.assert_not_called()


class TestRunOnce:
    def test_reports_counts(self, reaper, db: Session, test_user: User, storage):
        now = utcnow()
        create_completed_export(db, test_user, storage.export_dir, requested_at=expired_at(now))
        create_export_request(db, test_user, requested_at=now - timedelta(minutes=30))

        assert reaper.run_once(now) == {"requeued": 1, "removed": 1}


# =============================================================================
# background loop
# =============================================================================


class TestBackgroundLoop:
    """Tests for the supervised asyncio task."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, reaper):
        reaper.run_once = MagicMock(return_value={"requeued": 0, "removed": 0})

        reaper.start()
        assert reaper.running

        await asyncio.sleep(0.05)
        await reaper.stop()

        assert not reaper.running
        assert reaper.run_once.call_count >= 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, reaper):
        reaper.run_once = MagicMock(return_value={"requeued": 0, "removed": 0})

        task = reaper.start()
        assert reaper.start() is task

        await reaper.stop()

    @pytest.mark.asyncio
    async def test_failed_pass_keeps_loop_alive(self, reaper):
        reaper.run_once = MagicMock(side_effect=[RuntimeError("db down"), {"requeued": 0, "removed": 0}] * 50)

        reaper.start()
        await asyncio.sleep(0.05)

        assert reaper.running
        await reaper.stop()
        assert reaper.run_once.call_count >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self, reaper):
        await reaper.stop()
        assert not reaper.running
