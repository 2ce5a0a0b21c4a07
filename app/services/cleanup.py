"""Periodic cleanup and reconciliation of files, recipients, audit rows and quotas.

Each phase runs in its own failure domain: an exception is logged, counted in
``errors`` and the remaining phases still run.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import CleanupAlreadyRunning
from app.metrics import observe_job, record_cleanup
from app.models.audit import RETAINED_SEVERITIES, AuditLog
from app.models.file import File, FileStatus
from app.models.file_recipient import FileRecipient
from app.services.audit import audit_events
from app.services.common import as_utc
from app.services.email import send_admin_notification
from app.services.file_catalog import file_catalog
from app.services.file_records import file_records
from app.services.job_lock import JobCoordinator
from app.services.quota import quotas
from app.services.storage import ObjectStorageError, get_storage
from app.services.system_settings import system_settings

logger = logging.getLogger(__name__)

PHASES = (
    "expired_files",
    "expired_recipients",
    "old_audit_logs",
    "orphaned_files",
    "quota_resets",
    "storage",
)


class CleanupJob:
    def __init__(self, coordinator: JobCoordinator | None = None) -> None:
        self.coordinator = coordinator or JobCoordinator("cleanup")
        self.storage = None

    def _storage_client(self):
        if self.storage is None:
            self.storage = get_storage()
        return self.storage

    # Phases

    def expire_files(self, db: Session, now: datetime) -> dict:
        files = (
            db.query(File)
            .filter(File.status != FileStatus.deleted)
            .filter(File.expiry_date < now)
            .all()
        )
        deleted = 0
        errors = 0
        for file in files:
            try:
                file_records.remove_blobs(file)
                if file_records.mark_deleted(db, file, remove_blobs=False):
                    deleted += 1
            except Exception:
                db.rollback()
                errors += 1
                logger.exception("cleanup_file_failed file_id=%s", file.id)
        logger.info("cleanup_expired_files deleted=%s errors=%s", deleted, errors)
        return {"count": deleted, "errors": errors}

    def prune_recipients(self, db: Session, now: datetime) -> int:
        retention_days = system_settings.get_number(db, "EMAIL_RETENTION_DAYS", 30)
        cutoff = now - timedelta(days=retention_days)
        deleted_files = select(File.id).where(File.status == FileStatus.deleted)
        result = db.execute(
            delete(FileRecipient)
            .where(
                or_(
                    FileRecipient.downloaded_at < cutoff,
                    FileRecipient.file_id.in_(deleted_files),
                )
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        count = result.rowcount or 0
        logger.info("cleanup_expired_recipients deleted=%s", count)
        return count

    def prune_audit_logs(self, db: Session, now: datetime) -> int:
        retention_days = system_settings.get_number(db, "AUDIT_LOG_RETENTION_DAYS", 365)
        cutoff = now - timedelta(days=retention_days)
        retained_cutoff = now - timedelta(days=retention_days * 2)
        routine = db.execute(
            delete(AuditLog)
            .where(AuditLog.created_at < cutoff)
            .where(AuditLog.severity.not_in(list(RETAINED_SEVERITIES)))
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        retained = db.execute(
            delete(AuditLog)
            .where(AuditLog.created_at < retained_cutoff)
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        db.commit()
        logger.info("cleanup_old_audit_logs deleted=%s", routine + retained)
        return routine + retained

    def referenced_keys(self, db: Session) -> set[str]:
        rows = (
            db.query(File.file_path, File.thumbnail_path, File.metadata_)
            .filter(File.status != FileStatus.deleted)
            .all()
        )
        keys: set[str] = set()
        for file_path, thumbnail_path, metadata in rows:
            if file_path:
                keys.add(file_path)
            if thumbnail_path:
                keys.add(thumbnail_path)
            keys.update((metadata or {}).get("thumbnails", {}).values())
        return keys

    def reconcile_orphans(self, db: Session) -> int:
        storage = self._storage_client()
        referenced = {storage.resolve(key) for key in self.referenced_keys(db)}
        removed = 0
        for key in list(storage.walk()):
            if storage.resolve(key) in referenced:
                continue
            try:
                if storage.delete(key):
                    removed += 1
                    logger.debug("orphan_deleted key=%s", key)
            except ObjectStorageError as exc:
                logger.warning("orphan_delete_failed key=%s error=%s", key, exc)
        logger.info("cleanup_orphaned_files deleted=%s", removed)
        return removed

    def reset_quotas(self, db: Session, now: datetime) -> int:
        result = quotas.reset_expired_windows(db, now.date())
        return result["daily"]

    def _recently_alerted(self, db: Session, action: str, now: datetime) -> bool:
        hours = system_settings.get_number(db, "STORAGE_ALERT_SUPPRESSION_HOURS", 0)
        if not hours or hours <= 0:
            return False
        latest = (
            db.query(AuditLog.created_at)
            .filter(AuditLog.action == action)
            .order_by(AuditLog.created_at.desc())
            .first()
        )
        return bool(latest and as_utc(latest[0]) > now - timedelta(hours=hours))

    def check_storage(self, db: Session, now: datetime) -> dict:
        stats = file_catalog.storage_stats(db)
        usage = float(stats["usage_percent"])
        warning = system_settings.get_number(db, "STORAGE_WARNING_THRESHOLD", 90)
        critical = system_settings.get_number(db, "STORAGE_CRITICAL_THRESHOLD", 95)
        level = None
        if usage >= critical:
            level = "critical"
        elif usage >= warning:
            level = "warning"
        outcome = {"usage_percent": usage, "level": level, "alerted": False}
        if level is None:
            logger.info("storage_usage_checked usage_percent=%.1f", usage)
            return outcome

        action = f"STORAGE_{level.upper()}"
        if self._recently_alerted(db, action, now):
            logger.info("storage_alert_suppressed level=%s usage_percent=%.1f", level, usage)
            return outcome

        subject = "Critical storage alert" if level == "critical" else "Storage warning"
        send_admin_notification(
            db,
            subject,
            [
                f"Storage is {usage:.1f}% full.",
                f"Active files: {stats['active_files']} ({stats['active_size']} bytes)",
                f"Capacity: {stats['capacity']} bytes",
            ],
        )
        audit_events.log_system_action(
            db, action, details={"usage_percent": usage, "storage": stats}
        )
        logger.warning("storage_threshold_crossed level=%s usage_percent=%.1f", level, usage)
        outcome["alerted"] = True
        return outcome

    # Run

    def _execute(self, db: Session, trigger: str) -> dict:
        started = time.monotonic()
        now = datetime.now(UTC)
        results: dict = {phase: 0 for phase in PHASES}
        results["storage"] = None
        results["errors"] = 0
        logger.info("cleanup_started trigger=%s", trigger)

        phases = (
            ("expired_files", lambda: self.expire_files(db, now)),
            ("expired_recipients", lambda: self.prune_recipients(db, now)),
            ("old_audit_logs", lambda: self.prune_audit_logs(db, now)),
            ("orphaned_files", lambda: self.reconcile_orphans(db)),
            ("quota_resets", lambda: self.reset_quotas(db, now)),
            ("storage", lambda: self.check_storage(db, now)),
        )
        for name, phase in phases:
            try:
                value = phase()
            except Exception:
                db.rollback()
                results["errors"] += 1
                logger.exception("cleanup_phase_failed phase=%s", name)
                continue
            if isinstance(value, dict) and "count" in value:
                results[name] = value["count"]
                results["errors"] += value["errors"]
            else:
                results[name] = value
            if isinstance(results[name], int):
                record_cleanup(name, results[name])

        duration_ms = int((time.monotonic() - started) * 1000)
        results["duration_ms"] = duration_ms
        results["trigger"] = trigger
        audit_events.log_system_action(db, "CLEANUP_JOB_COMPLETED", details=results)
        logger.info(
            "cleanup_completed trigger=%s duration_ms=%s expired_files=%s orphaned_files=%s errors=%s",
            trigger,
            duration_ms,
            results["expired_files"],
            results["orphaned_files"],
            results["errors"],
        )

        threshold = system_settings.get_number(db, "CLEANUP_NOTIFY_FILE_THRESHOLD", 10)
        if results["errors"] > 0 or results["expired_files"] > threshold:
            self._send_report(db, results)
        return results

    def _send_report(self, db: Session, results: dict) -> None:
        lines = [
            f"Expired files deleted: {results['expired_files']}",
            f"Expired recipients deleted: {results['expired_recipients']}",
            f"Old audit logs deleted: {results['old_audit_logs']}",
            f"Orphaned files deleted: {results['orphaned_files']}",
            f"Errors: {results['errors']}",
            f"Duration: {round(results['duration_ms'] / 1000)}s",
        ]
        if results["errors"]:
            lines.append("Check the logs for details about the errors.")
        try:
            send_admin_notification(db, "Cleanup job report", lines)
        except Exception:
            logger.exception("cleanup_report_failed")

    def run(self, db: Session, trigger: str = "scheduled") -> dict | None:
        """Run all phases unless another run holds the lock; returns None when skipped."""
        if not self.coordinator.try_start():
            logger.warning("cleanup_skipped reason=already_running trigger=%s", trigger)
            return None
        started = time.monotonic()
        status = "success"
        try:
            return self._execute(db, trigger)
        except Exception as exc:
            status = "error"
            db.rollback()
            logger.exception("cleanup_failed trigger=%s", trigger)
            audit_events.log_system_action(
                db,
                "CLEANUP_JOB_FAILED",
                details={"error": str(exc), "duration_ms": int((time.monotonic() - started) * 1000)},
            )
            raise
        finally:
            observe_job("cleanup", status, time.monotonic() - started)
            self.coordinator.finish()

    def run_manual(self, db: Session, user_id=None) -> dict:
        if self.coordinator.is_running:
            raise CleanupAlreadyRunning()
        logger.info("cleanup_manual_trigger user_id=%s", user_id)
        results = self.run(db, trigger="manual")
        if results is None:
            raise CleanupAlreadyRunning()
        return results

    def status(self, db: Session) -> dict:
        interval = settings.cleanup_interval_hours
        last = (
            db.query(AuditLog)
            .filter(AuditLog.action == "CLEANUP_JOB_COMPLETED")
            .order_by(AuditLog.created_at.desc())
            .first()
        )
        last_run = as_utc(last.created_at) if last else None
        next_run = None
        if interval > 0:
            next_run = (last_run or datetime.now(UTC)) + timedelta(hours=interval)
        return {
            "is_running": self.coordinator.is_running,
            "is_scheduled": interval > 0,
            "interval_hours": interval,
            "started_at": self.coordinator.started_at,
            "last_run": last_run,
            "last_results": last.details if last else None,
            "next_run": next_run,
        }


cleanup_job = CleanupJob()
