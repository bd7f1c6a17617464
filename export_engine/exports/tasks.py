"""
Celery Tasks for Async Export Processing

process_export consumes the export queue; the cleanup sweep and the stuck
export watchdog run on beat. None of these tasks retry automatically: a
failed export is only re-attempted through RetryExport.
"""

from celery import shared_task

from export_engine.core.config import settings
from export_engine.core.db import SessionLocal
from export_engine.exports.dependencies import (
    get_export_service,
    get_export_worker,
    get_stuck_export_reclaimer,
)
from export_engine.utils.logger import get_logger

logger = get_logger(__name__)


@shared_task(
    name="exports.process_export",
    bind=True,
    acks_late=True,
    soft_time_limit=settings.export_worker_timeout_seconds,
    time_limit=settings.export_worker_timeout_seconds + settings.export_watchdog_grace_seconds,
)
def process_export_task(self, export_id: str):
    """
    Celery task to generate one export file.

    Args:
        export_id: Public export id of a pending job

    Returns:
        dict: Outcome summary
    """
    db = SessionLocal()
    try:
        logger.info("Export task received", export_id=export_id, task_id=self.request.id)
        outcome = get_export_worker(db).run(export_id)
        return {"export_id": export_id, "outcome": outcome.value}
    finally:
        db.close()


@shared_task(name="exports.cleanup_expired_exports")
def cleanup_expired_exports_task(batch_size=None, dry_run=False, days_old=None):
    """Scheduled sweep deleting expired export artifacts and records."""
    db = SessionLocal()
    try:
        result = get_export_service(db).cleanup_expired_exports(
            batch_size=batch_size, dry_run=dry_run, days_old=days_old
        )
        return result.model_dump()
    except Exception as e:
        logger.error("Export cleanup task failed", error=str(e), exc_info=True)
        raise
    finally:
        db.close()


@shared_task(name="exports.reclaim_stuck_exports")
def reclaim_stuck_exports_task():
    """Watchdog: force-fail stuck processing jobs and re-enqueue stale pending ones."""
    db = SessionLocal()
    try:
        return get_stuck_export_reclaimer(db).reclaim()
    finally:
        db.close()
