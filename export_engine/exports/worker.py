"""
Export Worker - Background Execution Pipeline

Turns one pending export job into a completed artifact, or a failed or
cancelled job. A run:

1. claims the job (atomic pending -> processing)
2. counts the records and checks the format's record ceiling
3. streams batches to a temp file, checking the persisted status and the
   wall-clock deadline before every batch
4. stores the artifact and marks the job completed

Whatever happens, a run never leaves its job in processing.
"""

import os
from datetime import timedelta
from enum import Enum as PyEnum
from typing import Callable, List, Optional

from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy.orm import Session

from export_engine.core.config import Settings, settings as default_settings
from export_engine.exports.builders import get_record_source
from export_engine.exports.clock import Clock, SystemClock
from export_engine.exports.dispatcher import ExportDispatcher
from export_engine.exports.events import (
    EventPublisher,
    ExportCompleted,
    ExportFailed,
    ExportProgressUpdated,
    ExportStarted,
    safe_publish,
)
from export_engine.exports.exceptions import (
    ExportLimitExceededError,
    ExportTimeoutError,
    ExportValidationError,
    TransientIOError,
    UnrecoverableExportError,
)
from export_engine.exports.repository import ExportJobRepository
from export_engine.exports.storage import (
    FileStore,
    build_artifact_key,
    create_temp_file_path,
    discard_file,
)
from export_engine.exports.value_objects import ExportFormat, ExportId, ExportProgress, ExportStatus
from export_engine.exports.writers import get_writer
from export_engine.utils.logger import get_logger
from export_engine.utils.retry import RetryConfig, call_with_retry

logger = get_logger(__name__)

MIN_BATCH_SIZE = 500
MAX_BATCH_SIZE = 2000

TRANSIENT_FAILURE_MESSAGE = "Export failed due to a temporary storage or database problem. Please retry."
UNEXPECTED_FAILURE_MESSAGE = "Export failed due to an unexpected error. Please retry."
STUCK_FAILURE_MESSAGE = "Export stopped responding and was marked as failed. Please retry."


class ExportOutcome(str, PyEnum):
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class _StopRun(Exception):
    """Raised at a checkpoint when the job is no longer processing."""

    def __init__(self, status: Optional[ExportStatus]):
        self.status = status
        super().__init__(f"Export is no longer processing (status={status})")


def sanitize_error(error: BaseException, timeout_seconds: int) -> str:
    """User-facing message for a failed run. Diagnostics stay in the logs."""
    if isinstance(error, UnrecoverableExportError):
        return str(error)
    if isinstance(error, SoftTimeLimitExceeded):
        return timeout_message(timeout_seconds)
    if isinstance(error, TransientIOError):
        return TRANSIENT_FAILURE_MESSAGE
    return UNEXPECTED_FAILURE_MESSAGE


def timeout_message(timeout_seconds: int) -> str:
    return (
        f"Export timed out after {timeout_seconds} seconds. "
        "Please apply more filters to reduce the dataset and retry."
    )


class _Run:
    """Mutable state of one worker run."""

    def __init__(self, export_id: str, claim_token: str, deadline):
        self.export_id = export_id
        self.claim_token = claim_token
        self.deadline = deadline
        self.processed = 0
        self.total = 0
        self.temp_path: Optional[str] = None
        self.stored_path: Optional[str] = None


class ExportWorker:
    """
    Executes export jobs. One instance per worker process; ``run`` is called
    once per dequeued export id.
    """

    def __init__(
        self,
        db: Session,
        file_store: FileStore,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        record_source_factory: Callable = get_record_source,
    ):
        self.db = db
        self.repo = ExportJobRepository(db)
        self.file_store = file_store
        self.publisher = publisher
        self.clock = clock or SystemClock()
        self.settings = settings or default_settings
        self.record_source_factory = record_source_factory
        self.batch_size = max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, self.settings.export_batch_size))
        self.retry_config = RetryConfig(
            max_attempts=self.settings.export_transient_max_attempts,
            initial_delay=self.settings.export_transient_initial_delay,
            backoff_factor=self.settings.export_transient_backoff_factor,
            max_delay=self.settings.export_transient_max_delay,
            retriable_exceptions=(TransientIOError,),
        )

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def max_records(self, export_format: ExportFormat) -> int:
        if export_format is ExportFormat.EXCEL:
            return self.settings.export_max_records_excel
        return self.settings.export_max_records_csv

    def max_file_size_mb(self, export_format: ExportFormat) -> int:
        if export_format is ExportFormat.EXCEL:
            return self.settings.export_max_file_size_mb_excel
        return self.settings.export_max_file_size_mb_csv

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, export_id) -> ExportOutcome:
        try:
            export_id = str(ExportId.from_string(export_id))
        except ExportValidationError:
            logger.error("Worker received an invalid export id", export_id=str(export_id))
            return ExportOutcome.SKIPPED

        started_at = self.clock.now()
        claim_token = self.repo.claim(export_id, started_at)
        self.db.commit()
        if claim_token is None:
            logger.info("Export not claimed, skipping", export_id=export_id)
            return ExportOutcome.SKIPPED

        run = _Run(
            export_id,
            claim_token,
            deadline=started_at + timedelta(seconds=self.settings.export_worker_timeout_seconds),
        )
        logger.info("Export job claimed", export_id=export_id)

        try:
            return self._execute(run)
        except _StopRun as stop:
            return self._stopped(run, stop.status)
        except Exception as e:
            return self._fail(run, e)
        finally:
            discard_file(run.temp_path)
            self._ensure_finalized(run)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _execute(self, run: _Run) -> ExportOutcome:
        job = self.repo.get_by_export_id(run.export_id)
        filters = job.filters or {}
        export_format = job.format
        source = self.record_source_factory(job.resource_type, self.db, job.organization_id)

        # Plan
        total = call_with_retry(
            lambda: source.count(filters),
            self.retry_config,
            operation="count_records",
        )
        run.total = total

        limit = self.max_records(export_format)
        if total > limit:
            raise ExportLimitExceededError(
                f"Export exceeds maximum allowed records. Found {total} records, "
                f"maximum allowed is {limit}. Please apply more filters to reduce the dataset."
            )

        self.repo.set_total_records(run.export_id, total, run.claim_token)
        self.db.commit()
        logger.info("Export planned", export_id=run.export_id, total_records=total, format=export_format.value)
        safe_publish(
            self.publisher,
            ExportStarted(export_id=run.export_id, occurred_at=self.clock.now(), total_records=total),
        )

        # Stream
        run.temp_path = create_temp_file_path(
            self.settings.export_storage_dir, ExportId(run.export_id), export_format, run.claim_token
        )
        writer = get_writer(export_format, run.temp_path)
        writer.open(source.fieldnames, source.labels)
        try:
            if total > 0:
                self._stream(run, source, filters, limit, writer)
        finally:
            writer.close()

        self._checkpoint(run)
        return self._finalize(run, export_format)

    def _stream(self, run: _Run, source, filters: dict, limit: int, writer) -> None:
        after_id = None
        while True:
            self._checkpoint(run)

            rows: List[dict] = call_with_retry(
                lambda: source.fetch_batch(filters, after_id, self.batch_size),
                self.retry_config,
                operation="fetch_batch",
            )
            if not rows:
                break

            writer.write_batch(rows)
            run.processed += len(rows)
            after_id = rows[-1]["id"]

            if run.processed > limit:
                raise ExportLimitExceededError(
                    f"Export exceeds maximum allowed records. Found more than {limit} records. "
                    "Please apply more filters to reduce the dataset."
                )
            # Rows inserted after the count was taken
            if run.processed > run.total:
                run.total = run.processed

            progress = ExportProgress.from_records(run.processed, run.total)
            if self.repo.update_progress(run.export_id, progress, run.claim_token):
                self.db.commit()
                logger.debug(
                    "Export progress updated",
                    export_id=run.export_id,
                    percentage=progress.percentage,
                    processed=run.processed,
                    total=run.total,
                )
                safe_publish(
                    self.publisher,
                    ExportProgressUpdated(
                        export_id=run.export_id,
                        occurred_at=self.clock.now(),
                        percentage=progress.percentage,
                        message=progress.message,
                        processed_records=progress.processed_records,
                        total_records=progress.total_records,
                    ),
                )
            else:
                self.db.commit()

            if len(rows) < self.batch_size:
                break

    def _checkpoint(self, run: _Run) -> None:
        """
        Re-reads the persisted status and claim token, and enforces the
        wall-clock deadline. A run whose claim was taken over stops here.
        """
        status = self._held_status(run)
        if status != ExportStatus.PROCESSING:
            raise _StopRun(status)
        if self.clock.now() >= run.deadline:
            raise ExportTimeoutError(timeout_message(self.settings.export_worker_timeout_seconds))

    def _finalize(self, run: _Run, export_format: ExportFormat) -> ExportOutcome:
        file_size = os.path.getsize(run.temp_path)
        max_mb = self.max_file_size_mb(export_format)
        if file_size > max_mb * 1024 * 1024:
            raise ExportLimitExceededError(
                f"Export file size ({round(file_size / 1024 / 1024, 2)} MB) exceeds the maximum "
                f"allowed size of {max_mb} MB for {export_format.label} exports. "
                "Please apply more filters to reduce the dataset."
            )

        key = build_artifact_key(ExportId(run.export_id), export_format, self.clock.now())
        run.stored_path = call_with_retry(
            lambda: self.file_store.put(run.temp_path, key, export_format.mime_type),
            self.retry_config,
            operation="store_artifact",
        )

        if run.processed == 0:
            progress = ExportProgress.completed("no records", 0, 0)
        else:
            progress = ExportProgress.completed(
                "Export completed successfully", run.processed, run.total
            )

        completed_at = self.clock.now()
        expires_at = completed_at + timedelta(days=self.settings.export_retention_days)
        completed = self.repo.mark_completed(
            run.export_id,
            file_path=run.stored_path,
            file_size=file_size,
            progress=progress,
            completed_at=completed_at,
            expires_at=expires_at,
            claim_token=run.claim_token,
        )
        self.db.commit()

        if not completed:
            # Cancelled, force-failed or re-claimed since the last checkpoint
            return self._stopped(run, self._held_status(run))

        logger.info(
            "Export job completed",
            export_id=run.export_id,
            file_path=run.stored_path,
            file_size=file_size,
            records=run.processed,
        )
        safe_publish(
            self.publisher,
            ExportCompleted(
                export_id=run.export_id,
                occurred_at=completed_at,
                file_path=run.stored_path,
                file_size=file_size,
                records_exported=run.processed,
            ),
        )
        return ExportOutcome.COMPLETED

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _discard_stored_artifact(self, run: _Run) -> None:
        if not run.stored_path:
            return
        try:
            self.file_store.delete(run.stored_path)
        except Exception as e:
            logger.warning(
                "Failed to delete artifact of stopped export",
                export_id=run.export_id,
                file_path=run.stored_path,
                error=str(e),
            )
        run.stored_path = None

    def _held_status(self, run: _Run) -> Optional[ExportStatus]:
        """Persisted status, or None once another run holds the job."""
        status, claim_token = self.repo.get_claim(run.export_id)
        self.db.commit()
        if claim_token != run.claim_token:
            logger.warning(
                "Export claim superseded by another run",
                export_id=run.export_id,
                status=status.value if status else None,
            )
            return None
        return status

    def _stopped(self, run: _Run, status: Optional[ExportStatus]) -> ExportOutcome:
        self._discard_stored_artifact(run)
        logger.info(
            "Export stopped at checkpoint",
            export_id=run.export_id,
            status=status.value if status else None,
            processed=run.processed,
        )
        if status == ExportStatus.CANCELLED:
            return ExportOutcome.CANCELLED
        if status == ExportStatus.FAILED:
            return ExportOutcome.FAILED
        return ExportOutcome.SKIPPED

    def _fail(self, run: _Run, error: Exception) -> ExportOutcome:
        self.db.rollback()
        self._discard_stored_artifact(run)
        message = sanitize_error(error, self.settings.export_worker_timeout_seconds)
        logger.error(
            "Export job failed",
            export_id=run.export_id,
            error=str(error),
            error_type=type(error).__name__,
            processed=run.processed,
            total=run.total,
            exc_info=True,
        )

        failed = self.repo.mark_failed(
            run.export_id, message, run.processed, self.clock.now(), claim_token=run.claim_token
        )
        self.db.commit()
        if not failed:
            return self._stopped(run, self._held_status(run))

        safe_publish(
            self.publisher,
            ExportFailed(
                export_id=run.export_id,
                occurred_at=self.clock.now(),
                error_message=message,
                processed_records=run.processed,
            ),
        )
        return ExportOutcome.FAILED

    def _ensure_finalized(self, run: _Run) -> None:
        """Deferred finalizer: a job this run claimed must not stay processing."""
        try:
            self.db.rollback()
            status, claim_token = self.repo.get_claim(run.export_id)
            if status != ExportStatus.PROCESSING or claim_token != run.claim_token:
                self.db.commit()
                return
            self.repo.mark_failed(
                run.export_id, UNEXPECTED_FAILURE_MESSAGE, run.processed, self.clock.now(),
                claim_token=run.claim_token,
            )
            self.db.commit()
            logger.error("Export left processing by an aborted run, marked failed", export_id=run.export_id)
        except Exception as e:
            self.db.rollback()
            logger.error(
                "Could not finalize export, leaving it for the watchdog",
                export_id=run.export_id,
                error=str(e),
                exc_info=True,
            )


class StuckExportReclaimer:
    """
    Watchdog sweep.

    Jobs processing for longer than the worker timeout plus grace are forced to
    failed (retry-eligible). Jobs pending for longer than the requeue window are
    enqueued again; the atomic claim makes duplicate deliveries harmless.
    """

    def __init__(
        self,
        db: Session,
        dispatcher: ExportDispatcher,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.repo = ExportJobRepository(db)
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.clock = clock or SystemClock()
        self.settings = settings or default_settings

    def reclaim(self) -> dict:
        now = self.clock.now()
        stuck_cutoff = now - timedelta(
            seconds=self.settings.export_worker_timeout_seconds + self.settings.export_watchdog_grace_seconds
        )
        failed = []
        for export_id in self.repo.find_stuck_processing(stuck_cutoff):
            if self.repo.mark_failed(export_id, STUCK_FAILURE_MESSAGE, None, now):
                self.db.commit()
                failed.append(export_id)
                logger.warning("Stuck export force-failed", export_id=export_id)
                safe_publish(
                    self.publisher,
                    ExportFailed(export_id=export_id, occurred_at=now, error_message=STUCK_FAILURE_MESSAGE),
                )
            else:
                self.db.commit()

        pending_cutoff = now - timedelta(seconds=self.settings.export_pending_requeue_seconds)
        requeued = []
        for export_id in self.repo.find_stale_pending(pending_cutoff):
            try:
                self.dispatcher.enqueue(export_id)
            except Exception as e:
                logger.error("Failed to re-enqueue pending export", export_id=export_id, error=str(e))
                continue
            requeued.append(export_id)
        self.db.commit()

        if failed or requeued:
            logger.info("Watchdog sweep finished", failed=len(failed), requeued=len(requeued))
        return {"failed": failed, "requeued": requeued}
