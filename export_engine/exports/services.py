# export_engine/exports/services.py

from datetime import timedelta
from pathlib import PurePosixPath
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from export_engine.core.config import Settings, settings as default_settings
from export_engine.exports.builders import SUPPORTED_RESOURCE_TYPES
from export_engine.exports.clock import Clock, SystemClock
from export_engine.exports.dispatcher import ExportDispatcher
from export_engine.exports.events import (
    EventPublisher,
    ExportCancelled,
    ExportRequested,
    safe_publish,
)
from export_engine.exports.exceptions import (
    CannotDeleteProcessingExportError,
    CannotRetryNonFailedExportError,
    ExportAccessDeniedError,
    ExportNotDownloadableError,
    ExportNotFoundError,
    ExportValidationError,
)
from export_engine.exports.models import ExportJob
from export_engine.exports.repository import SORT_OPTIONS, ExportJobRepository
from export_engine.exports.schemas import (
    CleanupResult,
    DownloadUrlResponse,
    ExportListItem,
    ExportRequest,
    ExportStatusResponse,
    PaginatedExportListResponse,
)
from export_engine.exports.storage import FileStore, cleanup_old_temp_files
from export_engine.exports.value_objects import ExportId, ExportStatus
from export_engine.utils.logger import get_logger

logger = get_logger(__name__)

MAX_PER_PAGE = 100
MAX_DOWNLOAD_URL_MINUTES = 7 * 24 * 60


class ExportService:
    """
    Service layer for export jobs.
    Handles the commands (request, retry, cancel, delete, cleanup) and the
    read queries. Commands are short transactions; all long-running work is
    handed to the worker through the dispatcher.
    """

    def __init__(
        self,
        db: Session,
        dispatcher: ExportDispatcher,
        publisher: Optional[EventPublisher] = None,
        file_store: Optional[FileStore] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.repo = ExportJobRepository(db)
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.file_store = file_store
        self.clock = clock or SystemClock()
        self.settings = settings or default_settings

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_job(self, export_id) -> ExportJob:
        try:
            parsed = ExportId.from_string(export_id)
        except ExportValidationError:
            raise ExportNotFoundError(str(export_id))

        job = self.repo.get_by_export_id(parsed)
        if job is None:
            raise ExportNotFoundError(str(parsed))
        return job

    def _get_owned_job(self, export_id, user_id: int) -> ExportJob:
        job = self._get_job(export_id)
        if not job.is_owned_by(user_id):
            logger.warning(
                "Export access denied",
                export_id=job.export_id,
                user_id=user_id,
                owner_id=job.user_id,
            )
            raise ExportAccessDeniedError(job.export_id, user_id)
        return job

    def _enqueue(self, export_id: str) -> None:
        # The job is already committed as pending; a lost enqueue is picked
        # up by the stuck export watchdog.
        try:
            self.dispatcher.enqueue(export_id)
        except Exception as e:
            logger.error(
                "Failed to enqueue export job, leaving it for the watchdog",
                export_id=export_id,
                error=str(e),
                exc_info=True,
            )

    def _delete_artifact(self, job: ExportJob) -> None:
        """Best-effort removal of the stored artifact."""
        if not job.file_path or self.file_store is None:
            return
        try:
            self.file_store.delete(job.file_path)
        except Exception as e:
            logger.warning(
                "Failed to delete export artifact, deleting record anyway",
                export_id=job.export_id,
                file_path=job.file_path,
                error=str(e),
            )

    def _delete_job(self, job: ExportJob) -> bool:
        self._delete_artifact(job)
        deleted = self.repo.delete_terminal(job.export_id)
        self.db.commit()
        return deleted

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def request_export(
        self,
        user_id: int,
        organization_id: int,
        format: str,
        filters: Optional[dict] = None,
        date_range_from=None,
        date_range_to=None,
        resource_ids=None,
        include_anonymous: bool = True,
        include_recurring: bool = True,
        resource_type: str = "donations",
    ) -> ExportId:
        """
        Validates the request, persists a pending job and enqueues it.

        Every call creates an independent job.

        Raises:
            ExportValidationError: invalid input or too many active exports
        """
        try:
            request = ExportRequest(
                user_id=user_id,
                organization_id=organization_id,
                resource_type=resource_type,
                format=format,
                filters=filters or {},
                date_range_from=date_range_from,
                date_range_to=date_range_to,
                resource_ids=resource_ids,
                include_anonymous=include_anonymous,
                include_recurring=include_recurring,
            )
        except ValidationError as e:
            error = e.errors()[0]
            location = ".".join(str(part) for part in error.get("loc", ()))
            message = error.get("msg", "Invalid export request")
            raise ExportValidationError(f"{location}: {message}" if location else message) from e

        if request.resource_type not in SUPPORTED_RESOURCE_TYPES:
            raise ExportValidationError(f"Unsupported export resource type: {request.resource_type}")

        active_for_user = self.repo.count_active_for_user(request.user_id)
        if active_for_user >= self.settings.export_max_active_per_user:
            raise ExportValidationError(
                f"You already have {active_for_user} exports in progress. "
                "Please wait for them to finish before requesting another."
            )

        active_for_org = self.repo.count_active_for_organization(request.organization_id)
        if active_for_org >= self.settings.export_max_active_per_org:
            raise ExportValidationError(
                "Your organization has too many exports in progress. Please try again later."
            )

        export_id = ExportId.generate()
        normalized_filters = request.normalized_filters()
        job = ExportJob(
            export_id=str(export_id),
            user_id=request.user_id,
            organization_id=request.organization_id,
            resource_type=request.resource_type,
            format=request.format,
            status=ExportStatus.PENDING,
            current_percentage=0,
            processed_records=0,
            total_records=0,
            progress_message="Export queued",
            filters=normalized_filters,
            created_at=self.clock.now(),
        )
        self.repo.create(job)
        self.db.commit()

        safe_publish(
            self.publisher,
            ExportRequested(
                export_id=str(export_id),
                occurred_at=self.clock.now(),
                user_id=request.user_id,
                organization_id=request.organization_id,
                resource_type=request.resource_type,
                format=request.format.value,
                filters=normalized_filters,
            ),
        )
        self._enqueue(str(export_id))
        return export_id

    def retry_export(self, export_id, user_id: int) -> ExportJob:
        """
        Resets a failed job to pending and enqueues a new worker run.

        Raises:
            ExportNotFoundError, ExportAccessDeniedError,
            CannotRetryNonFailedExportError
        """
        job = self._get_owned_job(export_id, user_id)
        if job.status != ExportStatus.FAILED:
            raise CannotRetryNonFailedExportError(job.export_id, job.status.value)

        if not self.repo.reset_for_retry(job.export_id):
            # Lost a race with another retry (or a delete)
            self.db.rollback()
            current = self.repo.get_status(job.export_id)
            raise CannotRetryNonFailedExportError(
                job.export_id, current.value if current else "deleted"
            )
        self.db.commit()

        logger.info("Export job reset for retry", export_id=job.export_id, user_id=user_id)
        self._enqueue(job.export_id)
        return self.repo.get_by_export_id(job.export_id)

    def cancel_export(self, export_id, user_id: int, reason: str = "Cancelled by user") -> None:
        """
        Cancels a pending or processing job. A processing job stops at its next
        batch checkpoint. Cancelling a terminal job is a no-op.
        """
        job = self._get_owned_job(export_id, user_id)
        if job.status.is_terminal:
            logger.info("Cancel ignored, export already finished", export_id=job.export_id, status=job.status.value)
            return

        cancelled = self.repo.mark_cancelled(job.export_id, reason, self.clock.now())
        self.db.commit()
        if not cancelled:
            logger.info("Cancel ignored, export finished concurrently", export_id=job.export_id)
            return

        logger.info("Export job cancelled", export_id=job.export_id, previous_status=job.status.value, reason=reason)
        safe_publish(
            self.publisher,
            ExportCancelled(export_id=job.export_id, occurred_at=self.clock.now(), reason=reason),
        )

    def delete_export(self, export_id, user_id: int) -> None:
        """
        Deletes a terminal job and its artifact.

        Raises:
            CannotDeleteProcessingExportError: job is pending or processing
        """
        job = self._get_owned_job(export_id, user_id)
        if job.status.is_active:
            raise CannotDeleteProcessingExportError(job.export_id, job.status.value)

        if not self._delete_job(job):
            current = self.repo.get_status(job.export_id)
            if current is None:
                raise ExportNotFoundError(job.export_id)
            raise CannotDeleteProcessingExportError(job.export_id, current.value)

        logger.info("Export job deleted", export_id=job.export_id, user_id=user_id)

    def cleanup_expired_exports(
        self,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
        days_old: Optional[int] = None,
    ) -> CleanupResult:
        """
        Deletes expired exports in passes of ``batch_size`` until a pass comes
        back short.

        Without ``days_old`` completed jobs past ``expires_at`` are selected;
        with it, any terminal job created more than ``days_old`` days ago.
        Pending and processing jobs are never selected. A failure on one job is
        logged and the sweep continues.
        Temp files abandoned by killed worker runs are removed as well.
        """
        batch_size = batch_size or self.settings.export_cleanup_batch_size
        if batch_size < 1:
            raise ExportValidationError("batch_size must be a positive integer")
        if days_old is not None and days_old < 0:
            raise ExportValidationError("days_old cannot be negative")

        now = self.clock.now()
        cutoff = now - timedelta(days=days_old) if days_old is not None else None
        result = CleanupResult(dry_run=dry_run)
        failed_ids = set()

        logger.info("Starting export cleanup", batch_size=batch_size, dry_run=dry_run, days_old=days_old)

        while True:
            # A dry run deletes nothing, so it has to page forward
            offset = result.scanned if dry_run else 0
            if cutoff is not None:
                batch = self.repo.find_terminal_created_before(cutoff, batch_size, offset, failed_ids)
            else:
                batch = self.repo.find_expired_completed(now, batch_size, offset, failed_ids)

            result.passes += 1
            result.scanned += len(batch)

            for job in batch:
                if dry_run:
                    result.candidates.append(job.export_id)
                    continue
                try:
                    deleted = self._delete_job(job)
                except Exception as e:
                    self.db.rollback()
                    deleted = False
                    logger.error(
                        "Failed to delete expired export",
                        export_id=job.export_id,
                        error=str(e),
                        exc_info=True,
                    )
                if deleted:
                    result.deleted += 1
                    result.candidates.append(job.export_id)
                else:
                    result.failed += 1
                    failed_ids.add(job.export_id)

            if len(batch) < batch_size:
                break

        if not dry_run:
            result.temp_files_removed = len(cleanup_old_temp_files(
                self.settings.export_storage_dir, self.settings.export_temp_file_max_age_hours, now
            ))

        logger.info(
            "Export cleanup finished",
            scanned=result.scanned,
            deleted=result.deleted,
            failed=result.failed,
            passes=result.passes,
            temp_files_removed=result.temp_files_removed,
            dry_run=dry_run,
        )
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_export_status(self, export_id, user_id: Optional[int] = None) -> ExportStatusResponse:
        if user_id is None:
            job = self._get_job(export_id)
        else:
            job = self._get_owned_job(export_id, user_id)
        return ExportStatusResponse.from_job(job, self.clock.now())

    def get_user_exports(
        self,
        user_id: int,
        page: int = 1,
        per_page: int = 10,
        status=None,
        resource_type: Optional[str] = None,
        sort: str = "created_at_desc",
    ) -> PaginatedExportListResponse:
        if page < 1:
            raise ExportValidationError("page must be >= 1")
        if not 1 <= per_page <= MAX_PER_PAGE:
            raise ExportValidationError(f"per_page must be between 1 and {MAX_PER_PAGE}")
        if sort not in SORT_OPTIONS:
            raise ExportValidationError(
                f"Unsupported sort '{sort}'. Supported: {', '.join(SORT_OPTIONS)}"
            )
        if status is not None and not isinstance(status, ExportStatus):
            try:
                status = ExportStatus(str(status).lower())
            except ValueError:
                raise ExportValidationError(f"Unknown export status: {status}")

        jobs, total = self.repo.list_for_user(
            user_id,
            page=page,
            per_page=per_page,
            status=status,
            resource_type=resource_type,
            sort=sort,
        )
        return PaginatedExportListResponse.build(
            [ExportListItem.from_job(job) for job in jobs], total, page, per_page
        )

    def get_export_download_url(
        self, export_id, user_id: int, expires_in_minutes: Optional[int] = None
    ) -> DownloadUrlResponse:
        """
        Time-limited download URL for a completed, unexpired export.

        Raises:
            ExportNotDownloadableError: not completed, expired, or artifact missing
        """
        if expires_in_minutes is None:
            minutes = self.settings.export_signed_url_default_minutes
        else:
            minutes = expires_in_minutes
        if not 1 <= minutes <= MAX_DOWNLOAD_URL_MINUTES:
            raise ExportValidationError(
                f"expires_in_minutes must be between 1 and {MAX_DOWNLOAD_URL_MINUTES}"
            )

        job = self._get_owned_job(export_id, user_id)
        now = self.clock.now()
        if job.status != ExportStatus.COMPLETED:
            raise ExportNotDownloadableError(
                f"Export '{job.export_id}' is {job.status.value} and has no file to download."
            )
        if not job.can_be_downloaded(now):
            raise ExportNotDownloadableError(f"Export '{job.export_id}' has expired.")
        if self.file_store is None or not self.file_store.exists(job.file_path):
            raise ExportNotDownloadableError(
                f"The file for export '{job.export_id}' is no longer available."
            )

        url = self.file_store.signed_url(job.file_path, minutes * 60, now=now)
        logger.info("Generated export download URL", export_id=job.export_id, user_id=user_id, minutes=minutes)
        return DownloadUrlResponse(
            export_id=job.export_id,
            download_url=url,
            file_name=PurePosixPath(job.file_path).name,
            file_size=job.file_size,
            mime_type=job.format.mime_type,
            url_expires_at=now + timedelta(minutes=minutes),
        )
