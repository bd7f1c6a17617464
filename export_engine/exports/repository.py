# export_engine/exports/repository.py

import uuid
from datetime import datetime
from typing import Collection, Iterable, List, Optional, Tuple

from sqlalchemy import asc, delete, desc, func, select, update
from sqlalchemy.orm import Session

from export_engine.exports.models import ExportJob
from export_engine.exports.value_objects import ExportId, ExportProgress, ExportStatus
from export_engine.utils.logger import get_logger

logger = get_logger(__name__)


SORT_OPTIONS = {
    "created_at_desc": (desc(ExportJob.created_at), desc(ExportJob.id)),
    "created_at_asc": (asc(ExportJob.created_at), asc(ExportJob.id)),
    "completed_at_desc": (desc(ExportJob.completed_at), desc(ExportJob.id)),
    "status": (asc(ExportJob.status), desc(ExportJob.created_at)),
}


class ExportJobRepository:
    """
    Data Access Layer for Export Jobs.

    Every state change is a single conditional UPDATE ... WHERE status IN (...)
    so concurrent writers can never clobber each other; the boolean result says
    whether this caller's write won. The caller is responsible for committing.
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_export_id(self, export_id: "ExportId | str") -> Optional[ExportJob]:
        """
        Fetches a single export job by its public export_id, always reloading
        column values from the database. Returns None if not found.
        """
        stmt = (
            select(ExportJob)
            .where(ExportJob.export_id == str(export_id))
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_status(self, export_id: "ExportId | str") -> Optional[ExportStatus]:
        """Reads only the persisted status column."""
        stmt = select(ExportJob.status).where(ExportJob.export_id == str(export_id))
        return self.db.execute(stmt).scalar_one_or_none()

    def get_claim(self, export_id: "ExportId | str") -> Tuple[Optional[ExportStatus], Optional[str]]:
        """Reads the persisted status and claim token (worker checkpoints)."""
        stmt = select(ExportJob.status, ExportJob.claim_token).where(ExportJob.export_id == str(export_id))
        row = self.db.execute(stmt).one_or_none()
        if row is None:
            return None, None
        return row.status, row.claim_token

    def list_for_user(
        self,
        user_id: int,
        page: int = 1,
        per_page: int = 10,
        status: Optional[ExportStatus] = None,
        resource_type: Optional[str] = None,
        sort: str = "created_at_desc",
    ) -> Tuple[List[ExportJob], int]:
        """Returns one page of a user's exports and the total matching count."""
        conditions = [ExportJob.user_id == user_id]
        if status is not None:
            conditions.append(ExportJob.status == status)
        if resource_type:
            conditions.append(ExportJob.resource_type == resource_type)

        total = self.db.execute(
            select(func.count()).select_from(ExportJob).where(*conditions)
        ).scalar_one()

        stmt = (
            select(ExportJob)
            .where(*conditions)
            .order_by(*SORT_OPTIONS[sort])
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(self.db.execute(stmt).scalars().all()), total

    def count_active_for_user(self, user_id: int) -> int:
        stmt = select(func.count()).select_from(ExportJob).where(
            ExportJob.user_id == user_id,
            ExportJob.status.in_(list(ExportStatus.active())),
        )
        return self.db.execute(stmt).scalar_one()

    def count_active_for_organization(self, organization_id: int) -> int:
        stmt = select(func.count()).select_from(ExportJob).where(
            ExportJob.organization_id == organization_id,
            ExportJob.status.in_(list(ExportStatus.active())),
        )
        return self.db.execute(stmt).scalar_one()

    def find_expired_completed(
        self,
        now: datetime,
        limit: int,
        offset: int = 0,
        exclude_ids: Collection[str] = (),
    ) -> List[ExportJob]:
        """
        Completed jobs whose retention window has passed, oldest expiry first.
        Used by the cleanup sweep.
        """
        stmt = select(ExportJob).where(
            ExportJob.status == ExportStatus.COMPLETED,
            ExportJob.expires_at.is_not(None),
            ExportJob.expires_at < now,
        )
        if exclude_ids:
            stmt = stmt.where(ExportJob.export_id.not_in(list(exclude_ids)))
        stmt = stmt.order_by(asc(ExportJob.expires_at), asc(ExportJob.id)).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def find_terminal_created_before(
        self,
        cutoff: datetime,
        limit: int,
        offset: int = 0,
        exclude_ids: Collection[str] = (),
    ) -> List[ExportJob]:
        """
        Terminal jobs created before ``cutoff``. Used by the cleanup sweep when
        an explicit age override is given. Active jobs are never returned.
        """
        stmt = select(ExportJob).where(
            ExportJob.status.in_(list(ExportStatus.terminal())),
            ExportJob.created_at < cutoff,
        )
        if exclude_ids:
            stmt = stmt.where(ExportJob.export_id.not_in(list(exclude_ids)))
        stmt = stmt.order_by(asc(ExportJob.created_at), asc(ExportJob.id)).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def find_stuck_processing(self, started_before: datetime) -> List[str]:
        """Export ids of jobs still processing that started before the cutoff."""
        stmt = select(ExportJob.export_id).where(
            ExportJob.status == ExportStatus.PROCESSING,
            ExportJob.started_at < started_before,
        )
        return list(self.db.execute(stmt).scalars().all())

    def find_stale_pending(self, created_before: datetime, limit: int = 50) -> List[str]:
        """Export ids of jobs still pending that were created before the cutoff."""
        stmt = (
            select(ExportJob.export_id)
            .where(
                ExportJob.status == ExportStatus.PENDING,
                ExportJob.created_at < created_before,
            )
            .order_by(asc(ExportJob.created_at))
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, export_job: ExportJob) -> ExportJob:
        """
        Adds a new ExportJob record to the session.
        The caller is responsible for committing the transaction.
        """
        self.db.add(export_job)
        self.db.flush()
        logger.info(
            "Created new export job",
            export_id=export_job.export_id,
            user_id=export_job.user_id,
            resource_type=export_job.resource_type,
            format=export_job.format.value,
        )
        return export_job

    def _guarded_update(
        self,
        export_id: "ExportId | str",
        allowed_statuses: Iterable[ExportStatus],
        *extra_conditions,
        **values,
    ) -> bool:
        stmt = (
            update(ExportJob)
            .where(
                ExportJob.export_id == str(export_id),
                ExportJob.status.in_(list(allowed_statuses)),
                *extra_conditions,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    def _held_by(claim_token: Optional[str]) -> list:
        """Fencing condition: the write only lands while ``claim_token`` still holds the claim."""
        if claim_token is None:
            return []
        return [ExportJob.claim_token == claim_token]

    def claim(self, export_id: "ExportId | str", now: datetime) -> Optional[str]:
        """
        Atomically moves a job from pending to processing.

        Exactly one of any number of concurrent callers wins and gets a fresh
        claim token; every later write of that run must present it. Losers get None.
        """
        claim_token = str(uuid.uuid4())
        claimed = self._guarded_update(
            export_id,
            [ExportStatus.PENDING],
            status=ExportStatus.PROCESSING,
            claim_token=claim_token,
            started_at=now,
            current_percentage=0,
            processed_records=0,
            progress_message="Starting export processing...",
        )
        logger.debug("Claim attempt", export_id=str(export_id), claimed=claimed)
        return claim_token if claimed else None

    def set_total_records(self, export_id: "ExportId | str", total_records: int, claim_token: str) -> bool:
        return self._guarded_update(
            export_id,
            [ExportStatus.PROCESSING],
            *self._held_by(claim_token),
            total_records=total_records,
        )

    def update_progress(self, export_id: "ExportId | str", progress: ExportProgress, claim_token: str) -> bool:
        """
        Persists progress for a processing job. The percentage guard keeps the
        stored value monotonically non-decreasing.
        """
        return self._guarded_update(
            export_id,
            [ExportStatus.PROCESSING],
            ExportJob.current_percentage <= progress.percentage,
            *self._held_by(claim_token),
            current_percentage=progress.percentage,
            progress_message=progress.message[:255],
            processed_records=progress.processed_records,
            total_records=progress.total_records,
        )

    def mark_completed(
        self,
        export_id: "ExportId | str",
        file_path: str,
        file_size: int,
        progress: ExportProgress,
        completed_at: datetime,
        expires_at: datetime,
        claim_token: str,
    ) -> bool:
        return self._guarded_update(
            export_id,
            [ExportStatus.PROCESSING],
            *self._held_by(claim_token),
            status=ExportStatus.COMPLETED,
            file_path=file_path,
            file_size=file_size,
            error_message=None,
            current_percentage=100,
            progress_message=progress.message[:255],
            processed_records=progress.processed_records,
            total_records=progress.total_records,
            completed_at=completed_at,
            expires_at=expires_at,
        )

    def mark_failed(
        self,
        export_id: "ExportId | str",
        error_message: str,
        processed_records: Optional[int],
        failed_at: datetime,
        claim_token: Optional[str] = None,
    ) -> bool:
        """
        Fails a processing job. Worker runs pass their claim token; the
        watchdog passes none and fails whichever run holds the job.
        """
        values = dict(
            status=ExportStatus.FAILED,
            error_message=error_message,
            file_path=None,
            file_size=None,
            expires_at=None,
            completed_at=failed_at,
            progress_message=f"Export failed: {error_message}"[:255],
        )
        if processed_records is not None:
            values["processed_records"] = processed_records
        return self._guarded_update(
            export_id,
            [ExportStatus.PROCESSING],
            *self._held_by(claim_token),
            **values,
        )

    def mark_cancelled(self, export_id: "ExportId | str", reason: str, cancelled_at: datetime) -> bool:
        return self._guarded_update(
            export_id,
            ExportStatus.active(),
            status=ExportStatus.CANCELLED,
            completed_at=cancelled_at,
            progress_message=f"Export cancelled: {reason}"[:255],
        )

    def reset_for_retry(self, export_id: "ExportId | str") -> bool:
        return self._guarded_update(
            export_id,
            [ExportStatus.FAILED],
            status=ExportStatus.PENDING,
            error_message=None,
            claim_token=None,
            current_percentage=0,
            processed_records=0,
            progress_message="Export queued for retry",
            started_at=None,
            completed_at=None,
            expires_at=None,
            file_path=None,
            file_size=None,
        )

    def delete_terminal(self, export_id: "ExportId | str") -> bool:
        """Hard-deletes the record only while it is still in a terminal status."""
        stmt = (
            delete(ExportJob)
            .where(
                ExportJob.export_id == str(export_id),
                ExportJob.status.in_(list(ExportStatus.terminal())),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1
