"""
Database model for tracking async export jobs.

Stores export job metadata, status, progress, and artifact location.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from export_engine.core.db import Base
from export_engine.exports.value_objects import (
    ExportFormat,
    ExportId,
    ExportProgress,
    ExportStatus,
)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ExportJob(Base):
    """
    Model for tracking async export jobs.

    Every mutation after creation goes through a status-guarded update in
    ExportJobRepository; instances loaded from the session are read models.
    """
    __tablename__ = "export_jobs"

    # Primary Key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    export_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        unique=True,
        index=True,
        comment="Public opaque export identifier (UUID)"
    )

    # Ownership
    user_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        index=True,
        comment="User who requested the export"
    )

    organization_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        index=True,
        comment="Organization the exported data belongs to"
    )

    # Export Configuration
    resource_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="Resource being exported (donations, ...)"
    )

    format: Mapped[ExportFormat] = mapped_column(
        Enum(ExportFormat, values_callable=_enum_values, name="exportformat"),
        nullable=False,
        comment="Export file format (csv, excel)"
    )

    # Job Status
    status: Mapped[ExportStatus] = mapped_column(
        Enum(ExportStatus, values_callable=_enum_values, name="exportstatus"),
        nullable=False,
        default=ExportStatus.PENDING,
        index=True,
        comment="Current status of export job"
    )

    claim_token: Mapped[Optional[str]] = mapped_column(
        String(36),
        nullable=True,
        comment="Fencing token of the worker run that holds the processing claim"
    )

    # Progress
    current_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Filter Parameters (stored as JSON)
    filters: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
        comment="Normalized filter parameters applied to the export"
    )

    # Results
    file_path: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Storage path of generated export file (set only when completed)"
    )

    file_size: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Artifact size in bytes (set only when completed)"
    )

    # Error Handling
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Sanitized, user-facing error (set only when failed)"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    @property
    def export_id_value(self) -> ExportId:
        return ExportId(self.export_id)

    @property
    def progress(self) -> ExportProgress:
        total = self.total_records or 0
        processed = self.processed_records or 0
        if total and processed > total:
            total = processed
        return ExportProgress(
            percentage=self.current_percentage or 0,
            message=self.progress_message or "Export in progress...",
            processed_records=processed,
            total_records=total,
        )

    def is_owned_by(self, user_id: int) -> bool:
        return self.user_id == user_id

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def can_be_downloaded(self, now: datetime) -> bool:
        return (
            self.status == ExportStatus.COMPLETED
            and self.file_path is not None
            and not self.is_expired(now)
        )

    def expires_in_hours(self, now: datetime) -> Optional[int]:
        if self.expires_at is None:
            return None
        remaining = (self.expires_at - now).total_seconds() / 3600
        return int(remaining) if remaining > 0 else 0

    @property
    def file_size_formatted(self) -> str:
        if self.file_size is None:
            return "N/A"

        size = float(self.file_size)
        units = ["B", "KB", "MB", "GB"]
        unit_index = 0
        while size >= 1024 and unit_index < len(units) - 1:
            size /= 1024
            unit_index += 1
        return f"{round(size, 2)} {units[unit_index]}"

    def estimated_time_remaining(self, now: datetime) -> Optional[str]:
        """Linear extrapolation from elapsed time and current percentage."""
        if self.status != ExportStatus.PROCESSING or self.started_at is None:
            return None
        if not self.current_percentage:
            return None

        elapsed_minutes = (now - self.started_at).total_seconds() / 60
        estimated_total = elapsed_minutes / self.current_percentage * 100
        remaining = estimated_total - elapsed_minutes

        if remaining <= 0:
            return "Almost done"
        if remaining < 60:
            return f"{round(remaining)} minutes"
        return f"{round(remaining / 60, 1)} hours"

    def __repr__(self):
        return (
            f"<ExportJob(export_id={self.export_id}, resource={self.resource_type}, "
            f"format={self.format}, status={self.status})>"
        )
