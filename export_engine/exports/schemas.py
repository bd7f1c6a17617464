"""
Pydantic schemas for export commands and queries.
"""

from datetime import date, datetime
from decimal import Decimal
from math import ceil
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from export_engine.donations.models import DonationStatus
from export_engine.exports.models import ExportJob
from export_engine.exports.value_objects import ExportFormat, ExportStatus


class ExportFilters(BaseModel):
    """Additional donation filters. Unknown keys are rejected."""

    status: Optional[DonationStatus] = Field(None, description="Donation payment status")

    min_amount: Optional[Decimal] = Field(None, ge=0, description="Inclusive minimum amount")

    max_amount: Optional[Decimal] = Field(None, ge=0, description="Inclusive maximum amount")

    class Config:
        extra = "forbid"

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def validate_amount_range(self):
        if self.min_amount is not None and self.max_amount is not None and self.min_amount > self.max_amount:
            raise ValueError("min_amount must be less than or equal to max_amount")
        return self


class ExportRequest(BaseModel):
    """Validated input of RequestExport"""

    user_id: int = Field(..., gt=0, description="User requesting the export")

    organization_id: int = Field(..., gt=0, description="Organization whose data is exported")

    resource_type: str = Field("donations", description="Resource to export")

    format: ExportFormat = Field(..., description="Export format (csv, excel)")

    filters: ExportFilters = Field(
        default_factory=ExportFilters,
        description="Additional filter parameters (status, min_amount, max_amount)"
    )

    date_range_from: Optional[date] = Field(None, description="Inclusive start date")

    date_range_to: Optional[date] = Field(None, description="Inclusive end date")

    resource_ids: Optional[List[int]] = Field(
        None, description="Restrict the export to these campaign ids"
    )

    include_anonymous: bool = Field(True, description="Include anonymous donations")

    include_recurring: bool = Field(True, description="Include recurring donations")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": 42,
                "organization_id": 7,
                "resource_type": "donations",
                "format": "csv",
                "filters": {"status": "completed"},
                "date_range_from": "2024-01-01",
                "date_range_to": "2024-01-31",
                "resource_ids": [12, 15],
                "include_anonymous": True,
                "include_recurring": False,
            }
        }

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
        supported = [f.value for f in ExportFormat]
        if isinstance(value, str) and value not in supported:
            raise ValueError(
                f"Unsupported export format '{value}'. Supported formats: {', '.join(supported)}"
            )
        return value

    @field_validator("resource_ids")
    @classmethod
    def validate_resource_ids(cls, value):
        if value is None:
            return value
        if any(resource_id <= 0 for resource_id in value):
            raise ValueError("Resource ids must be positive integers")
        return sorted(set(value))

    @model_validator(mode="after")
    def validate_date_range(self):
        if self.date_range_from and self.date_range_to and self.date_range_from > self.date_range_to:
            raise ValueError("date_range_from must be on or before date_range_to")
        return self

    def normalized_filters(self) -> Dict[str, Any]:
        """
        Filters as stored on the job. Every value is JSON-serializable.
        """
        normalized = self.filters.model_dump(mode="json", exclude_none=True)
        normalized.update(
            date_from=self.date_range_from.isoformat() if self.date_range_from else None,
            date_to=self.date_range_to.isoformat() if self.date_range_to else None,
            campaign_ids=self.resource_ids or [],
            include_anonymous=self.include_anonymous,
            include_recurring=self.include_recurring,
        )
        return normalized


class ExportProgressSchema(BaseModel):
    percentage: int = Field(..., ge=0, le=100)
    message: str
    processed_records: int = Field(0, ge=0)
    total_records: int = Field(0, ge=0)


class ExportStatusResponse(BaseModel):
    """Response schema for export status check"""

    export_id: str = Field(..., description="Export job ID")

    user_id: int

    organization_id: int

    resource_type: str

    format: ExportFormat

    status: ExportStatus

    progress: ExportProgressSchema

    filters: Dict[str, Any] = Field(default_factory=dict)

    file_path: Optional[str] = Field(None, description="Artifact path (completed only)")

    file_size: Optional[int] = None

    file_size_formatted: str = "N/A"

    error_message: Optional[str] = Field(None, description="Error details (failed only)")

    created_at: datetime

    started_at: Optional[datetime] = None

    completed_at: Optional[datetime] = None

    expires_at: Optional[datetime] = None

    can_be_downloaded: bool = False

    is_expired: bool = False

    expires_in_hours: Optional[int] = None

    estimated_time_remaining: Optional[str] = None

    @classmethod
    def from_job(cls, job: ExportJob, now: datetime) -> "ExportStatusResponse":
        progress = job.progress
        return cls(
            export_id=job.export_id,
            user_id=job.user_id,
            organization_id=job.organization_id,
            resource_type=job.resource_type,
            format=job.format,
            status=job.status,
            progress=ExportProgressSchema(
                percentage=progress.percentage,
                message=progress.message,
                processed_records=progress.processed_records,
                total_records=progress.total_records,
            ),
            filters=job.filters or {},
            file_path=job.file_path,
            file_size=job.file_size,
            file_size_formatted=job.file_size_formatted,
            error_message=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            expires_at=job.expires_at,
            can_be_downloaded=job.can_be_downloaded(now),
            is_expired=job.is_expired(now),
            expires_in_hours=job.expires_in_hours(now),
            estimated_time_remaining=job.estimated_time_remaining(now),
        )


class ExportListItem(BaseModel):
    """Schema for a single export in list view"""

    export_id: str
    resource_type: str
    format: ExportFormat
    status: ExportStatus
    percentage: int
    total_records: int
    file_size: Optional[int]
    error_message: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]
    expires_at: Optional[datetime]

    class Config:
        from_attributes = True

    @classmethod
    def from_job(cls, job: ExportJob) -> "ExportListItem":
        return cls(
            export_id=job.export_id,
            resource_type=job.resource_type,
            format=job.format,
            status=job.status,
            percentage=job.current_percentage or 0,
            total_records=job.total_records or 0,
            file_size=job.file_size,
            error_message=job.error_message,
            created_at=job.created_at,
            completed_at=job.completed_at,
            expires_at=job.expires_at,
        )


class PaginatedExportListResponse(BaseModel):
    """Response schema for paginated export list"""

    items: List[ExportListItem] = Field(..., description="List of exports")

    total_items: int = Field(..., description="Total number of exports")

    page: int = Field(..., description="Current page number")

    per_page: int = Field(..., description="Items per page")

    total_pages: int = Field(..., description="Total number of pages")

    @classmethod
    def build(cls, items: List[ExportListItem], total_items: int, page: int, per_page: int):
        return cls(
            items=items,
            total_items=total_items,
            page=page,
            per_page=per_page,
            total_pages=ceil(total_items / per_page) if per_page else 0,
        )


class CleanupResult(BaseModel):
    """Outcome of one cleanup sweep"""

    scanned: int = 0
    deleted: int = 0
    failed: int = 0
    passes: int = 0
    temp_files_removed: int = 0
    dry_run: bool = False
    candidates: List[str] = Field(
        default_factory=list,
        description="Export ids that were (or in a dry run would be) deleted"
    )


class DownloadUrlResponse(BaseModel):
    export_id: str
    download_url: str
    file_name: str
    file_size: Optional[int]
    mime_type: str
    url_expires_at: datetime
