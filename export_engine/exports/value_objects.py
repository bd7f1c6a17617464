"""
Immutable value objects for the export domain.

ExportId, ExportStatus, ExportFormat and ExportProgress validate themselves on
construction so an invalid value can never reach the job record.
"""

import math
import uuid
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import FrozenSet, Optional

from export_engine.exports.exceptions import ExportValidationError


@dataclass(frozen=True)
class ExportId:
    """Opaque export identifier (UUID4 string)."""

    value: str

    def __post_init__(self):
        try:
            parsed = uuid.UUID(str(self.value))
        except (ValueError, AttributeError, TypeError):
            raise ExportValidationError(f"Invalid export id: {self.value!r}")
        # Normalize to canonical lowercase form
        object.__setattr__(self, "value", str(parsed))

    @classmethod
    def generate(cls) -> "ExportId":
        return cls(str(uuid.uuid4()))

    @classmethod
    def from_string(cls, value: "str | ExportId") -> "ExportId":
        if isinstance(value, ExportId):
            return value
        return cls(value)

    def __str__(self) -> str:
        return self.value


class ExportStatus(str, PyEnum):
    """Export job status enumeration"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def terminal(cls) -> FrozenSet["ExportStatus"]:
        return frozenset({cls.COMPLETED, cls.FAILED, cls.CANCELLED})

    @classmethod
    def active(cls) -> FrozenSet["ExportStatus"]:
        return frozenset({cls.PENDING, cls.PROCESSING})

    @property
    def is_terminal(self) -> bool:
        return self in ExportStatus.terminal()

    @property
    def is_active(self) -> bool:
        return self in ExportStatus.active()

    def can_transition_to(self, target: "ExportStatus") -> bool:
        return target in _TRANSITIONS[self]

    @property
    def label(self) -> str:
        return self.value.capitalize()


_TRANSITIONS = {
    ExportStatus.PENDING: frozenset({ExportStatus.PROCESSING, ExportStatus.CANCELLED}),
    ExportStatus.PROCESSING: frozenset(
        {ExportStatus.COMPLETED, ExportStatus.FAILED, ExportStatus.CANCELLED}
    ),
    ExportStatus.FAILED: frozenset({ExportStatus.PENDING}),
    ExportStatus.COMPLETED: frozenset(),
    ExportStatus.CANCELLED: frozenset(),
}


class ExportFormat(str, PyEnum):
    """Export file format enumeration"""
    CSV = "csv"
    EXCEL = "excel"

    @classmethod
    def parse(cls, value: "str | ExportFormat") -> "ExportFormat":
        """Parse a user-supplied format, raising ExportValidationError if unsupported."""
        if isinstance(value, ExportFormat):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            supported = ", ".join(f.value for f in cls)
            raise ExportValidationError(
                f"Unsupported export format '{value}'. Supported formats: {supported}"
            )

    @property
    def extension(self) -> str:
        return "xlsx" if self is ExportFormat.EXCEL else "csv"

    @property
    def mime_type(self) -> str:
        if self is ExportFormat.EXCEL:
            return "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        return "text/csv"

    @property
    def label(self) -> str:
        return "Excel" if self is ExportFormat.EXCEL else "CSV"

    @property
    def max_file_size_mb(self) -> int:
        return 100 if self is ExportFormat.EXCEL else 50


@dataclass(frozen=True)
class ExportProgress:
    """
    Snapshot of an export's progress.

    Invariants:
    - percentage is within [0, 100]
    - processed_records and total_records are non-negative
    - processed_records <= total_records, unless total_records is 0 (unknown)
    """

    percentage: int
    message: str
    processed_records: int = 0
    total_records: int = 0

    def __post_init__(self):
        if not 0 <= self.percentage <= 100:
            raise ExportValidationError("Percentage must be between 0 and 100")
        if self.processed_records < 0:
            raise ExportValidationError("Processed records cannot be negative")
        if self.total_records < 0:
            raise ExportValidationError("Total records cannot be negative")
        if self.total_records > 0 and self.processed_records > self.total_records:
            raise ExportValidationError("Processed records cannot exceed total records")

    @classmethod
    def start(cls, message: str = "Starting export...", total_records: int = 0) -> "ExportProgress":
        return cls(0, message, 0, total_records)

    @classmethod
    def from_records(
        cls, processed_records: int, total_records: int, message: Optional[str] = None
    ) -> "ExportProgress":
        """Percentage is floor(processed / total * 100), capped at 100."""
        if total_records > 0:
            percentage = min(100, math.floor(processed_records * 100 / total_records))
        else:
            percentage = 0
        if message is None:
            message = f"Processing {processed_records} of {total_records} records"
        return cls(percentage, message, processed_records, total_records)

    @classmethod
    def completed(
        cls,
        message: str = "Export completed successfully",
        processed_records: int = 0,
        total_records: int = 0,
    ) -> "ExportProgress":
        return cls(100, message, processed_records, total_records)

    @property
    def is_started(self) -> bool:
        return self.percentage > 0

    @property
    def is_completed(self) -> bool:
        return self.percentage == 100

    @property
    def remaining_records(self) -> int:
        return max(0, self.total_records - self.processed_records)
