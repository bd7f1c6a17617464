"""
Record sources for export resources.

A record source knows how to count and page through the rows of one
resource type, scoped to an organization. Rows are dicts keyed by the
source's fieldnames and always carry an increasing integer ``id`` so the
worker can page by keyset.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from export_engine.exports.exceptions import ExportValidationError


class RecordSource(Protocol):
    fieldnames: Sequence[str]
    labels: Dict[str, str]

    def count(self, filters: Dict[str, Any]) -> int:
        ...

    def fetch_batch(self, filters: Dict[str, Any], after_id: Optional[int], limit: int) -> List[Dict[str, Any]]:
        ...


SUPPORTED_RESOURCE_TYPES = frozenset({"donations"})


def get_record_source(resource_type: str, db: Session, organization_id: int) -> RecordSource:
    """Build the record source for ``resource_type`` scoped to ``organization_id``."""
    if resource_type == "donations":
        from export_engine.exports.builders.donation_builder import DonationRecordSource

        return DonationRecordSource(db, organization_id)

    raise ExportValidationError(f"Unsupported export resource type: {resource_type}")
