"""
Donation Export Query Builder

Filters are the normalized request filters stored on the export job.
The organization scope is applied unconditionally.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from export_engine.donations.models import Donation
from export_engine.exports.exceptions import TransientIOError
from export_engine.utils.logger import get_logger

logger = get_logger(__name__)


DONATION_COLUMNS = [
    ("id", "ID"),
    ("campaign_id", "Campaign ID"),
    ("campaign_title", "Campaign"),
    ("user_id", "Donor ID"),
    ("donor_name", "Donor Name"),
    ("donor_email", "Donor Email"),
    ("amount", "Amount"),
    ("currency", "Currency"),
    ("payment_method", "Payment Method"),
    ("payment_gateway", "Payment Gateway"),
    ("transaction_id", "Transaction ID"),
    ("status", "Status"),
    ("anonymous", "Anonymous"),
    ("recurring", "Recurring"),
    ("recurring_frequency", "Recurring Frequency"),
    ("donated_at", "Donated At"),
    ("processed_at", "Processed At"),
    ("completed_at", "Completed At"),
    ("corporate_match_amount", "Corporate Match"),
    ("notes", "Notes"),
    ("created_at", "Created At"),
]


def _parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def build_donation_conditions(organization_id: int, filters: Dict[str, Any]) -> list:
    """
    Build the WHERE conditions for a donation export.

    Args:
        organization_id: Organization whose donations are exported
        filters: Normalized filter parameters

    Returns:
        List of SQLAlchemy boolean clauses
    """
    conditions = [Donation.organization_id == organization_id]

    date_from = _parse_date(filters.get("date_from"))
    if date_from:
        conditions.append(Donation.donated_at >= datetime.combine(date_from, datetime.min.time()))

    date_to = _parse_date(filters.get("date_to"))
    if date_to:
        # Inclusive end date
        conditions.append(
            Donation.donated_at < datetime.combine(date_to + timedelta(days=1), datetime.min.time())
        )

    campaign_ids = filters.get("campaign_ids")
    if campaign_ids:
        conditions.append(Donation.campaign_id.in_(campaign_ids))

    if not filters.get("include_anonymous", True):
        conditions.append(Donation.is_anonymous.is_(False))

    if not filters.get("include_recurring", True):
        conditions.append(Donation.is_recurring.is_(False))

    status = filters.get("status")
    if status:
        conditions.append(Donation.status == status)

    min_amount = filters.get("min_amount")
    if min_amount is not None:
        conditions.append(Donation.amount >= Decimal(str(min_amount)))

    max_amount = filters.get("max_amount")
    if max_amount is not None:
        conditions.append(Donation.amount <= Decimal(str(max_amount)))

    return conditions


def build_donation_export_query(organization_id: int, filters: Dict[str, Any],
                                after_id: Optional[int] = None, limit: Optional[int] = None):
    """Keyset-paginated select of donations, ordered by id."""
    stmt = select(Donation).where(*build_donation_conditions(organization_id, filters))
    if after_id is not None:
        stmt = stmt.where(Donation.id > after_id)
    stmt = stmt.order_by(Donation.id.asc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


def transform_donation_row(donation: Donation) -> Dict[str, Any]:
    """Transform Donation ORM object to dictionary for export."""
    if donation.donor_name:
        donor_name = donation.donor_name
    elif donation.is_anonymous:
        donor_name = "Anonymous"
    else:
        donor_name = "N/A"

    return {
        "id": donation.id,
        "campaign_id": donation.campaign_id,
        "campaign_title": donation.campaign_title or "N/A",
        "user_id": donation.user_id,
        "donor_name": donor_name,
        "donor_email": donation.donor_email or "N/A",
        "amount": donation.amount,
        "currency": donation.currency,
        "payment_method": donation.payment_method or "N/A",
        "payment_gateway": donation.payment_gateway or "N/A",
        "transaction_id": donation.transaction_id or "N/A",
        "status": donation.status,
        "anonymous": bool(donation.is_anonymous),
        "recurring": bool(donation.is_recurring),
        "recurring_frequency": donation.recurring_frequency or "N/A",
        "donated_at": donation.donated_at,
        "processed_at": donation.processed_at,
        "completed_at": donation.completed_at,
        "corporate_match_amount": donation.corporate_match_amount or Decimal("0"),
        "notes": donation.notes or "",
        "created_at": donation.created_at,
    }


class DonationRecordSource:
    """Counts and pages donations for one organization."""

    fieldnames = [name for name, _ in DONATION_COLUMNS]
    labels = dict(DONATION_COLUMNS)

    def __init__(self, db: Session, organization_id: int):
        self.db = db
        self.organization_id = organization_id

    def count(self, filters: Dict[str, Any]) -> int:
        stmt = select(func.count()).select_from(Donation).where(
            *build_donation_conditions(self.organization_id, filters)
        )
        try:
            return self.db.execute(stmt).scalar_one()
        except OperationalError as e:
            self.db.rollback()
            raise TransientIOError(f"Counting donations failed: {e}") from e

    def fetch_batch(self, filters: Dict[str, Any], after_id: Optional[int], limit: int) -> List[Dict[str, Any]]:
        stmt = build_donation_export_query(self.organization_id, filters, after_id, limit)
        try:
            donations = self.db.execute(stmt).scalars().all()
        except OperationalError as e:
            self.db.rollback()
            raise TransientIOError(f"Fetching donations failed: {e}") from e
        return [transform_donation_row(d) for d in donations]
