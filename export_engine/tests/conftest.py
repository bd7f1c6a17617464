# export_engine/tests/conftest.py

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import export_engine.donations.models  # noqa: F401  (register table)
from export_engine.core.config import Settings
from export_engine.core.db import Base
from export_engine.exports.exceptions import TransientIOError
from export_engine.exports.models import ExportJob
from export_engine.exports.services import ExportService
from export_engine.exports.storage import LocalFileStore
from export_engine.exports.value_objects import ExportFormat, ExportId, ExportStatus
from export_engine.exports.worker import ExportWorker, StuckExportReclaimer

START = datetime(2026, 1, 15, 12, 0, 0)


class FixedClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, now: datetime = START):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)

    def names(self, export_id: Optional[str] = None) -> List[str]:
        return [e.name for e in self.events if export_id is None or e.export_id == export_id]

    def of_type(self, name: str):
        return [e for e in self.events if e.name == name]


class RecordingDispatcher:
    def __init__(self):
        self.enqueued: List[str] = []

    def enqueue(self, export_id: str) -> None:
        self.enqueued.append(str(export_id))


class InMemoryRecordSource:
    """
    Record source over generated rows.

    ``fail_times`` makes the next N fetches raise ``fail_with``; ``on_fetch``
    is called with the 1-based fetch number after each successful fetch.
    """

    fieldnames = ["id", "donor_name", "amount"]
    labels = {"id": "ID", "donor_name": "Donor Name", "amount": "Amount"}

    def __init__(self, rows: int = 0, fail_times: int = 0, fail_with: Callable = TransientIOError,
                 on_fetch: Optional[Callable[[int], None]] = None):
        self.rows = [
            {"id": i, "donor_name": f"Donor {i}", "amount": Decimal("10.50")}
            for i in range(1, rows + 1)
        ]
        self.fail_times = fail_times
        self.fail_with = fail_with
        self.on_fetch = on_fetch
        self.count_calls = 0
        self.fetch_calls = 0

    def count(self, filters) -> int:
        self.count_calls += 1
        return len(self.rows)

    def fetch_batch(self, filters, after_id, limit):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.fail_with("connection reset by peer at 10.0.0.5:3306")
        self.fetch_calls += 1
        start = 0 if after_id is None else after_id
        batch = [row for row in self.rows if row["id"] > start][:limit]
        if self.on_fetch:
            self.on_fetch(self.fetch_calls)
        return batch


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_engine(f"sqlite:///{tmp_path / 'exports.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    sessions = []

    def factory():
        session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()


@pytest.fixture
def db(session_factory):
    return session_factory()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        export_storage_dir=str(tmp_path / "work"),
        export_batch_size=500,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def file_store(tmp_path):
    return LocalFileStore(
        root_dir=str(tmp_path / "store"),
        base_url="http://test/download",
        secret="test-secret",
    )


@pytest.fixture
def service(db, dispatcher, publisher, file_store, clock, test_settings):
    return ExportService(
        db,
        dispatcher=dispatcher,
        publisher=publisher,
        file_store=file_store,
        clock=clock,
        settings=test_settings,
    )


@pytest.fixture
def sleeps():
    """Records retry backoff delays instead of sleeping."""
    recorded = []
    with patch("time.sleep", side_effect=recorded.append):
        yield recorded


@pytest.fixture
def make_worker(session_factory, file_store, publisher, clock, test_settings, sleeps):
    """Builds a worker with its own session, reading from ``source``."""

    def factory(source, settings=None):
        return ExportWorker(
            session_factory(),
            file_store=file_store,
            publisher=publisher,
            clock=clock,
            settings=settings or test_settings,
            record_source_factory=lambda resource_type, db, organization_id: source,
        )

    return factory


@pytest.fixture
def reclaimer(session_factory, dispatcher, publisher, clock, test_settings):
    return StuckExportReclaimer(
        session_factory(),
        dispatcher=dispatcher,
        publisher=publisher,
        clock=clock,
        settings=test_settings,
    )


@pytest.fixture
def make_job(db, clock):
    """Inserts an export job in any state directly."""

    def factory(status=ExportStatus.COMPLETED, user_id=1, organization_id=1,
                created_at=None, started_at=None, completed_at=None, expires_at=None,
                file_path=None, file_size=None, error_message=None, export_format=ExportFormat.CSV):
        job = ExportJob(
            export_id=str(ExportId.generate()),
            user_id=user_id,
            organization_id=organization_id,
            resource_type="donations",
            format=export_format,
            status=status,
            current_percentage=100 if status == ExportStatus.COMPLETED else 0,
            processed_records=0,
            total_records=0,
            filters={},
            file_path=file_path,
            file_size=file_size,
            error_message=error_message,
            created_at=created_at or clock.now(),
            started_at=started_at,
            completed_at=completed_at,
            expires_at=expires_at,
        )
        db.add(job)
        db.commit()
        return job

    return factory


def request_csv(service, user_id=1, organization_id=1, **kwargs) -> str:
    return str(service.request_export(user_id=user_id, organization_id=organization_id, format="csv", **kwargs))
