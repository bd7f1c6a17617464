"""
Wiring of export collaborators from settings.
"""

from typing import Optional

from sqlalchemy.orm import Session

from export_engine.core.config import Settings, settings as default_settings
from export_engine.exports.clock import SystemClock
from export_engine.exports.dispatcher import CeleryExportDispatcher
from export_engine.exports.events import EventPublisher, LoggingEventPublisher, RedisEventPublisher
from export_engine.exports.services import ExportService
from export_engine.exports.storage import FileStore, LocalFileStore, S3FileStore
from export_engine.exports.worker import ExportWorker, StuckExportReclaimer


def build_file_store(settings: Optional[Settings] = None) -> FileStore:
    settings = settings or default_settings
    if settings.export_storage_backend == "s3":
        from export_engine.utils.s3_utils import S3Utils

        return S3FileStore(S3Utils(bucket_name=settings.s3_bucket_name))
    if settings.export_storage_backend != "local":
        raise ValueError(f"Unknown export storage backend: {settings.export_storage_backend}")
    return LocalFileStore(
        root_dir=settings.export_storage_dir,
        base_url=settings.export_download_base_url,
        secret=settings.export_signed_url_secret,
    )


def build_event_publisher(settings: Optional[Settings] = None) -> EventPublisher:
    settings = settings or default_settings
    if settings.export_event_backend == "redis":
        return RedisEventPublisher.from_url(settings.event_bus_url, settings.export_event_channel)
    return LoggingEventPublisher()


def get_export_service(db: Session, settings: Optional[Settings] = None) -> ExportService:
    settings = settings or default_settings
    return ExportService(
        db,
        dispatcher=CeleryExportDispatcher(),
        publisher=build_event_publisher(settings),
        file_store=build_file_store(settings),
        clock=SystemClock(),
        settings=settings,
    )


def get_export_worker(db: Session, settings: Optional[Settings] = None) -> ExportWorker:
    settings = settings or default_settings
    return ExportWorker(
        db,
        file_store=build_file_store(settings),
        publisher=build_event_publisher(settings),
        clock=SystemClock(),
        settings=settings,
    )


def get_stuck_export_reclaimer(db: Session, settings: Optional[Settings] = None) -> StuckExportReclaimer:
    settings = settings or default_settings
    return StuckExportReclaimer(
        db,
        dispatcher=CeleryExportDispatcher(),
        publisher=build_event_publisher(settings),
        clock=SystemClock(),
        settings=settings,
    )
