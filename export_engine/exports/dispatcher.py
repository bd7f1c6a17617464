"""
Producer side of the export task queue.

Command handlers only ever enqueue an export id; the Celery worker consumes it.
"""

from typing import Protocol

from export_engine.utils.logger import get_logger

logger = get_logger(__name__)

EXPORT_QUEUE = "exports"


class ExportDispatcher(Protocol):
    def enqueue(self, export_id: str) -> None:
        ...


class CeleryExportDispatcher:
    """Enqueues exports.process_export on the exports queue."""

    def __init__(self, queue: str = EXPORT_QUEUE):
        self.queue = queue

    def enqueue(self, export_id: str) -> None:
        from export_engine.exports.tasks import process_export_task

        result = process_export_task.apply_async(args=[str(export_id)], queue=self.queue)
        logger.info("Export job enqueued", export_id=str(export_id), task_id=result.id, queue=self.queue)
