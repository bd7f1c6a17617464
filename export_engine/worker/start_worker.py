"""
Celery worker startup script

Starts a worker consuming the export queue and the default queue.
"""

# Local imports
from export_engine.core.config import settings
from export_engine.utils.logger import configure_logging, get_logger
from export_engine.worker.app import app

logger = get_logger(__name__)


def start_worker():
    """Start the celery worker."""
    configure_logging(settings.log_level)

    argv = [
        "worker",
        "--loglevel=info",
        "--concurrency=4",
        "--queues=exports,celery",
        "--max-tasks-per-child=100",
        f"--time-limit={settings.export_worker_timeout_seconds + settings.export_watchdog_grace_seconds}",
        f"--soft-time-limit={settings.export_worker_timeout_seconds}",
        "--prefetch-multiplier=1",
    ]

    logger.info(
        "Starting Celery worker",
        redis_host=settings.redis_host,
        redis_port=settings.redis_port,
        queues="exports,celery",
    )

    app.worker_main(argv)


if __name__ == "__main__":
    start_worker()
