"""
Main Celery Application Configuration

Sets up the Celery application with Redis as broker and result backend and
discovers the export tasks.
"""

# Third party imports
from celery import Celery
from celery.signals import setup_logging

# Import all models to ensure they're registered with SQLAlchemy
# This must happen before any database operations in tasks
import export_engine.donations.models
import export_engine.exports.models
from export_engine.core.config import settings
from export_engine.utils.logger import configure_logging

# Create Celery Instance
app = Celery("export_engine")

# Configure celery from separate config file
app.config_from_object("export_engine.worker.config")

# Auto discover tasks from different modules
# This will look for tasks.py files in specified modules/packages
app.autodiscover_tasks(["export_engine.exports"])


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging(settings.log_level)


if __name__ == "__main__":
    app.start()
