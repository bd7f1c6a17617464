"""
Celery configuration settings

This file contains all the Celery configurations including:
- Broker and result backend settings
- Task serialization settings
- Timezone configuration
- Beat schedule for periodic tasks
"""

# Third party imports
from celery.schedules import crontab

# Local imports
from export_engine.core.config import settings

# Broker and result backend configurations
broker_url = settings.celery_broker
result_backend = settings.celery_backend

# Task serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"
timezone = "UTC"
enable_utc = True

# Task settings
task_track_started = True
task_soft_time_limit = settings.export_worker_timeout_seconds
task_time_limit = settings.export_worker_timeout_seconds + settings.export_watchdog_grace_seconds
worker_prefetch_multiplier = 1
task_acks_late = True
worker_disable_rate_limits = False

task_routes = {
    "exports.process_export": {"queue": "exports"},
}

# Redis connection settings
broker_connection_retry_on_startup = True
broker_connection_retry = True
broker_connection_max_retries = 10

redis_max_connections = 50
redis_socket_timeout = 10
redis_socket_connect_timeout = 10
redis_retry_on_timeout = True
redis_health_check_interval = 30

broker_transport_options = {
    "max_connections": 20,
    "socket_timeout": 10,
    "socket_connect_timeout": 10,
    "socket_keepalive": True,
    "retry_on_timeout": True,
    "health_check_interval": 30,
}


# Beat schedule configuration
beat_schedule = {
    # --- Expired export cleanup (Daily) ---
    "cleanup-expired-exports": {
        "task": "exports.cleanup_expired_exports",
        "schedule": crontab(hour=3, minute=0),  # Runs daily at 3:00 AM UTC
        "kwargs": {"batch_size": settings.export_cleanup_batch_size},
    },

    # --- Stuck export watchdog ---
    "reclaim-stuck-exports": {
        "task": "exports.reclaim_stuck_exports",
        "schedule": float(settings.export_watchdog_interval_seconds),
    },
}

# Worker configuration
worker_hijack_root_logger = False
worker_log_color = False
