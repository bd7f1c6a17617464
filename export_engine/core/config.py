# export_engine/core/config.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application Settings
    """

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", case_sensitive=False
    )

    environment: str = "local"
    log_level: str = "INFO"

    # DB values (support .env)
    database_url: Optional[str] = None
    db_host: str = "localhost"
    db_user: str = "exports"
    db_password: str = "exports"
    db_database: str = "exports"
    db_port: int = 3306

    # Redis base fields (for .env / local)
    redis_host: str = "localhost"
    redis_port: str = "6379"
    redis_username: Optional[str] = None
    redis_password: Optional[str] = None

    # AWS / S3 artifact storage
    aws_region: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    s3_bucket_name: Optional[str] = None

    # Export processing
    export_batch_size: int = 1000
    export_retention_days: int = 7
    export_worker_timeout_seconds: int = 600
    export_watchdog_grace_seconds: int = 300
    export_watchdog_interval_seconds: int = 300
    export_pending_requeue_seconds: int = 900

    # Transient I/O retries inside a worker run
    export_transient_max_attempts: int = 3
    export_transient_initial_delay: float = 1.0
    export_transient_backoff_factor: float = 2.0
    export_transient_max_delay: float = 30.0

    # Limits
    export_max_records_csv: int = 1_000_000
    export_max_records_excel: int = 100_000
    export_max_file_size_mb_csv: int = 50
    export_max_file_size_mb_excel: int = 100
    export_max_active_per_user: int = 3
    export_max_active_per_org: int = 10

    # Cleanup sweep
    export_cleanup_batch_size: int = 100
    export_temp_file_max_age_hours: int = 24

    # Artifact storage: "local" or "s3"
    export_storage_backend: str = "local"
    export_storage_dir: str = "/tmp/exports"
    export_signed_url_secret: str = "change-me"
    export_download_base_url: str = "http://localhost:8000/api/exports/download"
    export_signed_url_default_minutes: int = 60

    # Event publishing: "log" or "redis"
    export_event_backend: str = "log"
    export_event_channel: str = "exports.events"

    #
    # ---------------------------
    #  DB ACCESS PROPERTIES
    # ---------------------------
    #
    @property
    def db_url(self) -> str:
        """Construct the synchronous database URL."""
        if self.database_url:
            return self.database_url
        return (
            f"mysql+pymysql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_database}"
        )

    #
    # ---------------------------
    #  REDIS ACCESS PROPERTIES
    # ---------------------------
    #
    @property
    def redis_url(self) -> str:
        """Construct the Redis URL."""
        host = self.redis_host or "localhost"
        port = self.redis_port or "6379"

        if self.redis_username and self.redis_password:
            return f"redis://{self.redis_username}:{self.redis_password}@{host}:{port}"
        elif self.redis_password:
            return f"redis://:{self.redis_password}@{host}:{port}"
        else:
            return f"redis://{host}:{port}"

    @property
    def event_bus_url(self) -> str:
        """Construct the Redis URL for export event pub/sub (DB 0)."""
        return f"{self.redis_url}/0"

    @property
    def celery_broker(self) -> str:
        """Construct the Redis URL for Celery broker (DB 1)."""
        return f"{self.redis_url}/1"

    @property
    def celery_backend(self) -> str:
        """Construct the Redis URL for Celery backend (DB 2)."""
        return f"{self.redis_url}/2"


#
# Instantiate settings
#
settings = Settings()
