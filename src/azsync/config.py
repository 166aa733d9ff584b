from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./azsync.db"

    # Azure endpoints (overridable for sovereign clouds and tests)
    azure_login_url: str = "https://login.microsoftonline.com"
    azure_management_url: str = "https://management.azure.com"
    log_analytics_url: str = "https://api.loganalytics.io"

    # Chunked (historical) runs
    chunk_delay_seconds: float = 2.0
    continuation_transport: str = "scheduler"  # "scheduler" or "http"
    continuation_url: str = "http://127.0.0.1:8000/sync"
    service_token: str = ""

    # Bounded runs; budget stays below the 60s invocation limit
    bounded_time_budget_seconds: float = 50.0
    bounded_batch_size: int = 5
    subfetch_timeout_seconds: float = 25.0

    # Reaper
    stuck_job_max_runtime_minutes: int = 10
    reaper_interval_minutes: int = 5

    # Periodic bounded syncs (UTC)
    metrics_sync_minute: int = 5
    sql_insights_sync_hour: Optional[int] = None  # None = every hour
    cost_sync_hour: int = 4
    resource_sync_hours: int = 4  # inventory refresh every N hours

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "AZSYNC_"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
