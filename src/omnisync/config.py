from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./omnisync.db"

    # Nango OAuth proxy
    nango_secret_key: str = ""
    nango_base_url: str = "https://api.nango.dev"
    nango_mail_config_key: str = "google-mail"
    nango_calendar_config_key: str = "google-calendar"
    nango_storage_config_key: str = "google-drive"
    provider_timeout_seconds: float = 30.0
    provider_max_attempts: int = 3

    # Nightfall DLP + PII vault
    nightfall_api_key: str = ""
    nightfall_scan_url: str = "https://api.nightfall.ai/v3/scan"
    dlp_batch_size: int = 20
    dlp_max_retries: int = 3
    dlp_max_backoff_seconds: float = 30.0
    dlp_sync_policy: str = "mandatory"
    dlp_briefing_policy: str = "best_effort"
    pii_vault_key_base64: str = ""

    # Briefing LLM
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5"

    # Fetch windows (days) and page sizes
    mail_initial_days: int = 7
    calendar_past_days: int = 7
    calendar_future_days: int = 30
    storage_initial_days: int = 14
    mail_page_size: int = 500
    calendar_page_size: int = 250
    storage_page_size: int = 1000
    fetch_concurrency: int = 10

    # Retention
    data_retention_days: int = 30
    sync_job_retention_days: int = 7
    stuck_job_threshold_hours: int = 24
    job_lease_minutes: int = 15
    sync_job_max_attempts: int = 3

    # Change classification
    urgency_window_hours: int = 24
    imminent_window_start_minutes: int = 20
    imminent_window_end_minutes: int = 30

    # Client orchestrator
    auto_sync_interval_minutes: int = 10
    dedup_window_ms: int = 2000
    max_queue_length: int = 3

    # Cron hours (UTC)
    cleanup_hour: int = 3
    briefing_hour: int = 6

    default_user_id: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
