from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Campus Messaging'
    app_env: str = 'local'
    app_timezone: str = 'UTC'
    database_url: str = 'sqlite:///./campus_comms.db'
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200
    enable_scheduler: bool = True

    student_max_file_mb: int = 20
    staff_max_file_mb: int = 100
    message_preview_chars: int = 100

    attachment_storage_backend: str = 'local'
    attachment_storage_dir: str = './storage'
    attachment_public_base_url: str = 'http://127.0.0.1:8000/files'
    object_storage_url: str = ''
    object_storage_token: str = ''
    object_storage_timeout_seconds: float = 30.0
    virus_scanner_url: str = ''
    virus_scanner_timeout_seconds: float = 15.0

    metrics_provider: str = 'database'
    metrics_api_base: str = ''
    metrics_timeout_seconds: float = 10.0

    attendance_warning_threshold: float = 80.0
    attendance_disqualified_threshold: float = 75.0
    attendance_certification_threshold: float = 85.0
    attendance_allowed_absence_hours: float = 100.0
    attendance_alert_period: str = 'month'
    notification_webhook_url: str = ''
    notification_timeout_seconds: float = 8.0

    monitor_max_workers: int = 10
    monitor_scan_minute: int = 0
    monitor_retry_interval_minutes: int = 15
    retry_base_minutes: int = 15
    retry_max_delay_minutes: int = 240
    retry_max_attempts: int = 3

    scheduled_dispatch_interval_seconds: int = 60
    typing_indicator_ttl_seconds: int = 8
    presence_ttl_seconds: int = 90


settings = Settings()
