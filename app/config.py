from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql://postgres:postgres@db:5432/workouts"
    redis_url: str = "redis://redis:6379/0"
    log_level: str = "INFO"

    # Public URL used when building download links in notification emails
    public_base_url: str = "https://workout.example.com"

    # Export queue ("redis" in production, "stub" for tests and local dev)
    export_broker: str = "redis"
    export_queue_name: str = "exports"
    export_max_attempts: int = 3
    export_retry_backoff_ms: int = 5000  # Fixed delay between attempts
    export_worker_threads: int = 4  # Bounds concurrent renders per worker process
    export_render_time_limit_ms: int = 1800000  # Dramatiq interrupts a render after this long

    # Export lifecycle
    export_dir: str = "exports"
    export_expiry_hours: int = 48
    export_cooldown_days: int = 30
    export_cooldown_disabled: bool = False  # Debug override for the monthly limit

    # Expiry reaper
    export_reaper_enabled: bool = True
    export_reaper_interval_seconds: int = 600  # 10 minutes
    export_orphan_grace_seconds: int = 300  # Pending records older than this are re-enqueued
    export_stuck_timeout_seconds: int = 3600  # Processing claims older than this are reset

    # Notification email (logged instead of sent when smtp_host is empty)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_email: str = "no-reply@workout.example.com"

    # Auth settings
    session_cookie_name: str = "workout_session"
    session_max_age: int = 86400 * 7  # 7 days

    class Config:
        env_file = ".env"


settings = Settings()
