from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_name: str = "Traza"
    app_version: str = "1.0.0"
    environment: str = "production"
    debug: bool = False
    log_level: str = "INFO"
    app_url: str = "http://localhost:3000"

    # Database
    database_url: str = "postgresql+asyncpg://traza:traza@db:5432/traza"

    # Auth (owner sessions are issued elsewhere, only verified here)
    secret_key: str = "CHANGE_ME"
    jwt_algorithm: str = "HS256"

    # Signing tokens (key must differ from secret_key)
    signing_token_secret: str = "CHANGE_ME_SIGNING"
    signing_token_default_days: int = 7
    # How long a link's envelope outlives its business deadline; resend extends up to here.
    signing_token_grace_days: int = 7
    signing_access_max_failures: int = 10
    signing_access_window_minutes: int = 15

    # Redis / Celery
    redis_url: str = "redis://redis:6379/0"
    celery_task_always_eager: bool = False

    # Encryption of webhook secrets at rest
    field_encryption_key: str = "CHANGE_ME"

    # Email
    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: str = ""
    email_from: str = "sign@traza.dev"

    # Webhook delivery
    webhook_timeout_seconds: float = 10.0
    webhook_retry_timeout_seconds: float = 15.0
    webhook_queue_workers: int = 4
    webhook_queue_max_size: int = 500

    # Background workers
    workers_enabled: bool = True
    webhook_retry_interval_seconds: float = 60.0
    reminder_interval_seconds: float = 3600.0
    worker_lease_seconds: int = 120

    # CORS
    backend_cors_origins: list[str] = ["http://localhost", "http://localhost:3000"]

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()
