from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # xAI upstream
    xai_api_key: str = ""  # server-side fallback when the key pool is empty
    xai_base_url: str = "https://api.x.ai"
    xai_timeout_seconds: float = 60.0
    video_model: str = "grok-imagine-video"
    image_model: str = "grok-imagine-image"

    # State storage (jobs, key pool, rotation cursor)
    database_url: str = "sqlite+aiosqlite:///./.studio/state.db"

    # Fernet key for credential secrets at rest; empty stores them as-is
    credential_encryption_key: str = ""

    # Orchestration
    poll_interval_seconds: float = 2.0
    key_check_spacing_seconds: float = 0.15

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup."""
    errors: list[str] = []

    if settings.poll_interval_seconds <= 0:
        errors.append("POLL_INTERVAL_SECONDS must be positive")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if not settings.credential_encryption_key:
            errors.append(
                'CREDENTIAL_ENCRYPTION_KEY must be set (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")'
            )

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
