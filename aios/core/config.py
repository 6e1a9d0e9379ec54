from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AIOS_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Configuration blob store
    config_backend: str = "file"  # memory | file | sql
    config_key: str = "nst_system_settings"
    config_file: str = "aios_settings.json"

    # Database (config_backend=sql)
    database_url: str = "sqlite+aiosqlite:///./aios.db"

    # Outbound provider calls
    request_timeout_seconds: float = 60.0

    # Admin API; empty disables the X-Admin-Token check
    admin_token: str = ""

    # Encryption for credentials stored in the config blob (empty = plaintext)
    fernet_key: str = ""

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
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.config_backend not in ("memory", "file", "sql"):
        errors.append(f"CONFIG_BACKEND must be one of memory, file, sql (got {settings.config_backend!r})")

    if settings.request_timeout_seconds <= 0:
        errors.append("REQUEST_TIMEOUT_SECONDS must be positive")

    if settings.app_env == "production":
        if not settings.admin_token:
            errors.append("AIOS_ADMIN_TOKEN must be set in production")
        if not settings.fernet_key:
            errors.append(
                'AIOS_FERNET_KEY must be set in production (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")'
            )
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
