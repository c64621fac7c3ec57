from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "gw_user"
    postgres_password: str = "changeme"
    postgres_db: str = "inference_gateway"
    database_url: str = ""  # full override, e.g. "sqlite+aiosqlite:///:memory:" for tests

    @property
    def postgres_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Encryption for provider credentials
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

    # --- Gateway: backends ---
    flash_base_url: str = "https://api.groq.com/openai/v1"
    flash_model: str = "groq/compound-mini"
    flash_timeout_seconds: float = 60.0
    flash_fallback_key: str = ""  # used when the flash pool has no active credential

    lite_base_url: str = "https://openrouter.ai/api/v1"
    lite_model: str = "meta-llama/llama-3.3-70b-instruct:free"
    lite_timeout_seconds: float = 90.0
    lite_fallback_key: str = ""

    pro_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    pro_model: str = "gemini-2.5-flash"
    pro_timeout_seconds: float = 120.0
    pro_fallback_key: str = ""

    # Audio transcription and image description run on the flash provider
    transcription_model: str = "whisper-large-v3"
    vision_model: str = "llama-3.2-11b-vision-preview"
    media_timeout_seconds: float = 60.0
    max_images_per_request: int = 2

    # --- Gateway: pricing (per 1M tokens) ---
    currency: str = "BDT"
    price_pro_per_million: float = 250.0
    price_flash_per_million: float = 100.0
    price_lite_per_million: float = 40.0
    floor_cost: float = 0.00001
    minimum_balance: float = 0.01
    free_tier_request_cap: int = 20

    transcription_cost: float = 0.005
    transcription_minimum_balance: float = 0.001

    # --- Gateway: context budget ---
    context_soft_budget: int = 40_000
    context_hard_ceiling: int = 100_000

    # --- Gateway: failover & key pool ---
    max_attempts: int = 3
    key_pool_refresh_seconds: float = 300.0
    rate_limit_cooldown_seconds: float = 60.0


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if not settings.fernet_key:
        errors.append(
            'FERNET_KEY must be set (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")'
        )

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if settings.context_soft_budget > settings.context_hard_ceiling:
            errors.append("CONTEXT_SOFT_BUDGET must not exceed CONTEXT_HARD_CEILING")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
