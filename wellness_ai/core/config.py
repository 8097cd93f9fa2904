from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_env: str = "development"
    app_debug: bool = True

    # Durable store (queue, quota counters, breaker records, cache L2)
    store_url: str = "sqlite+aiosqlite:///./gateway.db"

    # Response cache
    cache_default_ttl_seconds: float = 3600.0
    cache_memory_max_entries: int = 50

    # Durability queue
    queue_max_size: int = 100
    queue_overflow_policy: str = "evict_oldest"  # or "reject_new"
    queue_max_attempts: int = 5
    queue_retry_delay_seconds: float = 5.0

    # Admission control
    interactive_wait_ceiling_seconds: float = 2.0

    # Retry policy for transient provider failures
    retry_max_retries: int = 3
    retry_base_delay_seconds: float = 2.0
    retry_factor: float = 2.0

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_success_threshold: int = 2
    breaker_reset_timeout_seconds: float = 60.0

    # Providers
    provider_timeout_seconds: float = 45.0
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_rpm_limit: int = 55  # buffer below the free-tier 60
    gemini_rpd_limit: int = 1400  # buffer below the free-tier 1500
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_rpm_limit: int = 60
    openai_rpd_limit: int = 10_000

    # Connectivity
    connectivity_probe_url: str = "https://www.gstatic.com/generate_204"
    connectivity_probe_interval_seconds: float = 30.0
    connectivity_offline_threshold_seconds: float = 0.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs
    log_http_requests: bool = False  # httpx request lines at INFO
    log_sql: bool = False  # SQLAlchemy statements at INFO

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.queue_overflow_policy not in ("evict_oldest", "reject_new"):
        errors.append("QUEUE_OVERFLOW_POLICY must be 'evict_oldest' or 'reject_new'")

    if settings.queue_max_size < 1:
        errors.append("QUEUE_MAX_SIZE must be at least 1")

    if settings.cache_default_ttl_seconds <= 0:
        errors.append("CACHE_DEFAULT_TTL_SECONDS must be positive (use ttl=0 per call to skip caching)")

    if settings.breaker_failure_threshold < 1 or settings.breaker_success_threshold < 1:
        errors.append("BREAKER_*_THRESHOLD values must be at least 1")

    if not settings.gemini_api_key and not settings.openai_api_key:
        errors.append("At least one provider API key (GEMINI_API_KEY / OPENAI_API_KEY) must be set")

    if settings.app_env == "production":
        if settings.store_url.startswith("memory://"):
            errors.append("STORE_URL must be durable in production (memory:// loses queued requests)")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
