from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="DOCPAGES_", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"

    # Page records are shared and role-agnostic; signed URLs are per request.
    page_ttl_seconds: int = 7 * 24 * 60 * 60
    cache_sweep_interval_seconds: float = 15 * 60
    signed_url_ttl_seconds: int = 60 * 60
    privileged_url_ttl_seconds: int = 4 * 60 * 60
    shared_url_ttl_seconds: int = 5 * 60

    render_dpi: int = 150
    jpeg_quality: int = 85
    fallback_dpi: int = 100
    fallback_jpeg_quality: int = 60
    max_page_width: int = 1200
    max_page_height: int = 1600
    blank_page_threshold_bytes: int = 10_000
    conversion_workers: int = 4
    max_concurrent_jobs: int = 5

    max_recovery_attempts: int = 3
    strategy_timeout_seconds: float = 10.0
    retry_backoff_seconds: float = 0.5
    alternate_buckets: list[str] = []
    cdn_base_url: str | None = None
    backup_database_url: str | None = None

    preload_window: int = 2

    storage_url: str = "http://localhost:54321/storage/v1"
    storage_api_key: str = ""
    storage_bucket: str = "document-pages"
    source_bucket: str = "documents"
    database_url: str = "sqlite:///./docpages.db"


settings = Settings()
