from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Titulky addon settings.

    All settings can be overridden via environment variables or .env file,
    prefixed with ``TITULKY_`` (e.g. ``TITULKY_USERNAME=alice``).

    Timeouts:
        request_timeout  = per network call (connect + read), seconds
        pipeline_timeout = whole download pipeline, the countdown wait excluded
    """
    addon_version: str = "1.0.0"
    username: str = ""
    password: str = ""
    base_url: str = "https://www.titulky.com"
    public_base_url: Optional[str] = None

    request_timeout: float = 30.0
    pipeline_timeout: float = 90.0
    login_freshness_seconds: float = 30 * 60
    captcha_cooldown_seconds: float = 15 * 60
    login_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    min_archive_bytes: int = 50

    session_idle_ttl: float = 2 * 60 * 60
    blob_cache_ttl: float = 24 * 60 * 60
    max_results: int = 10

    rd_token: Optional[str] = None
    log_level: str = "INFO"
    json_logs: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "TITULKY_"
        extra = "ignore"


settings = Settings()
