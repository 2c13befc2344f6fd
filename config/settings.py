"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Dashboard inventory endpoint
    inventory_api_base_url: str = "http://localhost:5001"
    inventory_api_token: Optional[str] = None

    # Cache settings
    cache_ttl_seconds: float = 12 * 60 * 60  # 12 hours
    cache_max_entries: int = 1000
    cache_persist_enabled: bool = True
    cache_db_path: Path = Path("./data/inventory_cache.db")
    cache_max_blob_bytes: int = 5 * 1024 * 1024  # roughly a browser storage quota

    # Fetching
    fetch_timeout_seconds: float = 12.0
    lookup_retry_attempts: int = 2

    # Preloading
    preload_batch_size: int = 3
    preload_item_delay_seconds: float = 0.2
    preload_batch_delay_seconds: float = 0.5
    preload_failure_threshold: int = 3
    preload_visible_limit: int = 12
    preload_queue_size: int = 4

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
