"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client sync settings loaded from environment variables."""

    # Authority server
    api_base_url: str = "http://localhost:5000"
    request_timeout_seconds: float = 30.0

    # Persisted key-value storage (survives reload)
    storage_path: Path = Path("./data/clientsync.db")

    # Cache TTLs
    entitlement_ttl_seconds: int = 120        # 2 minutes
    plan_catalog_ttl_seconds: int = 600       # 10 minutes
    saved_items_ttl_seconds: int = 120        # 2 minutes
    confirmation_outcome_ttl_seconds: int = 30

    # Background refresh
    refresh_interval_seconds: float = 300.0   # 5 minutes
    min_refresh_interval_seconds: float = 60.0
    max_refreshes_per_window: int = 1
    refresh_window_seconds: float = 60.0
    refresh_debounce_seconds: float = 0.5
    exempt_routes: List[str] = ["/subscription"]

    # Payment confirmation
    confirmation_max_retries: int = 3
    confirmation_backoff_base_seconds: float = 1.0

    # Usage counters
    low_water_mark: int = 2
    low_water_ratio: float = 0.2
    free_tier_limit: int = 3
    default_saved_items_limit: int = 5

    class Config:
        env_prefix = "CLIENTSYNC_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
