"""Configuration management for the holder-count sync service."""

from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional
import json


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class ChainConfig(BaseSettings):
    """Routing entry for a single chain."""
    name: str
    scraper_base_url: str
    api_base_url: str
    indexer_chain: str
    flavor: str = "etherscan"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "./data/holders.db"

    # Indexer provider (absent key disables the indexer path)
    moralis_api_key: Optional[str] = None
    indexer_page_size: int = 100
    indexer_max_pages: int = 10
    indexer_page_delay_seconds: float = 0.2

    # Reconciliation
    freshness_hours: float = 4.0

    # Outbound HTTP
    http_timeout_seconds: float = 15.0
    user_agent: str = DEFAULT_USER_AGENT
    scrape_retries: int = 2
    request_delay_seconds: float = 2.0
    rate_limit_backoff_seconds: float = 60.0

    # Batch
    max_workers: int = 1
    batch_pause_every: int = 5
    batch_pause_seconds: float = 10.0
    sync_interval_hours: float = 4.0
    enable_background_sync: bool = True

    # Chain routing overrides - JSON array of chain configs
    # Example: [{"name": "base", "scraper_base_url": "https://basescan.org", "api_base_url": "...", "indexer_chain": "0x2105", "flavor": "basescan"}]
    chains_config: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def indexer_enabled(self) -> bool:
        return bool(self.moralis_api_key)

    def get_chain_overrides(self) -> List[ChainConfig]:
        """Parse and return chain routing overrides."""
        if not self.chains_config:
            return []

        try:
            configs = json.loads(self.chains_config)
            return [ChainConfig(**config) for config in configs]
        except (json.JSONDecodeError, TypeError) as e:
            raise ValueError(f"Invalid chains_config JSON: {e}")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
