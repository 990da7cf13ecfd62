"""Runtime settings, read from CHAINCTL_* environment variables."""

from functools import lru_cache
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChainSettings(BaseSettings):
    """Engine and local platform settings."""

    model_config = SettingsConfigDict(env_prefix="CHAINCTL_")

    data_dir: str = ".chainctl"
    log_level: str = "INFO"

    # engine
    config_cache_ttl: float = Field(default=30.0, ge=0)  # seconds, 0 disables caching
    default_batch_size: int = Field(default=200, gt=0)
    max_chain_length: int = Field(default=100, gt=0)
    resolved_history_size: int = Field(default=10000, gt=0)

    # retries
    retry_backoff_base: float = Field(default=2.0, ge=0)  # 0 retries immediately
    retry_backoff_max_delay: int = 3600  # seconds

    # platform ceilings
    ceiling_defer_delay: int = Field(default=60, gt=0)  # seconds
    max_active_batch_jobs: int = Field(default=5, gt=0)
    max_enqueue_per_burst: int = Field(default=50, gt=0)

    # worker
    poll_interval: float = 1.0
    job_modules: List[str] = Field(default_factory=list)


@lru_cache(maxsize=1)
def get_settings() -> ChainSettings:
    """Get or create the process settings."""
    return ChainSettings()
