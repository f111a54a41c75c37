"""Process settings read from OPCTL_* environment variables."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the embedding process (not the persisted engine policy)."""

    model_config = SettingsConfigDict(env_prefix="OPCTL_", extra="ignore")

    data_dir: str = ".opctl"
    log_level: str = "INFO"
    operations_path: str = "/operations"
    resources_path: str = "/resources"


@lru_cache
def get_settings() -> Settings:
    """Get the settings singleton. Tests can reset via get_settings.cache_clear()."""
    return Settings()
