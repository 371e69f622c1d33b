"""Configuration for the import FastAPI service."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    # Backing store: direct Postgres when DATABASE_URL is set, else PostgREST
    DATABASE_URL: str = ""
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""

    # Auth
    WORKER_API_KEY: str

    # Logging
    LOG_JSON: bool = False
    LOG_LEVEL: str = "INFO"

    @property
    def use_postgres(self) -> bool:
        return bool(self.DATABASE_URL)


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
