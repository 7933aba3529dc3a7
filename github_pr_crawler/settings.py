"""Application settings loaded from environment variables and .env file."""

from functools import lru_cache
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = Path(__file__).parent.parent / "results" / "pull_requests.db"


class MissingSettingsError(RuntimeError):
    """Raised at startup when required settings are absent."""

    def __init__(self, missing: list[str]):
        super().__init__(f"Missing required environment variables: {', '.join(missing)}")
        self.missing = missing


class Settings(BaseSettings):
    """Settings for the pull request crawler."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    github_token: str | None = None
    github_org: str = "vercel"
    db_path: Path | None = DEFAULT_DB_PATH

    max_workers: int = 10
    max_concurrent_requests: int = 10
    request_interval: float = 1.0
    shutdown_grace_seconds: float = 30.0

    @field_validator("db_path", mode="before")
    @classmethod
    def _blank_db_path_is_missing(cls, value):
        # Path("") would become Path("."), a directory sqlite cannot open.
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def require_settings(settings: Settings) -> Settings:
    """Fail fast when the token or storage location is missing."""
    missing = []
    if not settings.github_token:
        missing.append("GITHUB_TOKEN")
    if not settings.db_path or not str(settings.db_path).strip():
        missing.append("DB_PATH")
    if missing:
        raise MissingSettingsError(missing)
    return settings
