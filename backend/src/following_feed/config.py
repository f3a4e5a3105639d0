"""Configuration management."""
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = Field(
        default="sqlite:///./following_feed.db",
        description="SQLAlchemy database URL"
    )

    # Feed settings
    page_size: int = Field(default=20)
    chunk_size: int = Field(default=10, le=10, ge=1)  # backend "in" query cap
    discovery_overfetch: int = Field(default=2)

    # Retry policy for store calls
    retry_max_attempts: int = Field(default=3)
    retry_base_delay: float = Field(default=1.0)
    retry_max_delay: float = Field(default=10.0)
    retry_jitter: float = Field(default=0.5)

    class Config:
        env_prefix = "FOLLOWING_FEED_"
        env_file = ".env"


def get_settings() -> Settings:
    """Get settings - environment variables take priority."""
    return Settings()


settings = get_settings()
