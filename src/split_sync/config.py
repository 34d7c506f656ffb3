"""Configuration management for split-sync."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Credential vault: base64 of 32 random bytes (`split-sync generate-key`)
    encryption_key: str | None = None

    # Splitwise OAuth application
    splitwise_client_id: str | None = None
    splitwise_client_secret: str | None = None
    splitwise_redirect_uri: str | None = None

    # Sync settings
    max_sync_retries: int = 5
    provider_timeout_seconds: float = 30.0

    # Database path
    database_path: Path = Path.home() / ".split_sync" / "split_sync.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Failed to load settings. Make sure you have created a .env file "
            f"with all required variables. See .env.example for reference.\n"
            f"Error: {e}"
        ) from e
