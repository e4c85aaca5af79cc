"""Application configuration via pydantic-settings."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All runtime configuration, loaded from environment / .env file.

    Provider, strategy and query-analysis definitions live in the YAML
    document at ``search_config_path``; this class only holds process-level
    knobs.
    """

    search_config_path: Path = Path("config/search.yaml")
    default_strategy: str = "smart_cascade"
    default_max_results: int = 10
    provider_timeout_seconds: float = 30.0
    handshake_timeout_seconds: float = 10.0
    request_deadline_seconds: float | None = None
    port: int = 7777
    log_level: str = "INFO"
    environment: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


# Module-level singleton; imported everywhere.
settings = Settings()
