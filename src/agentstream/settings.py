from pathlib import Path
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")

    agent_base_url: str = "http://localhost:3000"
    agent_path: str = "/api/agent"
    query_analysis_path: str = "/api/query-analysis"
    ticket_fetch_path: str = "/api/ticket-fetch"
    access_token: str | None = None
    # Reads are unbounded: a hung stream is ended by abort, not by a timeout.
    connect_timeout_seconds: float = 10.0

    redis_url: str | None = None
    session_ttl_seconds: int = 0
    storage_key_prefix: str = "agentstream:"
    storage_namespace: str = "default"

    tool_output_max_chars: int = 500
    status_label_policy: Literal["latest", "first"] = "latest"
    ticket_prefix: str = "#"
    not_found_error_codes: List[str] = ["TICKET_NOT_FOUND", "NOT_FOUND"]
    stream_checkpoint_every: int = 25

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AGENTSTREAM_",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Return the settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
