"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """DriveSense companion configuration."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "protected_namespaces": ("settings_",),
    }

    # Server
    # Loopback by default: the companion has no auth layer.
    drivesense_host: str = "127.0.0.1"
    drivesense_port: int = 8010
    drivesense_log_level: str = "info"
    drivesense_allow_insecure_bind: bool = False

    # Model runtime
    model_bundle_dir: str = "models"
    model_cache_dir: str = "~/.cache/drivesense/models"
    model_tiers_path: str = ""
    # Remote tiers are appended after the on-device tiers when a key is set.
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"

    # Inference orchestrator (single-flight coalescing)
    inference_poll_interval_seconds: float = 1.0
    inference_max_polls: int = 30
    inference_cache_ttl_seconds: float = 5.0

    # Pairing
    companion_url: str = "http://127.0.0.1:8010/mcp"
    sync_interval_seconds: float = 60.0


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
