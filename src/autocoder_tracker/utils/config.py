from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass(frozen=True)
class Config:
    """Central configuration loaded from environment variables."""

    # Storage
    storage: str = field(
        default_factory=lambda: os.environ.get("AUTOCODER_STORAGE", "json").lower()
    )
    data_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get("AUTOCODER_DATA_PATH", "data/requests.json")
        )
    )

    # Server
    host: str = field(default_factory=lambda: os.environ.get("AUTOCODER_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("AUTOCODER_PORT", 3000))
    event_queue_size: int = field(
        default_factory=lambda: _env_int("AUTOCODER_EVENT_QUEUE_SIZE", 100)
    )

    # Reconciliation
    poll_interval: float = field(
        default_factory=lambda: _env_float("AUTOCODER_POLL_INTERVAL", 30)
    )
    error_threshold: int = field(
        default_factory=lambda: _env_int("AUTOCODER_ERROR_THRESHOLD", 5)
    )
    vcs_timeout: float = field(default_factory=lambda: _env_float("AUTOCODER_VCS_TIMEOUT", 15))

    # Retention
    retention_days: int = field(default_factory=lambda: _env_int("AUTOCODER_RETENTION_DAYS", 30))
    cleanup_interval: int = field(
        default_factory=lambda: _env_int("AUTOCODER_CLEANUP_INTERVAL", 3600)
    )

    # GitHub
    github_token: str | None = field(
        default_factory=lambda: os.environ.get("MCP_GITHUB_TOKEN") or os.environ.get("GITHUB_TOKEN")
    )
    github_api_url: str = field(
        default_factory=lambda: os.environ.get("GITHUB_API_URL", "https://api.github.com")
    )
    default_repo: str = field(default_factory=lambda: os.environ.get("DEFAULT_REPO", ""))

    # Code-generation worker
    worker_command: list[str] = field(
        default_factory=lambda: shlex.split(os.environ.get("AUTOCODER_WORKER_COMMAND", ""))
    )
    worker_timeout: float = field(
        default_factory=lambda: _env_float("AUTOCODER_WORKER_TIMEOUT", 1800)
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("AUTOCODER_LOG_LEVEL", "INFO")
    )


def get_config() -> Config:
    """Return a Config instance (singleton-friendly via module caching)."""
    return Config()
