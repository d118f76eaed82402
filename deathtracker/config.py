"""Application configuration management."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"

# Environment override for the Client.txt location (also read from .env)
LOG_PATH_ENV = "POE_CLIENT_LOG"

_DEFAULT_LOG = "Client.txt"


@dataclass
class AppConfig:
    """Application settings."""

    # Paths
    log_path: str = ""
    output_dir: str = "death-stats"
    db_path: str = "deathtracker.db"

    # Tailing
    poll_interval: float = 1.0
    min_read_interval: float = 1.0

    # Tracking
    recent_deaths: int = 10
    death_policy: str = "new_instance"

    # Outputs
    overlay_enabled: bool = True
    persist_state: bool = True
    snapshot_interval: float = 5.0

    # Debug
    debug: bool = False

    def save(self, path: str = CONFIG_FILE) -> None:
        """Save config to JSON file."""
        Path(path).write_text(
            json.dumps(asdict(self), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )

    @classmethod
    def load(cls, path: str = CONFIG_FILE) -> AppConfig:
        """Load config from JSON file, using defaults for missing fields."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return cls()
        defaults = asdict(cls())
        unknown = set(data) - set(defaults)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
        defaults.update({k: v for k, v in data.items() if k in defaults})
        return cls(**defaults)


def resolve_log_path(config: AppConfig) -> Path:
    """Resolve the Client.txt path: config, then environment, then cwd."""
    if config.log_path:
        return Path(config.log_path)

    env_path = os.environ.get(LOG_PATH_ENV, "")
    if env_path:
        return Path(env_path)

    return Path(_DEFAULT_LOG)
