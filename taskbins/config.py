# Task Bins: configuration
# Override via config.yaml, TASKBINS_* environment variables, or CLI args.

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

CONFIG_PATH = Path("~/.config/taskbins/config.yaml")


class ConfigError(Exception):
    """Raised when the configuration file cannot be read or is invalid."""
    pass


@dataclass
class Config:
    """Runtime configuration for the board client and server."""

    # Local store
    db_path: str = "~/.local/share/taskbins/tasks.db"
    user_id: str = "local"

    # Remote store (None = local SQLite)
    remote_url: Optional[str] = None
    api_key_env: str = "TASKBINS_API_SECRET"
    poll_interval: float = 1.0     # seconds between snapshot polls
    request_timeout: float = 5.0

    # Server
    host: str = "127.0.0.1"
    port: int = 3000

    log_level: str = "INFO"

    @property
    def api_key(self) -> str:
        return os.environ.get(self.api_key_env, "")

    def apply_env(self):
        """Environment variables win over the file."""
        if os.environ.get("TASKBINS_DB"):
            self.db_path = os.environ["TASKBINS_DB"]
        if os.environ.get("TASKBINS_USER"):
            self.user_id = os.environ["TASKBINS_USER"]
        if os.environ.get("TASKBINS_REMOTE"):
            self.remote_url = os.environ["TASKBINS_REMOTE"]

    def resolve_paths(self):
        self.db_path = str(Path(self.db_path).expanduser())

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML, falling back to defaults when the file is absent."""
        cfg_path = Path(path).expanduser() if path else CONFIG_PATH.expanduser()
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
            known = {f.name for f in fields(cls)}
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        else:
            cfg = cls()
        cfg.apply_env()
        cfg.resolve_paths()
        cfg.validate()
        return cfg

    def validate(self):
        if not str(self.user_id).strip():
            raise ConfigError("user_id must not be empty")
        try:
            self.poll_interval = float(self.poll_interval)
            self.request_timeout = float(self.request_timeout)
            self.port = int(self.port)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be > 0")
