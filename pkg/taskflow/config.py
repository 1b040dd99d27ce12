# TaskFlow: configuration
# Override settings via taskflow.yaml, TASKFLOW_* environment variables or CLI args.

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

CONFIG_PATH = Path.home() / ".config" / "taskflow" / "taskflow.yaml"

# env var -> Config field
ENV_OVERRIDES = {
    "TASKFLOW_API_URL": "api_url",
    "TASKFLOW_API_TOKEN": "api_token",
    "TASKFLOW_API_SECRET": "api_key",
    "TASKFLOW_DB": "db_path",
}


class ConfigError(Exception):
    """Raised when configuration is invalid or unreadable."""
    pass


@dataclass
class Config:
    """Runtime configuration for the TaskFlow client and server."""

    # Server
    api_url: str = "http://localhost:3001/api"
    api_token: Optional[str] = None      # Bearer token
    api_key: Optional[str] = None        # X-API-Key for mutating endpoints

    # Local store
    db_path: str = "~/.local/share/taskflow/tasks.db"

    # Sync behavior
    request_timeout: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    push_workers: int = 4

    log_level: str = "INFO"

    def resolve_paths(self):
        """Expand ~ in paths."""
        self.db_path = str(Path(self.db_path).expanduser())

    def apply_env(self, environ=None):
        environ = os.environ if environ is None else environ
        for var, attr in ENV_OVERRIDES.items():
            if environ.get(var):
                setattr(self, attr, environ[var])

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "Config":
        """Load config from YAML file, then environment, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        known = {f.name for f in fields(cls)}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path}: expected a mapping at top level")
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        elif path:
            raise ConfigError(f"Config file not found: {cfg_path}")
        else:
            cfg = cls()
        cfg.apply_env(environ)
        cfg.resolve_paths()
        return cfg
