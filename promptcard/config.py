# PromptCard: configuration
# Override settings via config.yaml, environment, or server CLI args.

import logging
import os
import yaml
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".config" / "promptcard" / "config.yaml"


@dataclass
class Config:
    """Runtime configuration for the PromptCard core and server."""

    # Storage
    data_dir: str = "~/.local/share/promptcard"

    # Local API
    host: str = "127.0.0.1"
    port: int = 3000
    api_secret: str = ""  # empty = no X-API-Key check

    log_level: str = "INFO"

    # Behavior
    recent_limit: int = 20
    max_image_bytes: int = 10 * 1024 * 1024

    def resolve_paths(self):
        """Apply environment overrides and expand ~."""
        if os.environ.get("PROMPTCARD_DATA_DIR"):
            self.data_dir = os.environ["PROMPTCARD_DATA_DIR"]
        if os.environ.get("PROMPTCARD_API_SECRET"):
            self.api_secret = os.environ["PROMPTCARD_API_SECRET"]
        self.data_dir = str(Path(self.data_dir).expanduser())

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        path = path or os.environ.get("PROMPTCARD_CONFIG")
        cfg_path = Path(path).expanduser() if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
            except (OSError, yaml.YAMLError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
                cfg = cls()
        else:
            cfg = cls()
        cfg.resolve_paths()
        return cfg
