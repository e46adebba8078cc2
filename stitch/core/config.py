"""Engine settings loaded from ``.stitch/config.yaml`` and the environment."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

CONFIG_DIR = ".stitch"
CONFIG_FILE = "config.yaml"

# Environment variable -> settings field
ENV_OVERRIDES = {
    "STITCH_DB_PATH": "db_path",
    "STITCH_BASE_URL": "base_url",
    "STITCH_WORKER_TIMEOUT": "worker_timeout",
    "STITCH_SWEEP_INTERVAL": "sweep_interval",
    "STITCH_LOG_LEVEL": "log_level",
}

DEFAULT_CONFIG = """# Stitch engine configuration

# SQLite database holding graph versions, runs and journeys
db_path: .stitch/state.db

# Public base URL of this server; async webhook workers call back to
# {base_url}/callback/{run_id}/{node_id}
base_url: http://127.0.0.1:8000

# Seconds before a worker webhook call is abandoned
worker_timeout: 30

# Seconds between UX timeout sweeps
sweep_interval: 5

log_level: INFO
"""


class EngineSettings(BaseModel):
    db_path: Path = Path(CONFIG_DIR) / "state.db"
    base_url: str = "http://127.0.0.1:8000"
    worker_timeout: float = Field(default=30.0, gt=0)
    sweep_interval: float = Field(default=5.0, gt=0)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return level

    @classmethod
    def load(cls, root: Path | None = None) -> EngineSettings:
        """Read ``<root>/.stitch/config.yaml`` (if present), then apply env overrides.

        A relative ``db_path`` is resolved against ``root``.
        """
        root = root or Path.cwd()
        data: dict = {}

        config_path = root / CONFIG_DIR / CONFIG_FILE
        if config_path.exists():
            loaded = yaml.safe_load(config_path.read_text())
            if loaded is not None and not isinstance(loaded, dict):
                raise ValueError(
                    f"Invalid config in '{config_path}': expected a mapping, "
                    f"got {type(loaded).__name__}"
                )
            data.update(loaded or {})

        for env_name, field in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                data[field] = value

        settings = cls(**data)
        if not settings.db_path.is_absolute():
            settings = settings.model_copy(update={"db_path": root / settings.db_path})
        return settings

    def callback_url(self, run_id: str, node_key: str) -> str:
        return f"{self.base_url.rstrip('/')}/callback/{run_id}/{node_key}"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
