"""Configuration and directory management for SessionVault."""

from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

_logger = structlog.get_logger("sessionvault.config")

SESSIONVAULT_DIR = Path.home() / ".sessionvault"
DB_FILENAME = "index.db"
ARCHIVE_DIRNAME = "archive"
CONFIG_FILENAME = "config.yml"

# Settings file of the host application whose own transcript cleanup we extend
HOST_SETTINGS_PATH = Path.home() / ".claude" / "settings.json"

RETENTION_OPTIONS = {
    "7d": {"days": 7, "label": "7 days", "description": "Minimal storage, recent sessions only"},
    "14d": {"days": 14, "label": "14 days", "description": "Two weeks of history"},
    "30d": {"days": 30, "label": "30 days", "description": "Host default retention"},
    "90d": {"days": 90, "label": "90 days", "description": "Quarterly retention"},
    "180d": {"days": 180, "label": "6 months", "description": "Half year of history"},
    "1y": {"days": 365, "label": "1 year", "description": "Recommended for most users"},
    "2y": {"days": 730, "label": "2 years", "description": "Extended history"},
    "5y": {"days": 1825, "label": "5 years", "description": "Long-term projects"},
    "forever": {"days": None, "label": "Forever", "description": "Never delete (uses compression)"},
}


class RetentionConfig(BaseModel):
    """How long sessions stay active, how long archives live, and the storage ceiling."""

    full_sessions: str = Field(
        default="1y",
        description="Age after which a session is archived (e.g. 30d, 6m, 1y, forever).",
    )
    archives: str = Field(
        default="forever",
        description="Age after which a session is deleted outright.",
    )
    override_host_retention: bool = Field(
        default=True,
        description="Raise the host application's own transcript cleanup period on startup.",
    )
    max_storage_gb: float = Field(default=10, gt=0)

    @property
    def max_storage_bytes(self) -> int:
        return int(self.max_storage_gb * 1e9)


class SearchConfig(BaseModel):
    enabled: bool = True
    fetch_multiplier: int = Field(
        default=2,
        ge=1,
        description="How many times the requested limit to fetch before post-filtering.",
    )


class UIConfig(BaseModel):
    recent_count: int = Field(default=10, ge=1)


class Config(BaseModel):
    """Top-level user configuration, stored as YAML."""

    version: int = 1
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    ui: UIConfig = Field(default_factory=UIConfig)


def db_path(data_dir: Path | None = None) -> Path:
    return (data_dir or SESSIONVAULT_DIR) / DB_FILENAME


def archive_dir(data_dir: Path | None = None) -> Path:
    return (data_dir or SESSIONVAULT_DIR) / ARCHIVE_DIRNAME


def config_path(data_dir: Path | None = None) -> Path:
    return (data_dir or SESSIONVAULT_DIR) / CONFIG_FILENAME


def ensure_dirs(data_dir: Path | None = None) -> None:
    """Ensure the SessionVault directory structure exists."""
    root = data_dir or SESSIONVAULT_DIR
    root.mkdir(parents=True, exist_ok=True)
    archive_dir(root).mkdir(parents=True, exist_ok=True)


def save_config(config: Config, path: Path | None = None) -> None:
    """Write the configuration as YAML."""
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(config.model_dump(), sort_keys=False, indent=2))


def load_config(path: Path | None = None) -> Config:
    """Load configuration, merging the file over defaults.

    A missing file is created with the defaults. An unreadable or invalid
    file is logged and ignored; this never raises.
    """
    path = path or config_path()
    if not path.exists():
        config = Config()
        try:
            save_config(config, path)
        except OSError as exc:
            _logger.warning("config_write_failed", path=str(path), error=str(exc))
        return config

    try:
        raw = yaml.safe_load(path.read_text()) or {}
        if not isinstance(raw, dict):
            raise ValueError("config root must be a mapping")
        return Config.model_validate(raw)
    except (OSError, yaml.YAMLError, ValueError, ValidationError) as exc:
        _logger.warning("config_load_failed_using_defaults", path=str(path), error=str(exc))
        return Config()
