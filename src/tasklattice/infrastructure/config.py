"""Configuration management with hierarchical loading."""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from tasklattice.infrastructure.logger import get_logger

logger = get_logger(__name__)

CONFIG_DIRNAME = ".tasklattice"
ENV_PREFIX = "TASKLATTICE_"


class StorageConfig(BaseModel):
    """Record store and graph store locations."""

    tasks_dir: str = ".tasks"
    graph_db_filename: str = ".graph.db"


class SyncConfig(BaseModel):
    """Sync engine tuning."""

    medium_interval_seconds: float = Field(default=30.0, ge=0)
    change_marker_ttl_seconds: float = Field(default=10.0, gt=0)
    outbox_filename: str = ".outbox.jsonl"


class SelectionConfig(BaseModel):
    """Next-task selection preferences."""

    strategy: Literal["smart", "simple", "depth-first", "breadth-first"] = "smart"
    max_depth: int = Field(default=3, ge=1)
    skip_decomposed: bool = True


class Config(BaseModel):
    """Main configuration model."""

    version: str = "0.1.0"
    log_level: str = "INFO"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)


class ConfigManager:
    """Manage configuration loading from multiple sources with hierarchy."""

    def __init__(self, project_root: Path | None = None) -> None:
        """Initialize config manager.

        Args:
            project_root: Root directory of the project (default: current directory)
        """
        self.project_root = project_root or Path.cwd()
        self._config: Config | None = None

    def load_config(self) -> Config:
        """Load configuration from all sources in hierarchy order.

        Configuration hierarchy (highest priority last):
        1. System defaults (embedded in Config model)
        2. Project defaults (.tasklattice/config.yaml)
        3. User overrides (~/.tasklattice/config.yaml)
        4. Project-local overrides (.tasklattice/local.yaml)
        5. Environment variables (TASKLATTICE_* prefix)

        Returns:
            Merged configuration
        """
        if self._config is not None:
            return self._config

        config_dict: dict[str, Any] = {}
        for path in (
            self.project_root / CONFIG_DIRNAME / "config.yaml",
            Path.home() / CONFIG_DIRNAME / "config.yaml",
            self.project_root / CONFIG_DIRNAME / "local.yaml",
        ):
            if path.exists():
                logger.debug("config_file_loaded", path=str(path))
                config_dict = self._merge_dicts(config_dict, self._load_yaml(path))

        config_dict = self._apply_env_vars(config_dict)

        self._config = Config(**config_dict)
        return self._config

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        """Load YAML configuration file."""
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _merge_dicts(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Recursively merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_dicts(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_vars(self, config_dict: dict[str, Any]) -> dict[str, Any]:
        """Apply environment variables with TASKLATTICE_ prefix.

        Values are passed through as strings; pydantic coerces them.
        """
        env_mappings = {
            f"{ENV_PREFIX}LOG_LEVEL": ["log_level"],
            f"{ENV_PREFIX}TASKS_DIR": ["storage", "tasks_dir"],
            f"{ENV_PREFIX}SYNC_INTERVAL": ["sync", "medium_interval_seconds"],
            f"{ENV_PREFIX}STRATEGY": ["selection", "strategy"],
            f"{ENV_PREFIX}MAX_DEPTH": ["selection", "max_depth"],
        }

        for env_var, path in env_mappings.items():
            value = os.getenv(env_var)
            if value is None:
                continue
            current = config_dict
            for key in path[:-1]:
                current = current.setdefault(key, {})
            current[path[-1]] = value

        return config_dict

    def get_tasks_dir(self) -> Path:
        """Get the record store root (relative paths resolve against the project)."""
        tasks_dir = Path(self.load_config().storage.tasks_dir)
        if not tasks_dir.is_absolute():
            tasks_dir = self.project_root / tasks_dir
        return tasks_dir

    def get_graph_db_path(self) -> Path:
        """Get path to the SQLite graph index."""
        return self.get_tasks_dir() / self.load_config().storage.graph_db_filename

    def get_outbox_path(self) -> Path:
        """Get path to the pending graph mutation outbox."""
        return self.get_tasks_dir() / self.load_config().sync.outbox_filename

    def get_log_dir(self) -> Path:
        """Get path to log directory."""
        log_dir = self.project_root / CONFIG_DIRNAME / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir
