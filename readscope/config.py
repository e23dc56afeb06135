"""
Engine configuration.

Settings come from an optional ``.readscope.yaml`` in the project root,
overridden by whatever the caller (usually the CLI) passes explicitly.
"""

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from readscope.errors import ConfigError

CONFIG_FILE_NAME = ".readscope.yaml"


class BackendKind(str, Enum):
    """Symbol extraction sources."""

    TREE_SITTER = "tree-sitter"
    SERENA = "serena"


class EngineConfig(BaseModel):
    """Configuration for one engine run."""

    project_root: Path = Field(description="Root directory of the tracked project")
    projects_dir: Path = Field(
        default_factory=lambda: Path.home() / ".claude" / "projects",
        description="Directory holding per-project session log directories",
    )
    log_dir: Path | None = Field(
        default=None, description="Explicit session log directory (skips slug lookup)"
    )
    session_id: str | None = Field(
        default=None, description="Session to track; latest session when unset"
    )
    backend: BackendKind = Field(
        default=BackendKind.TREE_SITTER, description="Symbol extraction backend"
    )
    symbol_cache_dir: Path | None = Field(
        default=None, description="Alternate Serena cache directory"
    )
    poll_interval_seconds: float = Field(
        default=0.25, gt=0, description="Session log polling interval"
    )
    ignore_patterns: list[str] = Field(
        default_factory=list, description="Extra gitignore-style patterns to skip"
    )
    policy_file: Path | None = Field(
        default=None, description="YAML file overriding the tool depth policy"
    )

    def resolved_cache_dir(self) -> Path:
        return self.symbol_cache_dir or self.project_root / ".serena" / "cache"


class ConfigLoader:
    """Load engine configuration from YAML files and keyword overrides."""

    PATH_FIELDS = ("projects_dir", "log_dir", "symbol_cache_dir", "policy_file")

    @classmethod
    def load(cls, project_root: str | Path, **overrides: Any) -> EngineConfig:
        """
        Load configuration for a project.

        Reads ``.readscope.yaml`` from the project root when present. Overrides
        whose value is None are ignored so unset CLI options keep file values.

        Args:
            project_root: Project root directory
            **overrides: Field values taking precedence over the file

        Returns:
            EngineConfig for the project

        Raises:
            ConfigError: If the file is unreadable or holds invalid values
        """
        root = Path(project_root).expanduser().resolve()
        data: dict[str, Any] = {}
        config_file = root / CONFIG_FILE_NAME
        if config_file.is_file():
            data = cls._read_yaml(config_file)
            cls._anchor_paths(data, root)

        data.update({k: v for k, v in overrides.items() if v is not None})
        data["project_root"] = root
        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> EngineConfig:
        """
        Load configuration from a YAML file.

        Relative paths in the file resolve against the file's directory, which
        is also the project root unless the file names one.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        data = cls._read_yaml(path)
        base = path.parent.resolve()
        data.setdefault("project_root", base)
        cls._anchor_paths(data, base)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """
        Create configuration from a dictionary.

        Raises:
            ConfigError: If a value fails validation
        """
        try:
            return EngineConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    @classmethod
    def _read_yaml(cls, path: Path) -> dict[str, Any]:
        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")
        return data

    @classmethod
    def _anchor_paths(cls, data: dict[str, Any], base: Path) -> None:
        for key in (*cls.PATH_FIELDS, "project_root"):
            value = data.get(key)
            if isinstance(value, str):
                candidate = Path(value).expanduser()
                data[key] = candidate if candidate.is_absolute() else base / candidate
