"""
Tool depth policy.

Maps tool names to call shapes and call shapes to the read depth they imply.
The built-in defaults cover Claude Code's own tools and Serena's MCP tools;
a YAML file can add tools or change depths without touching the engine.
"""

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from readscope.errors import ConfigError
from readscope.ingest.events import short_tool_name
from readscope.tracking.depth import ReadDepth


class CallShape(str, Enum):
    """How a tool call is resolved to target symbols."""

    ENUMERATE = "enumerate"
    SEARCH = "search"
    OUTLINE = "outline"
    READ = "read"
    MODIFY = "modify"
    SYMBOL_LOOKUP = "symbol_lookup"
    SYMBOL_REFERENCES = "symbol_references"
    SYMBOL_EDIT = "symbol_edit"


def _parse_depth(value: Any) -> Any:
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        try:
            return ReadDepth.parse(value)
        except ValueError:
            return value
    return value


class DepthPolicy(BaseModel):
    """Tool to shape, and shape to depth, mapping."""

    tools: dict[str, CallShape] = Field(
        default_factory=dict, description="Tool name (bare or namespaced) to call shape"
    )
    depths: dict[CallShape, ReadDepth] = Field(
        default_factory=dict, description="Depth for symbols a call fully covers"
    )
    partial_depth: ReadDepth = Field(
        default=ReadDepth.SIGNATURE, description="Depth for symbols a read or edit only partly covers"
    )
    body_depth: ReadDepth = Field(
        default=ReadDepth.FULL_BODY, description="Depth for symbol lookups that include the body"
    )
    descendant_depth: ReadDepth = Field(
        default=ReadDepth.NAME_ONLY, description="Depth for children listed by a symbol lookup"
    )

    @field_validator("depths", mode="before")
    @classmethod
    def _coerce_depth_map(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: _parse_depth(v) for k, v in value.items()}
        return value

    @field_validator("partial_depth", "body_depth", "descendant_depth", mode="before")
    @classmethod
    def _coerce_depth(cls, value: Any) -> Any:
        return _parse_depth(value)

    def shape_for(self, tool_name: str) -> CallShape | None:
        """Shape for a tool, trying the logged name before the bare name."""
        shape = self.tools.get(tool_name)
        if shape is None:
            shape = self.tools.get(short_tool_name(tool_name))
        return shape

    def depth_for(self, shape: CallShape) -> ReadDepth:
        return self.depths.get(shape, ReadDepth.UNSEEN)


class PolicyLoader:
    """Build depth policies from defaults, dictionaries and YAML files."""

    DEFAULT_TOOLS: dict[str, CallShape] = {
        "Glob": CallShape.ENUMERATE,
        "LS": CallShape.ENUMERATE,
        "list_dir": CallShape.ENUMERATE,
        "find_file": CallShape.ENUMERATE,
        "Grep": CallShape.SEARCH,
        "search_for_pattern": CallShape.SEARCH,
        "get_symbols_overview": CallShape.OUTLINE,
        "Read": CallShape.READ,
        "read_file": CallShape.READ,
        "Edit": CallShape.MODIFY,
        "MultiEdit": CallShape.MODIFY,
        "Write": CallShape.MODIFY,
        "NotebookEdit": CallShape.MODIFY,
        "replace_content": CallShape.MODIFY,
        "create_text_file": CallShape.MODIFY,
        "find_symbol": CallShape.SYMBOL_LOOKUP,
        "find_referencing_symbols": CallShape.SYMBOL_REFERENCES,
        "replace_symbol_body": CallShape.SYMBOL_EDIT,
        "insert_before_symbol": CallShape.SYMBOL_EDIT,
        "insert_after_symbol": CallShape.SYMBOL_EDIT,
        "rename_symbol": CallShape.SYMBOL_EDIT,
    }

    DEFAULT_DEPTHS: dict[CallShape, ReadDepth] = {
        CallShape.ENUMERATE: ReadDepth.NAME_ONLY,
        CallShape.SEARCH: ReadDepth.OVERVIEW,
        CallShape.OUTLINE: ReadDepth.OVERVIEW,
        CallShape.READ: ReadDepth.FULL_BODY,
        CallShape.MODIFY: ReadDepth.FULL_BODY,
        CallShape.SYMBOL_LOOKUP: ReadDepth.SIGNATURE,
        CallShape.SYMBOL_REFERENCES: ReadDepth.OVERVIEW,
        CallShape.SYMBOL_EDIT: ReadDepth.FULL_BODY,
    }

    @classmethod
    def defaults(cls) -> DepthPolicy:
        """The built-in policy."""
        return DepthPolicy(tools=dict(cls.DEFAULT_TOOLS), depths=dict(cls.DEFAULT_DEPTHS))

    @classmethod
    def from_yaml(cls, path: str | Path) -> DepthPolicy:
        """
        Load a policy file layered over the defaults.

        Args:
            path: YAML file with optional ``tools``, ``depths``,
                ``partial_depth``, ``body_depth`` and ``descendant_depth`` keys

        Raises:
            ConfigError: If the file is missing or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Policy file not found: {path}")
        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot read policy file {path}: {exc}") from exc
        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DepthPolicy:
        """
        Layer a policy dictionary over the defaults.

        Raises:
            ConfigError: If a tool shape or depth is not recognized
        """
        if not isinstance(data, dict):
            raise ConfigError("Policy must be a mapping")
        merged: dict[str, Any] = {
            "tools": {**cls.DEFAULT_TOOLS, **(data.get("tools") or {})},
            "depths": {**cls.DEFAULT_DEPTHS, **(data.get("depths") or {})},
        }
        for key in ("partial_depth", "body_depth", "descendant_depth"):
            if key in data:
                merged[key] = data[key]
        try:
            return DepthPolicy.model_validate(merged)
        except ValidationError as exc:
            raise ConfigError(f"Invalid depth policy: {exc}") from exc
