"""Shared types for the tools package."""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ToolValidationError(ValueError):
    """Raised when the model supplied malformed parameters for a tool."""


def require_str(params: Dict[str, Any], key: str, allow_empty: bool = False) -> str:
    value = params.get(key)
    if value is None:
        raise ToolValidationError(f"Missing required parameter '{key}'.")
    if not isinstance(value, str):
        raise ToolValidationError(f"Parameter '{key}' must be a string, got {type(value).__name__}.")
    if not allow_empty and not value.strip():
        raise ToolValidationError(f"Parameter '{key}' must not be empty.")
    return value


def optional_int(params: Dict[str, Any], key: str) -> Optional[int]:
    value = params.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ToolValidationError(f"Parameter '{key}' must be an integer, got {value!r}.")


def optional_bool(params: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = params.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ToolValidationError(f"Parameter '{key}' must be a boolean, got {value!r}.")
