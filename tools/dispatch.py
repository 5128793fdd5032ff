"""Builtin tool executor: validation, execution, approval lookup and stringification."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from backend import Backend
from agent.ports import FileService, ToolExecutor
from tools._common import ToolResult, ToolValidationError
from tools.schemas import (
    TOOL_DEFINITIONS, TOOL_NAME_NORMALIZE, TOOL_VALIDATORS, TOOL_IMPLEMENTATIONS,
    APPROVAL_TYPE_OF_TOOL, MCP_APPROVAL_TYPE, BEFORE_STATE_TOOLS,
)

logger = logging.getLogger(__name__)


class BuiltinToolExecutor(ToolExecutor):
    """Runs the builtin tools against a file service and backend."""

    def __init__(self, files: FileService, backend: Backend):
        self.files = files
        self.backend = backend

    def definitions(self) -> List[Dict[str, Any]]:
        return list(TOOL_DEFINITIONS)

    @staticmethod
    def canonical_name(name: str) -> str:
        return TOOL_NAME_NORMALIZE.get(name, name)

    def validate(self, name: str, raw_params: Dict[str, Any]) -> Dict[str, Any]:
        name = self.canonical_name(name)
        validator = TOOL_VALIDATORS.get(name)
        if validator is None:
            raise ToolValidationError(f"Unknown tool: {name}")
        if not isinstance(raw_params, dict):
            raise ToolValidationError(f"Parameters for {name} must be an object.")
        params = validator(raw_params)
        if "path" in params:
            try:
                params["path"] = self.files.normalize(params["path"])
            except ValueError as e:
                raise ToolValidationError(str(e))
        return params

    def execute(
        self, name: str, params: Dict[str, Any]
    ) -> Tuple[Awaitable[ToolResult], Optional[Callable[[], None]]]:
        name = self.canonical_name(name)
        impl = TOOL_IMPLEMENTATIONS.get(name)
        if impl is None:
            raise ToolValidationError(f"Unknown tool: {name}")
        task = asyncio.ensure_future(impl(params, self.files, self.backend))

        if name == "run_command":
            # Killing the process lets the command return its partial output
            def _interrupt():
                if not self.backend.cancel_running_command():
                    task.cancel()
        else:
            def _interrupt():
                task.cancel()
        return task, _interrupt

    def stringify(self, name: str, params: Dict[str, Any], result: ToolResult) -> str:
        if result.success:
            return result.output
        return result.error or result.output or "Tool failed without output."

    def approval_type(self, name: str) -> Optional[str]:
        name = self.canonical_name(name)
        if name in APPROVAL_TYPE_OF_TOOL:
            return APPROVAL_TYPE_OF_TOOL[name]
        return MCP_APPROVAL_TYPE

    def mutated_path(self, name: str, params: Dict[str, Any]) -> Optional[str]:
        if self.canonical_name(name) in BEFORE_STATE_TOOLS and not params.get("is_folder"):
            return params.get("path")
        return None
