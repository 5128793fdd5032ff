"""Terminal tool: run_command."""

import asyncio
import logging
from typing import Any, Dict

from backend import Backend
from config import loop_config
from tools._common import ToolResult, ToolValidationError, require_str, optional_int

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 20000


def validate_run_command(raw: Dict[str, Any]) -> Dict[str, Any]:
    timeout = optional_int(raw, "timeout")
    if timeout is not None and timeout <= 0:
        raise ToolValidationError("Parameter 'timeout' must be a positive number of seconds.")
    cwd = raw.get("cwd") or "."
    if not isinstance(cwd, str):
        raise ToolValidationError("Parameter 'cwd' must be a string.")
    return {
        "command": require_str(raw, "command"),
        "cwd": cwd,
        "timeout": timeout or loop_config.command_timeout_s,
    }


def _truncate(output: str) -> str:
    if len(output) <= _MAX_OUTPUT_CHARS:
        return output
    lines_out = output.split("\n")
    if len(lines_out) > 200:
        return (
            "\n".join(lines_out[:100])
            + f"\n\n... [{len(lines_out) - 150} lines truncated] ...\n\n"
            + "\n".join(lines_out[-50:])
        )
    return output[:10000] + "\n\n... [truncated] ...\n\n" + output[-5000:]


async def run_command(params: Dict[str, Any], files, backend: Backend) -> ToolResult:
    """Execute a shell command in a worker thread. Interrupted by ``backend.cancel_running_command``."""
    command, timeout = params["command"], params["timeout"]
    logger.info(f"run_command: {command[:120]}")
    stdout, stderr, rc = await asyncio.to_thread(backend.run_command, command, params["cwd"], timeout)

    parts = []
    if stdout:
        parts.append(stdout)
    if stderr:
        parts.append(f"[stderr]\n{stderr}")
    output = "\n".join(parts) if parts else "(no output)"
    if rc != 0:
        output = f"[exit code: {rc}]\n{output}"
    output = _truncate(output)

    return ToolResult(
        success=rc == 0, output=output,
        error=None if rc == 0 else f"Command exited with code {rc}\n{output}",
    )
