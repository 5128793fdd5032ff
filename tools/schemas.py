"""Tool schema definitions (Bedrock/Anthropic Messages API), approval policy and dispatch maps."""

from typing import Any, Callable, Dict, List, Optional

from tools.diff_blocks import ORIGINAL_MARKER, DIVIDER_MARKER, FINAL_MARKER
from tools.file_ops import (
    read_file, ls_dir, create_file_or_folder, delete_file_or_folder,
    rewrite_file, write_file, edit_file,
    validate_read_file, validate_ls_dir, validate_create_file_or_folder,
    validate_delete_file_or_folder, validate_rewrite_file, validate_write_file,
    validate_edit_file,
)
from tools.external_ops import run_command, validate_run_command


def _schema(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "input_schema": {"type": "object", "properties": properties, "required": required},
    }


_PATH = {"type": "string", "description": "File path (relative to working directory)"}

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _schema(
        "read_file",
        "Read a file. Returns line-numbered content; files over 500 lines are windowed, use offset/limit to page.",
        {
            "path": _PATH,
            "offset": {"type": "integer", "description": "1-based first line to return"},
            "limit": {"type": "integer", "description": "Maximum number of lines to return"},
        },
        ["path"],
    ),
    _schema(
        "ls_dir",
        "List the entries of a directory (directories end with '/').",
        {"path": {"type": "string", "description": "Directory path, default '.'"}},
        [],
    ),
    _schema(
        "create_file_or_folder",
        "Create an empty file, or a folder when the path ends with '/'. Existing files are left unchanged.",
        {"path": _PATH, "is_folder": {"type": "boolean"}},
        ["path"],
    ),
    _schema(
        "delete_file_or_folder",
        "Delete a file or folder. Non-empty folders need is_recursive=true.",
        {"path": _PATH, "is_recursive": {"type": "boolean"}},
        ["path"],
    ),
    _schema(
        "rewrite_file",
        "Replace the entire content of a file. Prefer edit_file for small changes.",
        {"path": _PATH, "new_content": {"type": "string", "description": "Complete new file content"}},
        ["path", "new_content"],
    ),
    _schema(
        "write_file",
        "Create a file with the given content, or overwrite an existing one.",
        {"path": _PATH, "content": {"type": "string"}},
        ["path", "content"],
    ),
    _schema(
        "edit_file",
        (
            "Edit an existing file with one or more search/replace blocks. Each block is:\n"
            f"{ORIGINAL_MARKER}\n[exact code to find]\n{DIVIDER_MARKER}\n[code to replace with]\n{FINAL_MARKER}\n"
            "Copy the ORIGINAL text from the latest read_file output; blocks must not overlap."
        ),
        {"path": _PATH, "search_replace_blocks": {"type": "string"}},
        ["path", "search_replace_blocks"],
    ),
    _schema(
        "run_command",
        "Run a shell command in the workspace and return stdout, stderr and the exit code.",
        {
            "command": {"type": "string"},
            "cwd": {"type": "string", "description": "Working directory relative to the workspace"},
            "timeout": {"type": "integer", "description": "Seconds before the command is killed"},
        },
        ["command"],
    ),
]

# Aliases the model sometimes uses for the builtin tools
TOOL_NAME_NORMALIZE = {
    "Read": "read_file",
    "Write": "write_file",
    "Edit": "edit_file",
    "Bash": "run_command",
    "bash": "run_command",
    "list_dir": "ls_dir",
    "LS": "ls_dir",
}

TOOL_VALIDATORS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "read_file": validate_read_file,
    "ls_dir": validate_ls_dir,
    "create_file_or_folder": validate_create_file_or_folder,
    "delete_file_or_folder": validate_delete_file_or_folder,
    "rewrite_file": validate_rewrite_file,
    "write_file": validate_write_file,
    "edit_file": validate_edit_file,
    "run_command": validate_run_command,
}

TOOL_IMPLEMENTATIONS = {
    "read_file": read_file,
    "ls_dir": ls_dir,
    "create_file_or_folder": create_file_or_folder,
    "delete_file_or_folder": delete_file_or_folder,
    "rewrite_file": rewrite_file,
    "write_file": write_file,
    "edit_file": edit_file,
    "run_command": run_command,
}

# Approval category per builtin tool; None means read-only, no approval
APPROVAL_TYPE_OF_TOOL: Dict[str, Optional[str]] = {
    "read_file": None,
    "ls_dir": None,
    "create_file_or_folder": "edits",
    "delete_file_or_folder": "edits",
    "rewrite_file": "edits",
    "write_file": "edits",
    "edit_file": "edits",
    "run_command": "terminal",
}
MCP_APPROVAL_TYPE = "MCP tools"

# Tools whose successful runs count as file changes when diffing checkpoints
MUTATING_TOOLS = frozenset({"edit_file", "rewrite_file", "write_file"})
# Tools whose target's before-state is captured ahead of execution
BEFORE_STATE_TOOLS = MUTATING_TOOLS | {"create_file_or_folder", "delete_file_or_folder"}
