"""
Builtin tools for the agent loop.
Each tool has an Anthropic-compatible schema, a validator and an async implementation
working on a FileService and a Backend. The executor lives in ``tools.dispatch``.
"""

from tools._common import ToolResult, ToolValidationError  # noqa: F401
from tools.diff_blocks import EditBlock, extract_blocks  # noqa: F401
from tools.fuzzy_match import find_best_match, fix_blocks, MatchResult  # noqa: F401
from tools.file_ops import apply_edit_blocks, EditApplyError  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    TOOL_NAME_NORMALIZE,
    APPROVAL_TYPE_OF_TOOL,
    MUTATING_TOOLS,
    BEFORE_STATE_TOOLS,
)
