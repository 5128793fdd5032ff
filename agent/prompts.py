"""
System prompt composition.
Small modular fragments assembled per chat mode, detected language and workspace.
"""

import os
from typing import Any, Dict, List, Optional

from tools.diff_blocks import ORIGINAL_MARKER, DIVIDER_MARKER, FINAL_MARKER

# Chat modes: which builtin tools each one may call
READ_ONLY_TOOLS = frozenset({"read_file", "ls_dir"})
CHAT_MODES = ("agent", "gather", "normal")


_MOD_IDENTITY = """You are an expert software engineer working inside the user's workspace. You can read files, edit them and run terminal commands through tools. Investigate before acting, verify after changing, and never guess when you can check."""

_MOD_EDITING = f"""<editing>
- Read a file before editing it. Copy ORIGINAL text character for character from the latest read_file output.
- Use edit_file for targeted changes. Each block looks like:
{ORIGINAL_MARKER}
[exact code to find]
{DIVIDER_MARKER}
[code to replace with]
{FINAL_MARKER}
- Blocks must not overlap, and each ORIGINAL must match exactly one location; include surrounding lines to make it unique.
- Use rewrite_file only for small files or when most of the file changes. Use create_file_or_folder before writing a brand-new file.
</editing>"""

_MOD_TOOL_POLICY = """<tool_policy>
- Call at most one tool per response and wait for its result before deciding the next step.
- Some tools need the user's approval. If a call is rejected, do not retry it unchanged; ask what the user wants instead.
- Tool results may be shortened to a placeholder when the conversation grows; re-read files when you need their content again.
- run_command runs in the workspace root; prefer short, non-interactive commands.
</tool_policy>"""

_MOD_TONE = """<tone_and_style>
Be concise and direct. Explain non-obvious decisions in a sentence. Do not restate tool output verbatim.
</tone_and_style>"""

_MOD_MODE_GATHER = """<mode>
You are in gather mode: you may read files and list directories but must not change anything. Collect the information the user asked for and summarise it.
</mode>"""

_MOD_MODE_NORMAL = """<mode>
You are in chat mode: no tools are available. Answer from the conversation and the selections the user attached.
</mode>"""

_MOD_LANG_PYTHON = """<language_conventions lang="python">
Follow PEP 8 and the project's existing patterns. Prefer explicit imports, context managers for resources and specific exception types.
</language_conventions>"""

_MOD_LANG_JAVASCRIPT = """<language_conventions lang="javascript/typescript">
Match the project's module system and formatting. Use async/await and explicit return types on exported TypeScript functions.
</language_conventions>"""

LANG_MODULES = {
    "python": _MOD_LANG_PYTHON,
    "javascript": _MOD_LANG_JAVASCRIPT,
    "typescript": _MOD_LANG_JAVASCRIPT,
}

MODE_MODULES = {
    "gather": _MOD_MODE_GATHER,
    "normal": _MOD_MODE_NORMAL,
}


def detect_project_language(working_directory: str) -> Optional[str]:
    """Detect the primary language of a project from manifest files."""
    checks = [
        ("pyproject.toml", "python"),
        ("requirements.txt", "python"),
        ("setup.py", "python"),
        ("tsconfig.json", "typescript"),
        ("package.json", "javascript"),
    ]
    for filename, lang in checks:
        if os.path.exists(os.path.join(working_directory, filename)):
            return lang
    return None


def tools_for_mode(definitions: List[Dict[str, Any]], chat_mode: str) -> List[Dict[str, Any]]:
    if chat_mode == "normal":
        return []
    if chat_mode == "gather":
        return [d for d in definitions if d["name"] in READ_ONLY_TOOLS]
    return list(definitions)


def compose_system_prompt(
    chat_mode: str,
    working_directory: str,
    tool_names: List[str],
    language: Optional[str] = None,
) -> str:
    """Assemble the system prompt from modules for the given chat mode."""
    parts = [_MOD_IDENTITY]
    if chat_mode == "agent":
        parts.append(_MOD_EDITING)
    if tool_names:
        parts.append(_MOD_TOOL_POLICY)
    parts.append(_MOD_TONE)

    mode_mod = MODE_MODULES.get(chat_mode)
    if mode_mod:
        parts.append(mode_mod)

    if language and language in LANG_MODULES:
        parts.append(LANG_MODULES[language])

    # Working directory and available tools (always last)
    parts.append(f"<working_directory>{working_directory}</working_directory>")
    if tool_names:
        parts.append(f"<tools_available>{', '.join(tool_names)}</tools_available>")
    return "\n\n".join(parts)
