"""File tools: read, list, create, delete, rewrite, write and diff-block edit.

Every tool works on the live buffers of a ``FileService`` and saves what it
changes. Mutations are bracketed by ``begin_edit``/``end_edit``.
"""

import difflib
import logging
from typing import Any, Dict, List, Optional, Tuple

from backend import Backend
from tools._common import ToolResult, ToolValidationError, require_str, optional_int, optional_bool
from tools.diff_blocks import EditBlock, extract_blocks, format_error_hint
from tools.fuzzy_match import (
    find_best_match,
    fix_blocks,
    normalize_newlines,
    splice_preserving_indent,
)

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 500
LAST_RESORT_SIMILARITY = 0.70

CONCURRENT_EDIT_ERROR = (
    "Another LLM is currently making changes to this file. "
    "Please stop streaming for now and ask the user to resume later."
)


class EditApplyError(Exception):
    """Raised when a set of edit blocks cannot be applied to a file."""


# ============================================================
# Validation
# ============================================================

def validate_read_file(raw: Dict[str, Any]) -> Dict[str, Any]:
    offset = optional_int(raw, "offset")
    limit = optional_int(raw, "limit")
    if offset is not None and offset < 1:
        raise ToolValidationError("Parameter 'offset' is 1-based and must be >= 1.")
    if limit is not None and limit < 1:
        raise ToolValidationError("Parameter 'limit' must be >= 1.")
    return {"path": require_str(raw, "path"), "offset": offset, "limit": limit}


def validate_ls_dir(raw: Dict[str, Any]) -> Dict[str, Any]:
    path = raw.get("path") or "."
    if not isinstance(path, str):
        raise ToolValidationError("Parameter 'path' must be a string.")
    return {"path": path}


def validate_create_file_or_folder(raw: Dict[str, Any]) -> Dict[str, Any]:
    path = require_str(raw, "path")
    is_folder = path.endswith("/") or optional_bool(raw, "is_folder")
    return {"path": path.rstrip("/") or path, "is_folder": is_folder}


def validate_delete_file_or_folder(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "path": require_str(raw, "path").rstrip("/"),
        "is_recursive": optional_bool(raw, "is_recursive"),
    }


def validate_rewrite_file(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {"path": require_str(raw, "path"), "new_content": require_str(raw, "new_content", allow_empty=True)}


def validate_write_file(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {"path": require_str(raw, "path"), "content": require_str(raw, "content", allow_empty=True)}


def validate_edit_file(raw: Dict[str, Any]) -> Dict[str, Any]:
    path = require_str(raw, "path")
    payload = raw.get("search_replace_blocks")
    if payload is None:
        raise ToolValidationError("search_replace_blocks is null or undefined.")
    blocks = extract_blocks(payload)
    if not blocks:
        raise ToolValidationError(
            format_error_hint(payload) + "\n\nCRITICAL: You MUST use the exact markers shown above. Do not modify them."
        )
    return {"path": path, "blocks": blocks}


# ============================================================
# Edit application
# ============================================================

def apply_blocks_strict(content: str, blocks: List[EditBlock]) -> str:
    """Apply every block at once; each search must occur exactly once and not overlap."""
    spans: List[Tuple[int, int, str, int]] = []
    for n, block in enumerate(blocks, 1):
        search = normalize_newlines(block.search)
        if not search:
            raise EditApplyError(f"ORIGINAL block {n} is empty; it was not found in the file.")
        count = content.count(search)
        if count == 0:
            raise EditApplyError(f"ORIGINAL block {n} was not found in the file.")
        if count > 1:
            raise EditApplyError(f"ORIGINAL block {n} is not unique: it matches {count} locations.")
        start = content.index(search)
        spans.append((start, start + len(search), normalize_newlines(block.replace), n))

    spans.sort()
    for a, b in zip(spans, spans[1:]):
        if b[0] < a[1]:
            raise EditApplyError(f"ORIGINAL blocks {a[3]} and {b[3]} overlap; blocks must not overlap.")

    out = content
    for start, end, replace, _ in reversed(spans):
        out = out[:start] + replace + out[end:]
    return out


def _mentions(error: Exception, *needles: str) -> bool:
    msg = str(error).lower()
    return any(n in msg for n in needles)


def _last_resort(content: str, block: EditBlock) -> Optional[str]:
    search = normalize_newlines(block.search)
    replace = normalize_newlines(block.replace)
    if search and search in content:
        return content.replace(search, replace, 1)
    spliced = splice_preserving_indent(content, search, replace)
    if spliced is not None:
        return spliced
    match = find_best_match(content, search, floor=LAST_RESORT_SIMILARITY)
    if match and match.similarity >= LAST_RESORT_SIMILARITY and match.matched_text in content:
        return content.replace(match.matched_text, replace, 1)
    return None


def _suggestion(error_text: str) -> str:
    lower = error_text.lower()
    if "not found" in lower or "no match" in lower:
        return (
            "\n\nSUGGESTION: The ORIGINAL section doesn't match the file content. Please:\n"
            "1. Use read_file to get the LATEST file content\n"
            "2. COPY the EXACT code from the file (character for character)\n"
            "3. Do NOT retype the code manually - copy-paste it\n"
            "4. Include enough context to make the match unique"
        )
    if "overlap" in lower:
        return (
            "\n\nSUGGESTION: Your ORIGINAL blocks overlap. Please:\n"
            "1. Make sure each block targets a different part of the file\n"
            "2. Or combine overlapping blocks into a single larger block"
        )
    if "not unique" in lower:
        return (
            "\n\nSUGGESTION: The ORIGINAL section matches multiple locations. Please:\n"
            "1. Include MORE context lines to make the match unique\n"
            "2. Include surrounding function names or unique identifiers"
        )
    return ""


def apply_edit_blocks(content: str, blocks: List[EditBlock]) -> Tuple[str, str]:
    """Apply blocks with progressively looser strategies.

    Returns ``(new_content, strategy)``; strategy is one of ``direct``,
    ``fuzzy``, ``per_block`` or ``fallback``. Raises ``EditApplyError``
    with an actionable hint when nothing could be applied.
    """
    content = normalize_newlines(content)

    try:
        return apply_blocks_strict(content, blocks), "direct"
    except EditApplyError as e:
        last_error: Exception = e

    if _mentions(last_error, "not found", "no match", "not unique"):
        fixed = fix_blocks(blocks, content)
        if any(b.fixed for b in fixed):
            repaired = [EditBlock(b.search, b.replace) for b in fixed]
            try:
                return apply_blocks_strict(content, repaired), "fuzzy"
            except EditApplyError as e:
                last_error = e
            blocks = repaired

    if len(blocks) > 1 and _mentions(last_error, "overlap", "not found", "no match", "not unique"):
        current = content
        applied = 0
        failed: List[EditBlock] = []
        for block in blocks:
            try:
                current = apply_blocks_strict(current, [block])
                applied += 1
                continue
            except EditApplyError:
                pass
            single = fix_blocks([block], current)[0]
            if single.fixed:
                try:
                    current = apply_blocks_strict(current, [EditBlock(single.search, single.replace)])
                    applied += 1
                    continue
                except EditApplyError:
                    pass
            failed.append(block)
        if applied:
            for block in failed:
                search = normalize_newlines(block.search)
                if search and search in current:
                    current = current.replace(search, normalize_newlines(block.replace), 1)
                else:
                    logger.warning(f"Edit block dropped after partial apply: {search[:60]!r}")
            return current, "per_block"

    current = content
    replaced = 0
    for block in blocks:
        updated = _last_resort(current, block)
        if updated is not None:
            current = updated
            replaced += 1
    if replaced:
        return current, "fallback"

    detail = str(last_error) or "Unknown error"
    raise EditApplyError(f"Failed to apply edits: {detail}" + _suggestion(detail))


# ============================================================
# Helpers
# ============================================================

def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Unified diff trimmed for the model."""
    diff = list(difflib.unified_diff(
        old_content.splitlines(keepends=True),
        new_content.splitlines(keepends=True),
        fromfile=path, tofile=path, lineterm="",
    ))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def _change_stats(old_content: str, new_content: str) -> Dict[str, int]:
    added = removed = 0
    for line in difflib.ndiff(old_content.splitlines(), new_content.splitlines()):
        if line.startswith("+ "):
            added += 1
        elif line.startswith("- "):
            removed += 1
    return {"lines_added": added, "lines_removed": removed}


async def _replace_contents(files, path: str, new_content: str, verb: str) -> ToolResult:
    """Swap a file's buffer for ``new_content`` and save it."""
    if not files.begin_edit(path):
        return ToolResult(success=False, output="", error=CONCURRENT_EDIT_ERROR)
    try:
        old_content = files.read_text(path)
        is_new = old_content is None
        files.set_text(path, new_content)
        await files.save(path)
    finally:
        files.end_edit(path)

    if is_new:
        stats = _change_stats("", new_content)
        return ToolResult(success=True, output=f"Created {path} (+{stats['lines_added']} lines)")
    stats = _change_stats(old_content, new_content)
    summary = f"{verb} {path} (+{stats['lines_added']} -{stats['lines_removed']})"
    diff_text = _compact_diff(old_content, new_content, path)
    return ToolResult(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary)


# ============================================================
# Tools
# ============================================================

async def read_file(params: Dict[str, Any], files, backend: Backend) -> ToolResult:
    """Line-numbered file content, windowed by offset/limit."""
    path = params["path"]
    content = files.read_text(path)
    if content is None:
        return ToolResult(success=False, output="", error=f"File not found: {path}")

    lines = content.splitlines()
    total = len(lines)
    offset, limit = params.get("offset"), params.get("limit")
    if offset is None and limit is None and total > _MAX_FULL_READ_LINES:
        limit = _MAX_FULL_READ_LINES
    start = (offset or 1) - 1
    end = total if limit is None else min(total, start + limit)
    numbered = [f"{start + i + 1:6}|{line}" for i, line in enumerate(lines[start:end])]

    if start == 0 and end == total:
        header = f"[{total} lines total]"
    else:
        header = f"[{total} lines total] (showing lines {start + 1}-{end})"
        if end < total:
            header += f"\n[Use offset={end + 1} to read more]"
    return ToolResult(success=True, output=header + "\n" + "\n".join(numbered))


async def ls_dir(params: Dict[str, Any], files, backend: Backend) -> ToolResult:
    path = params["path"]
    if not backend.is_dir(path):
        return ToolResult(success=False, output="", error=f"Not a directory: {path}")
    entries = backend.list_dir(path)
    if not entries:
        return ToolResult(success=True, output=f"{path}/ (empty)")
    out = []
    for e in entries:
        if e["type"] == "directory":
            out.append(f"{e['name']}/")
        else:
            out.append(f"{e['name']} ({e.get('size', 0)} bytes)")
    return ToolResult(success=True, output="\n".join(out))


async def create_file_or_folder(params: Dict[str, Any], files, backend: Backend) -> ToolResult:
    path = params["path"]
    if params.get("is_folder"):
        backend.make_dir(path)
        return ToolResult(success=True, output=f"Created folder {path}/")
    if files.exists(path):
        return ToolResult(success=True, output=f"File {path} already exists; left unchanged.")
    return await _replace_contents(files, path, "", "Created")


async def delete_file_or_folder(params: Dict[str, Any], files, backend: Backend) -> ToolResult:
    path = params["path"]
    if not backend.file_exists(path):
        return ToolResult(success=False, output="", error=f"Path not found: {path}")
    if backend.is_dir(path):
        backend.remove_dir(path, recursive=params.get("is_recursive", False))
        return ToolResult(success=True, output=f"Deleted folder {path}/")
    if not files.begin_edit(path):
        return ToolResult(success=False, output="", error=CONCURRENT_EDIT_ERROR)
    try:
        backend.remove_file(path)
        files.forget(path)
    finally:
        files.end_edit(path)
    return ToolResult(success=True, output=f"Deleted {path}")


async def rewrite_file(params: Dict[str, Any], files, backend: Backend) -> ToolResult:
    return await _replace_contents(files, params["path"], params["new_content"], "Rewrote")


async def write_file(params: Dict[str, Any], files, backend: Backend) -> ToolResult:
    return await _replace_contents(files, params["path"], params["content"], "Wrote")


async def edit_file(params: Dict[str, Any], files, backend: Backend) -> ToolResult:
    """Apply diff blocks to an existing file."""
    path = params["path"]
    content = files.read_text(path)
    if content is None:
        return ToolResult(
            success=False, output="",
            error=(
                f"Cannot edit file: {path} does not exist. "
                "To create a new file, use 'create_file_or_folder' first, then use 'rewrite_file' to write content."
            ),
        )
    if not files.begin_edit(path):
        return ToolResult(success=False, output="", error=CONCURRENT_EDIT_ERROR)
    try:
        try:
            new_content, strategy = apply_edit_blocks(content, params["blocks"])
        except EditApplyError as e:
            return ToolResult(success=False, output="", error=str(e))
        if strategy != "direct":
            logger.info(f"edit_file {path}: applied via {strategy} strategy")
        files.set_text(path, new_content)
        await files.save(path)
    finally:
        files.end_edit(path)

    stats = _change_stats(normalize_newlines(content), new_content)
    summary = f"Applied {len(params['blocks'])} edit block(s) to {path} (+{stats['lines_added']} -{stats['lines_removed']})"
    diff_text = _compact_diff(normalize_newlines(content), new_content, path)
    return ToolResult(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary)
