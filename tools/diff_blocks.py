"""Parsing of the search/replace diff-block payload used by ``edit_file``.

Canonical form, repeated once per edit::

    <<<<<<< ORIGINAL
    text to find
    =======
    text to put instead
    >>>>>>> UPDATED

Models drift from this in predictable ways (longer marker runs, SEARCH/REPLACE
keywords, code fences, XML-ish wrappers, a lone ``=======`` with no opening
marker) so the payload is normalised before it is parsed.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, List

ORIGINAL_MARKER = "<<<<<<< ORIGINAL"
DIVIDER_MARKER = "======="
FINAL_MARKER = ">>>>>>> UPDATED"

_CANONICAL_RE = re.compile(r"<<<<<<< ORIGINAL\n([\s\S]*?)\n=======\n([\s\S]*?)\n>>>>>>> UPDATED")

_WRAPPER_SUBS = [
    (re.compile(r"<search_replace_blocks>([\s\S]*?)</search_replace_blocks>", re.I), r"\1"),
    (re.compile(r"<search_replace_blocks[^>]*/?>", re.I), ""),
    (re.compile(r"</search_replace_blocks>", re.I), ""),
    (re.compile(r"```(?:json|javascript|typescript|python|text|diff|plain)?\s*\n?([\s\S]*?)```", re.I), r"\1"),
]

_MARKER_SUBS = [
    (re.compile(r"<{5,}\s*>*\s*(?:ORIGINAL|SEARCH|HEAD)", re.I), ORIGINAL_MARKER),
    (re.compile(r"<<<+\s*ORIGINAL\s*\n", re.I), ORIGINAL_MARKER + "\n"),
    (re.compile(r"<{8,}"), "<<<<<<<"),
    (re.compile(r">{8,}"), ">>>>>>>"),
    (re.compile(r">{5,}\s*(?:UPDATED|REPLACE|NEW|CHANGED|MODIFIED|FINAL|END|RESULT)", re.I), FINAL_MARKER),
    (re.compile(r">>>+\s*UPDATED\s*\n", re.I), FINAL_MARKER + "\n"),
    (re.compile(r"^>{5,}\s*$", re.M), FINAL_MARKER),
    # only a line made of 7+ '=' is a divider; '==' inside code is left alone
    (re.compile(r"^={7,}\s*$", re.M), DIVIDER_MARKER),
]

_OPEN_LINE_RE = re.compile(r"^<{5,}\s*(?:ORIGINAL|SEARCH|HEAD)", re.I)
_DIVIDER_LINE_RE = re.compile(r"^={7,}\s*$")
_CLOSE_LINE_RE = re.compile(r"^>{5,}")


@dataclass
class EditBlock:
    search: str
    replace: str


def normalize_payload(payload: str) -> str:
    content = payload.replace("\r\n", "\n").replace("\r", "\n")
    for pattern, repl in _WRAPPER_SUBS:
        content = pattern.sub(repl, content)
    content = content.strip()
    for pattern, repl in _MARKER_SUBS:
        content = pattern.sub(repl, content)
    return content


def _canonical_blocks(content: str) -> List[EditBlock]:
    return [EditBlock(m.group(1), m.group(2)) for m in _CANONICAL_RE.finditer(content)]


def _state_machine_blocks(content: str) -> List[EditBlock]:
    """Line-by-line parse tolerant of a missing opening marker."""
    blocks: List[EditBlock] = []
    phase = "idle"
    prefix: List[str] = []
    search: List[str] = []
    replace: List[str] = []

    for line in content.split("\n"):
        if _OPEN_LINE_RE.match(line):
            phase, prefix, search, replace = "search", [], [], []
            continue
        if line.strip() == DIVIDER_MARKER or _DIVIDER_LINE_RE.match(line):
            if phase == "search":
                phase, replace = "replace", []
            elif phase == "idle":
                # lone divider: everything seen so far is the search text
                search, prefix = list(prefix), []
                phase, replace = "replace", []
            # a repeated divider while already in replace is dropped
            continue
        if _CLOSE_LINE_RE.match(line):
            if phase == "replace" and (search or replace):
                blocks.append(EditBlock("\n".join(search), "\n".join(replace)))
            phase, prefix, search, replace = "idle", [], [], []
            continue
        if phase == "idle":
            prefix.append(line)
        elif phase == "search":
            search.append(line)
        else:
            replace.append(line)
    return blocks


def _json_blocks(content: str) -> List[EditBlock]:
    try:
        parsed = json.loads(content)
    except ValueError:
        return []
    items = parsed if isinstance(parsed, list) else [parsed]
    blocks: List[EditBlock] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        search = str(item.get("search") or item.get("old") or item.get("original") or "").strip()
        replace = str(item.get("replace") or item.get("new") or item.get("updated") or "").strip()
        if search or replace:
            blocks.append(EditBlock(search, replace))
    return blocks


def extract_blocks(payload: Any) -> List[EditBlock]:
    """Extract edit blocks from a model payload (string, dict or list)."""
    if payload is None:
        return []
    if isinstance(payload, str):
        raw = payload.replace("\r\n", "\n").replace("\r", "\n")
        if ORIGINAL_MARKER in raw:
            blocks = _canonical_blocks(raw)
            if blocks:
                return blocks
        if len(raw.strip()) < 10:
            return []
    else:
        raw = json.dumps(payload)

    content = normalize_payload(raw)
    blocks = _canonical_blocks(content)
    if blocks:
        return blocks
    if DIVIDER_MARKER in content and ">>>>>>>" in content:
        blocks = _state_machine_blocks(content)
        if blocks:
            return blocks
    return _json_blocks(content)


def format_blocks(blocks: List[EditBlock]) -> str:
    return "\n\n".join(
        f"{ORIGINAL_MARKER}\n{b.search}\n{DIVIDER_MARKER}\n{b.replace}\n{FINAL_MARKER}" for b in blocks
    )


def format_error_hint(payload: Any) -> str:
    preview = payload if isinstance(payload, str) else json.dumps(payload)
    return (
        f'Invalid format: search_replace_blocks must contain "{ORIGINAL_MARKER}" markers. '
        f'Received: "{preview[:100]}...". Please format your blocks correctly.\n\n'
        f"Expected format:\n{ORIGINAL_MARKER}\n[exact code to find]\n{DIVIDER_MARKER}\n"
        f"[code to replace with]\n{FINAL_MARKER}"
    )
