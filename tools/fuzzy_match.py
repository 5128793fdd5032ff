"""Fuzzy search/replace matching.

Locates the region of a file that a model-proposed ``search`` block most
plausibly refers to, even when the transcription drifted (trailing spaces,
re-indentation, a missing or extra line). Tiers are tried in order and the
first confident one wins:

1. exact containment
2. anchor-exact (first non-blank line), accept >= 0.90
3. anchor without whitespace, at most 20 candidates, accept >= 0.85
4. dual anchor (first + last non-blank line), accept >= 0.80
5. sliding window, small files or short searches only, accept >= 0.80

Everything here is a pure function of text in, match out.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

FUZZY_MATCH_THRESHOLD = 0.80
ANCHOR_EXACT_THRESHOLD = 0.90
ANCHOR_NO_WS_THRESHOLD = 0.85
DUAL_ANCHOR_THRESHOLD = 0.80
EARLY_EXIT_SIMILARITY = 0.95

MAX_NO_WS_CANDIDATES = 20
MIN_NO_WS_ANCHOR_LEN = 5
SLIDING_WINDOW_MAX_FILE_LINES = 2000
SLIDING_WINDOW_MAX_SEARCH_LINES = 5

_TRAILING_WS_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_ANY_WS_RE = re.compile(r"\s+")


@dataclass
class MatchResult:
    """Best region found for a search block. ``end_line`` is exclusive."""
    start_line: int
    end_line: int
    similarity: float
    matched_text: str
    strategy: str


@dataclass
class FixedBlock:
    search: str
    replace: str
    fixed: bool


# ------------------------------------------------------------------
# Normalisation helpers
# ------------------------------------------------------------------

def normalize_newlines(s: str) -> str:
    return s.replace("\r\n", "\n").replace("\r", "\n")


def normalize_for_comparison(s: str) -> str:
    """Unify line endings and strip trailing blanks on every line."""
    return _TRAILING_WS_RE.sub("", normalize_newlines(s))


def _strip_all_ws(s: str) -> str:
    return _ANY_WS_RE.sub("", s)


def _trimmed(line: str) -> str:
    return line.strip()


def line_similarity(a_lines: Sequence[str], b_lines: Sequence[str],
                    key: Callable[[str], str] = _trimmed) -> float:
    """Positional per-line equality ratio: matches / max(len(a), len(b))."""
    max_len = max(len(a_lines), len(b_lines))
    if max_len == 0:
        return 1.0
    matches = sum(1 for a, b in zip(a_lines, b_lines) if key(a) == key(b))
    return matches / max_len


# ------------------------------------------------------------------
# Window search
# ------------------------------------------------------------------

class _WindowSearch:
    """Tracks the best window seen by one tier."""

    def __init__(self, file_lines: List[str], search_lines: List[str], floor: float):
        self.file_lines = file_lines
        self.search_lines = search_lines
        self.normalized_search = [normalize_for_comparison(l) for l in search_lines]
        self.floor = floor
        self.best: Optional[MatchResult] = None

    def evaluate(self, start: int, size: int, strategy: str,
                 key: Callable[[str], str] = _trimmed) -> None:
        if size <= 0 or start < 0 or start + size > len(self.file_lines):
            return
        window = [normalize_for_comparison(l) for l in self.file_lines[start:start + size]]
        similarity = line_similarity(window, self.normalized_search, key=key)
        if similarity >= self.floor and (self.best is None or similarity > self.best.similarity):
            self.best = MatchResult(
                start_line=start,
                end_line=start + size,
                similarity=similarity,
                matched_text="\n".join(self.file_lines[start:start + size]),
                strategy=strategy,
            )

    def around_anchors(self, candidates: List[int], anchor: str, strategy: str,
                       key: Callable[[str], str] = _trimmed) -> None:
        n = len(self.search_lines)
        sizes = [s for s in (n, n + 1, n - 1, n + 2, n - 2) if s > 0]
        anchor_key = key(anchor)
        offset = next((i for i, l in enumerate(self.search_lines) if key(l) == anchor_key), 0)
        for start in candidates:
            window_start = start - offset
            for size in sizes:
                for shift in (0, -1, 1):
                    self.evaluate(window_start + shift, size, strategy, key=key)
            if self.best and self.best.similarity >= EARLY_EXIT_SIMILARITY:
                break

    def accepted(self, threshold: float) -> Optional[MatchResult]:
        if self.best and self.best.similarity >= threshold:
            return self.best
        return None


def _exact_region(content: str, search: str) -> Optional[MatchResult]:
    idx = content.find(search)
    if idx < 0:
        return None
    start_line = content.count("\n", 0, idx)
    return MatchResult(
        start_line=start_line,
        end_line=start_line + search.count("\n") + 1,
        similarity=1.0,
        matched_text=search,
        strategy="exact",
    )


def find_best_match(content: str, search: str,
                    floor: float = FUZZY_MATCH_THRESHOLD) -> Optional[MatchResult]:
    """Find the region of ``content`` that ``search`` most plausibly denotes.

    Returns None when no tier reaches its confidence threshold. Each tier
    only accepts windows it evaluated itself. ``floor`` is the minimum
    similarity any window must reach to be remembered, and the acceptance
    level of the sliding-window tier. On large files with long searches the
    sliding window is skipped, so anything the anchor tiers rejected stays
    unmatched.
    """
    content = normalize_newlines(content)
    search = normalize_newlines(search)
    if not search.strip():
        return None

    exact = _exact_region(content, search)
    if exact:
        return exact

    file_lines = content.split("\n")
    search_lines = search.split("\n")
    non_blank = [l for l in search_lines if l.strip()]
    n = len(search_lines)

    def tier() -> _WindowSearch:
        return _WindowSearch(file_lines, search_lines, floor)

    anchor = non_blank[0].strip()
    candidates = [i for i, l in enumerate(file_lines) if l.strip() == anchor]
    if candidates:
        ws = tier()
        ws.around_anchors(candidates, anchor, "anchor")
        hit = ws.accepted(ANCHOR_EXACT_THRESHOLD)
        if hit:
            return hit

    anchor_no_ws = _strip_all_ws(anchor)
    if len(anchor_no_ws) > MIN_NO_WS_ANCHOR_LEN:
        candidates = [i for i, l in enumerate(file_lines) if _strip_all_ws(l) == anchor_no_ws]
        if 0 < len(candidates) <= MAX_NO_WS_CANDIDATES:
            ws = tier()
            ws.around_anchors(candidates, anchor, "anchor_no_ws", key=_strip_all_ws)
            hit = ws.accepted(ANCHOR_NO_WS_THRESHOLD)
            if hit:
                return hit

    if len(non_blank) >= 3:
        last_anchor = non_blank[-1].strip()
        candidates = []
        for i, line in enumerate(file_lines):
            if line.strip() != last_anchor:
                continue
            for j in range(max(0, i - n - 2), i + 1):
                if file_lines[j].strip() == anchor and j not in candidates:
                    candidates.append(j)
        if candidates:
            ws = tier()
            ws.around_anchors(candidates, anchor, "dual_anchor")
            hit = ws.accepted(DUAL_ANCHOR_THRESHOLD)
            if hit:
                return hit

    if len(file_lines) > SLIDING_WINDOW_MAX_FILE_LINES and n > SLIDING_WINDOW_MAX_SEARCH_LINES:
        return None

    ws = tier()
    for i in range(0, len(file_lines) - n + 1):
        ws.evaluate(i, n, "sliding_window")
        if ws.best and ws.best.similarity >= EARLY_EXIT_SIMILARITY:
            break
    if not ws.best or ws.best.similarity < ANCHOR_EXACT_THRESHOLD:
        for size in (n + 1, n - 1):
            if size <= 0:
                continue
            for i in range(0, len(file_lines) - size + 1):
                ws.evaluate(i, size, "sliding_window")
                if ws.best and ws.best.similarity >= EARLY_EXIT_SIMILARITY:
                    break
    return ws.accepted(floor)


# ------------------------------------------------------------------
# Block repair
# ------------------------------------------------------------------

def _trimmed_lines_match(content: str, search: str) -> Optional[str]:
    """Return the original file text whose per-line trimmed form equals the search's."""
    file_lines = content.split("\n")
    trimmed_file = [l.strip() for l in file_lines]
    trimmed_search = [l.strip() for l in search.split("\n")]
    if not "\n".join(trimmed_search):
        return None
    m = len(trimmed_search)
    for i in range(0, len(trimmed_file) - m + 1):
        if trimmed_file[i:i + m] == trimmed_search:
            return "\n".join(file_lines[i:i + m])
    return None


def fix_blocks(blocks, content: str) -> List[FixedBlock]:
    """Rewrite each block's search text to the file text it should have matched.

    ``fixed`` is True only when the search text changed; an exact hit that
    needed no normalisation is returned untouched with ``fixed=False``.
    """
    content = normalize_newlines(content)
    out: List[FixedBlock] = []
    for block in blocks:
        if not block.search:
            out.append(FixedBlock(block.search, block.replace, False))
            continue
        search = normalize_newlines(block.search)
        if search in content:
            out.append(FixedBlock(search, block.replace, search != block.search))
            continue
        trimmed = _trimmed_lines_match(content, search)
        if trimmed is not None:
            out.append(FixedBlock(trimmed, block.replace, True))
            continue
        match = find_best_match(content, search)
        if match:
            out.append(FixedBlock(match.matched_text, block.replace, True))
        else:
            out.append(FixedBlock(search, block.replace, False))
    return out


def splice_preserving_indent(content: str, search: str, replace: str) -> Optional[str]:
    """Replace the lines matching ``search`` (compared trimmed) keeping the file's indentation.

    Replacement lines that start with the search block's own leading
    indentation get it swapped for the matched region's indentation.
    """
    lines = content.split("\n")
    search_lines = search.split("\n")
    trimmed_search = [l.strip() for l in search_lines]
    m = len(trimmed_search)
    for i in range(0, len(lines) - m + 1):
        if [l.strip() for l in lines[i:i + m]] != trimmed_search:
            continue
        original_indent = _leading_ws(lines[i])
        search_indent = _leading_ws(search_lines[0])
        new_lines = []
        for line in replace.split("\n"):
            if line.strip() and search_indent and _leading_ws(line).startswith(search_indent):
                line = original_indent + line[len(search_indent):]
            new_lines.append(line)
        lines[i:i + m] = new_lines
        return "\n".join(lines)
    return None


def _leading_ws(line: str) -> str:
    return line[:len(line) - len(line.lstrip())]
