"""Tests for the fuzzy search-block matcher."""

from tools.diff_blocks import EditBlock
from tools.fuzzy_match import (
    find_best_match,
    fix_blocks,
    line_similarity,
    normalize_for_comparison,
    splice_preserving_indent,
)


def test_exact_match_reports_line_span():
    match = find_best_match("a\nb\nc", "b")
    assert match is not None
    assert (match.start_line, match.end_line) == (1, 2)
    assert match.similarity == 1.0
    assert match.strategy == "exact"


def test_blank_search_never_matches():
    assert find_best_match("a\nb", "   \n ") is None


def test_spacing_differences_resolved_by_whitespace_free_anchor():
    content = "function add(a,b){return a+b}\n"
    search = "function add(a, b) { return a + b }"
    match = find_best_match(content, search)
    assert match is not None
    assert match.strategy == "anchor_no_ws"
    assert match.matched_text == "function add(a,b){return a+b}"
    assert match.similarity == 1.0


def test_indentation_drift_found_by_anchor():
    content = "def f():\n    x = 1\n    return x\n"
    search = "def f():\n  x = 1\n  return x"
    match = find_best_match(content, search)
    assert match is not None
    assert match.strategy == "anchor"
    assert match.start_line == 0
    assert match.matched_text == "def f():\n    x = 1\n    return x"


def test_unrelated_search_returns_none():
    assert find_best_match("alpha\nbeta\ngamma", "zzz qqq") is None


def test_crlf_content_matches_lf_search():
    match = find_best_match("one\r\ntwo\r\nthree", "two\nthree")
    assert match is not None
    assert match.start_line == 1


def test_line_similarity_is_positional():
    assert line_similarity(["a", "b"], ["a", "c"]) == 0.5
    assert line_similarity([], []) == 1.0
    assert line_similarity(["  a"], ["a  "]) == 1.0


def test_normalize_for_comparison_strips_trailing_blanks():
    assert normalize_for_comparison("x  \r\ny\t\n") == "x\ny\n"


def test_fix_blocks_leaves_exact_hits_alone():
    fixed = fix_blocks([EditBlock("b", "B")], "a\nb\nc")
    assert fixed[0].search == "b"
    assert fixed[0].fixed is False


def test_fix_blocks_rewrites_to_file_text():
    content = "    if x:\n        y()\n"
    fixed = fix_blocks([EditBlock("if x:\n    y()", "if z:\n    y()")], content)
    assert fixed[0].fixed is True
    assert fixed[0].search == "    if x:\n        y()"
    assert fixed[0].replace == "if z:\n    y()"


def test_fix_blocks_keeps_unmatchable_block_unfixed():
    fixed = fix_blocks([EditBlock("nothing like it", "x")], "alpha\nbeta")
    assert fixed[0].fixed is False


def test_splice_preserving_indent_reindents_replacement():
    content = "class A:\n    def f(self):\n        return 1\n"
    result = splice_preserving_indent(
        content,
        "  def f(self):\n      return 1",
        "  def f(self):\n      return 2",
    )
    assert result == "class A:\n    def f(self):\n        return 2\n"


def test_splice_returns_none_without_match():
    assert splice_preserving_indent("a\nb", "c", "d") is None


def test_exact_hit_runs_no_window_search(monkeypatch):
    import tools.fuzzy_match as fm

    def _refuse(*args, **kwargs):
        raise AssertionError("window search should not run for an exact hit")

    monkeypatch.setattr(fm, "_WindowSearch", _refuse)
    match = fm.find_best_match("x = 1\ny = 2\nz = 3", "y = 2\nz = 3")
    assert match.strategy == "exact"
    assert match.start_line == 1


COMPUTE_FILE = (
    "def compute(values):\n"
    "    total = 0\n"
    "    for v in values:\n"
    "        total += v * 2\n"
    "    return total\n"
)
COMPUTE_SEARCH = (
    "def compute(values):\n"
    "    total = 0\n"
    "    for v in values:\n"
    "        total += v\n"
    "    return total"
)


def test_dual_anchor_accepts_what_single_anchors_reject():
    match = find_best_match(COMPUTE_FILE, COMPUTE_SEARCH)
    assert match is not None
    assert match.strategy == "dual_anchor"
    assert (match.start_line, match.end_line) == (0, 5)
    assert match.similarity == 0.8


def test_sliding_window_without_any_anchor():
    match = find_best_match("a\nb\nc\nd\ne", "x\nb\nc\nd\ne")
    assert match is not None
    assert match.strategy == "sliding_window"
    assert (match.start_line, match.end_line) == (0, 5)


def _filler(count, start=0):
    return [f"filler_{i} = {i}" for i in range(start, start + count)]


def _handler_block(changed):
    lines = ["def handler(event):"]
    lines += [f"    step_{k}(event)" for k in range(8)]
    lines.append("    return changed_result" if changed else "    return result")
    if changed:
        lines[4] = "    step_x(event)"
    return lines


def test_large_file_rejects_below_threshold_anchor_window():
    block = _handler_block(changed=False)
    content = "\n".join(_filler(1000) + block + _filler(1100, start=1000))
    search = "\n".join(_handler_block(changed=True))
    assert len(content.split("\n")) > 2000

    # 8 of 10 lines agree: under the anchor tiers' bars, and the file is
    # too large for the sliding window
    assert find_best_match(content, search) is None

    small = "\n".join(_filler(10) + block)
    match = find_best_match(small, search)
    assert match is not None
    assert match.strategy == "sliding_window"
    assert match.start_line == 10
    assert match.similarity == 0.8


def test_large_file_still_slides_short_searches():
    content = "\n".join(_filler(2100))
    search = "missing = 0\nfiller_1201 = 1201\nfiller_1202 = 1202\nfiller_1203 = 1203\nfiller_1204 = 1204"
    match = find_best_match(content, search)
    assert match is not None
    assert match.strategy == "sliding_window"
    assert match.start_line == 1200


def test_long_search_without_anchor_skipped_on_large_files():
    block = [f"    body_{k}()" for k in range(6)]
    search = "\n".join(["    not_in_file()"] + block[1:])
    assert find_best_match("\n".join(_filler(10) + block), search).strategy == "sliding_window"
    assert find_best_match("\n".join(_filler(2100) + block), search) is None
