"""Tests for search/replace block parsing."""

from tools.diff_blocks import EditBlock, extract_blocks, format_blocks, format_error_hint, ORIGINAL_MARKER


def test_canonical_block():
    payload = "<<<<<<< ORIGINAL\nold\n=======\nnew\n>>>>>>> UPDATED"
    assert extract_blocks(payload) == [EditBlock("old", "new")]


def test_multiple_blocks_keep_order():
    payload = (
        "<<<<<<< ORIGINAL\na\n=======\nA\n>>>>>>> UPDATED\n\n"
        "<<<<<<< ORIGINAL\nb\n=======\nB\n>>>>>>> UPDATED"
    )
    assert extract_blocks(payload) == [EditBlock("a", "A"), EditBlock("b", "B")]


def test_search_replace_keywords_are_normalized():
    payload = "<<<<<<< SEARCH\nx = 1\n=======\nx = 2\n>>>>>>> REPLACE"
    assert extract_blocks(payload) == [EditBlock("x = 1", "x = 2")]


def test_code_fence_wrapper_is_ignored():
    payload = "```diff\n<<<<<<<< SEARCH\nfoo()\n=======\nbar()\n>>>>>>>> REPLACE\n```"
    assert extract_blocks(payload) == [EditBlock("foo()", "bar()")]


def test_equality_operator_is_not_a_divider():
    payload = "<<<<<<< ORIGINAL\nif a == b:\n=======\nif a != b:\n>>>>>>> UPDATED"
    assert extract_blocks(payload) == [EditBlock("if a == b:", "if a != b:")]


def test_lone_divider_without_opening_marker():
    payload = "old line\n=======\nnew line\n>>>>>>> UPDATED"
    assert extract_blocks(payload) == [EditBlock("old line", "new line")]


def test_json_payload():
    blocks = extract_blocks([{"search": "x = 1", "replace": "x = 2"}])
    assert blocks == [EditBlock("x = 1", "x = 2")]


def test_json_payload_alternate_keys():
    blocks = extract_blocks({"old": "before text", "new": "after text"})
    assert blocks == [EditBlock("before text", "after text")]


def test_unparseable_payloads_yield_nothing():
    assert extract_blocks(None) == []
    assert extract_blocks("nope") == []
    assert extract_blocks("this is just a sentence with no markers") == []


def test_format_blocks_is_parseable():
    blocks = [EditBlock("one", "two"), EditBlock("three", "four")]
    assert extract_blocks(format_blocks(blocks)) == blocks


def test_error_hint_shows_expected_format():
    hint = format_error_hint("garbage payload")
    assert "garbage payload" in hint
    assert ORIGINAL_MARKER in hint
