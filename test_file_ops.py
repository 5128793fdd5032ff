"""Tests for the file and terminal tools."""

import pytest

from tools._common import ToolValidationError
from tools.diff_blocks import EditBlock
from tools.external_ops import run_command, validate_run_command
from tools.file_ops import (
    CONCURRENT_EDIT_ERROR,
    EditApplyError,
    apply_edit_blocks,
    edit_file,
    read_file,
    validate_edit_file,
    validate_read_file,
    write_file,
)


# ============================================================
# apply_edit_blocks
# ============================================================

def test_direct_strategy_for_exact_blocks():
    assert apply_edit_blocks("a\nb\nc", [EditBlock("b", "B")]) == ("a\nB\nc", "direct")


def test_fuzzy_strategy_repairs_spacing():
    content = "function add(a,b){return a+b}\n"
    new, strategy = apply_edit_blocks(
        content, [EditBlock("function add(a, b) { return a + b }", "function add(a, b) { return a - b }")]
    )
    assert strategy == "fuzzy"
    assert new == "function add(a, b) { return a - b }\n"


def test_overlapping_blocks_fall_back_to_per_block():
    new, strategy = apply_edit_blocks("abcdef", [EditBlock("abc", "X"), EditBlock("cde", "Y")])
    assert strategy == "per_block"
    assert new == "Xdef"


def test_ambiguous_block_replaces_first_occurrence_as_last_resort():
    assert apply_edit_blocks("x\nx\n", [EditBlock("x", "y")]) == ("y\nx\n", "fallback")


def test_missing_block_raises_with_suggestion():
    with pytest.raises(EditApplyError) as exc:
        apply_edit_blocks("alpha\nbeta", [EditBlock("completely different text here", "z")])
    message = str(exc.value)
    assert message.startswith("Failed to apply edits:")
    assert "was not found" in message
    assert "read_file" in message


def test_empty_search_block_is_rejected():
    with pytest.raises(EditApplyError):
        apply_edit_blocks("a\nb", [EditBlock("", "x")])


def test_crlf_content_is_normalized():
    new, strategy = apply_edit_blocks("a\r\nb\r\n", [EditBlock("b", "c")])
    assert (new, strategy) == ("a\nc\n", "direct")


# ============================================================
# Validation
# ============================================================

def test_edit_file_requires_blocks():
    with pytest.raises(ToolValidationError, match="null or undefined"):
        validate_edit_file({"path": "a.txt"})
    with pytest.raises(ToolValidationError, match="MUST use the exact markers"):
        validate_edit_file({"path": "a.txt", "search_replace_blocks": "replace the thing please"})


def test_edit_file_params_carry_parsed_blocks():
    params = validate_edit_file({
        "path": "a.txt",
        "search_replace_blocks": "<<<<<<< ORIGINAL\nold\n=======\nnew\n>>>>>>> UPDATED",
    })
    assert params == {"path": "a.txt", "blocks": [EditBlock("old", "new")]}


def test_read_file_offset_is_one_based():
    with pytest.raises(ToolValidationError):
        validate_read_file({"path": "a.txt", "offset": 0})
    assert validate_read_file({"path": "a.txt", "offset": "3"})["offset"] == 3


def test_run_command_validation():
    with pytest.raises(ToolValidationError):
        validate_run_command({"command": "   "})
    with pytest.raises(ToolValidationError):
        validate_run_command({"command": "ls", "timeout": -1})
    assert validate_run_command({"command": "ls", "timeout": 7}) == {"command": "ls", "cwd": ".", "timeout": 7}


# ============================================================
# Tool execution
# ============================================================

@pytest.mark.asyncio
async def test_write_file_creates_and_saves(files, workspace):
    result = await write_file({"path": "new.txt", "content": "hi\n"}, files, files.backend)
    assert result.success
    assert result.output == "Created new.txt (+1 lines)"
    assert (workspace / "new.txt").read_text() == "hi\n"


@pytest.mark.asyncio
async def test_write_file_over_existing_reports_diff(files, workspace):
    (workspace / "a.txt").write_text("one\ntwo\n")
    result = await write_file({"path": "a.txt", "content": "one\nthree\n"}, files, files.backend)
    assert result.success
    assert result.output.startswith("Wrote a.txt (+1 -1)")
    assert "+three" in result.output


@pytest.mark.asyncio
async def test_edit_file_applies_blocks(files, workspace):
    (workspace / "f.ts").write_text("function add(a,b){return a+b}\n")
    params = {"path": "f.ts", "blocks": [EditBlock("function add(a, b) { return a + b }", "export const add = 1")]}
    result = await edit_file(params, files, files.backend)
    assert result.success, result.error
    assert (workspace / "f.ts").read_text() == "export const add = 1\n"
    assert not files.is_being_edited("f.ts")


@pytest.mark.asyncio
async def test_edit_file_on_missing_file(files):
    result = await edit_file({"path": "nope.txt", "blocks": [EditBlock("a", "b")]}, files, files.backend)
    assert not result.success
    assert "does not exist" in result.error


@pytest.mark.asyncio
async def test_edit_file_refuses_concurrent_writer(files, workspace):
    (workspace / "a.txt").write_text("a\n")
    assert files.begin_edit("a.txt")
    result = await edit_file({"path": "a.txt", "blocks": [EditBlock("a", "b")]}, files, files.backend)
    assert not result.success
    assert result.error == CONCURRENT_EDIT_ERROR
    assert (workspace / "a.txt").read_text() == "a\n"


@pytest.mark.asyncio
async def test_read_file_windows_output(files, workspace):
    (workspace / "lines.txt").write_text("\n".join(f"line {i}" for i in range(1, 11)))
    result = await read_file({"path": "lines.txt", "offset": 3, "limit": 2}, files, files.backend)
    assert result.success
    assert "(showing lines 3-4)" in result.output
    assert "[Use offset=5 to read more]" in result.output
    assert "     3|line 3" in result.output
    assert "line 5" not in result.output


@pytest.mark.asyncio
async def test_run_command_nonzero_exit_is_failure(files):
    result = await run_command({"command": "echo out; exit 3", "cwd": ".", "timeout": 10}, files, files.backend)
    assert not result.success
    assert result.error.startswith("Command exited with code 3")
    assert "out" in result.output
