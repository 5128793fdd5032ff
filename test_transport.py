"""Tests for the Bedrock transport adapter."""

import asyncio
import threading

import pytest

from bedrock_service import BedrockError
from agent.transport import BedrockTransport, StreamAccumulator
from conftest import FakeSettings


def _feed(acc, *chunks):
    return [acc.feed(c) for c in chunks]


def test_accumulator_collects_text_reasoning_and_tool():
    acc = StreamAccumulator()
    changed = _feed(
        acc,
        {"type": "thinking_start"},
        {"type": "thinking", "content": "let me "},
        {"type": "thinking", "content": "think"},
        {"type": "thinking_end", "signature": "sig-1"},
        {"type": "text", "content": "Writing "},
        {"type": "text", "content": "now."},
        {"type": "tool_use_start", "data": {"name": "write_file", "id": "tu-1"}},
        {"type": "tool_use_delta", "content": '{"path": "a.txt", '},
        {"type": "tool_use_delta", "content": '"content": "hi"}'},
        {"type": "tool_use_end"},
    )
    assert changed == [False, True, True, False, True, True, True, True, True, True]

    out = acc.output()
    assert out.text == "Writing now."
    assert out.reasoning == "let me think"
    assert out.anthropic_reasoning == [{"type": "thinking", "thinking": "let me think", "signature": "sig-1"}]
    assert out.tool_call.name == "write_file"
    assert out.tool_call.id == "tu-1"
    assert out.tool_call.raw_params == {"path": "a.txt", "content": "hi"}
    assert out.tool_call.is_done


def test_accumulator_keeps_only_first_tool_call():
    acc = StreamAccumulator()
    _feed(
        acc,
        {"type": "tool_use_start", "data": {"name": "read_file", "id": "1"}},
        {"type": "tool_use_delta", "content": '{"path": "a"}'},
        {"type": "tool_use_end"},
        {"type": "tool_use_start", "data": {"name": "ls_dir", "id": "2"}},
        {"type": "tool_use_delta", "content": '{"path": "b"}'},
        {"type": "tool_use_end"},
    )
    out = acc.output()
    assert out.tool_call.name == "read_file"
    assert out.tool_call.raw_params == {"path": "a"}


def test_accumulator_tolerates_incomplete_tool_json():
    acc = StreamAccumulator()
    _feed(
        acc,
        {"type": "tool_use_start", "data": {"name": "edit_file", "id": "1"}},
        {"type": "tool_use_delta", "content": '{"path": "a'},
    )
    out = acc.output()
    assert out.tool_call.raw_params == {}
    assert not out.tool_call.is_done


def test_accumulator_keeps_redacted_thinking():
    acc = StreamAccumulator()
    acc.feed({"type": "redacted_thinking", "data": "opaque"})
    assert acc.output().anthropic_reasoning == [{"type": "redacted_thinking", "data": "opaque"}]
    assert StreamAccumulator().output().anthropic_reasoning is None


# ============================================================
# BedrockTransport over a scripted service
# ============================================================

class ScriptedService:

    def __init__(self, chunks, fail_with=None, release=None):
        self.chunks = chunks
        self.fail_with = fail_with
        self.release = release
        self.calls = []
        self.closed = threading.Event()

    def generate_response_stream(self, messages, system_prompt, model_id, config, tools=None):
        self.calls.append({"model_id": model_id, "max_tokens": config.max_tokens, "tools": tools})
        try:
            for chunk in self.chunks:
                yield chunk
            if self.release is not None:
                self.release.wait(5)
                yield {"type": "text", "content": " (late)"}
            if self.fail_with is not None:
                raise self.fail_with
        finally:
            self.closed.set()


class Callbacks:

    def __init__(self):
        self.texts = []
        self.done = asyncio.get_running_loop().create_future()

    def kwargs(self):
        return dict(
            on_text=self.texts.append,
            on_final_message=lambda out: self.done.set_result(("final", out)),
            on_error=lambda exc, out: self.done.set_result(("error", exc, out)),
            on_abort=lambda: self.done.set_result(("abort",)),
        )


def _send(transport, callbacks):
    return transport.send([{"role": "user", "content": "hi"}], "system", FakeSettings().turn_context(),
                          [], **callbacks.kwargs())


@pytest.mark.asyncio
async def test_stream_completes_with_final_message():
    service = ScriptedService([{"type": "text", "content": "Hello"}, {"type": "text", "content": " there"}])
    cb = Callbacks()
    handle = _send(BedrockTransport(service), cb)
    assert handle is not None

    kind, out = await asyncio.wait_for(cb.done, timeout=5)
    assert kind == "final"
    assert out.text == "Hello there"
    assert [t.text for t in cb.texts] == ["Hello", "Hello there"]
    assert service.calls[0] == {"model_id": "test-model", "max_tokens": 1024, "tools": None}


@pytest.mark.asyncio
async def test_stream_error_keeps_partial_output():
    service = ScriptedService([{"type": "text", "content": "Half"}],
                              fail_with=BedrockError("Rate exceeded", error_code="throttlingException"))
    cb = Callbacks()
    _send(BedrockTransport(service), cb)

    kind, exc, out = await asyncio.wait_for(cb.done, timeout=5)
    assert kind == "error"
    assert exc.error_code == "throttlingException"
    assert out.text == "Half"


@pytest.mark.asyncio
async def test_cancel_reports_abort_once_and_stops_the_stream():
    release = threading.Event()
    service = ScriptedService([{"type": "text", "content": "Start"}], release=release)
    cb = Callbacks()
    handle = _send(BedrockTransport(service), cb)

    handle.cancel()
    handle.cancel()
    release.set()
    assert await asyncio.wait_for(cb.done, timeout=5) == ("abort",)

    await asyncio.get_running_loop().run_in_executor(None, service.closed.wait, 5)
    assert service.closed.is_set()
    await asyncio.sleep(0.01)
    assert all(" (late)" not in t.text for t in cb.texts)


def test_send_outside_event_loop_returns_none():
    transport = BedrockTransport(ScriptedService([]))
    handle = transport.send([], "system", FakeSettings().turn_context(), [],
                            on_text=lambda out: None, on_final_message=lambda out: None,
                            on_error=lambda exc, out: None, on_abort=lambda: None)
    assert handle is None
