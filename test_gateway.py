"""Tests for the tool invocation gateway."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from agent.checkpoints import CheckpointManager
from agent.gateway import AWAITING_PERMISSION, GatewayHost, PendingToolCall, ToolGateway
from agent.messages import (
    CheckpointMessage,
    Thread,
    ToolMessage,
    UserMessage,
    INVALID_PARAMS,
    RUNNING_NOW,
    SUCCESS,
    TOOL_ERROR,
    TOOL_REQUEST,
)
from agent.ports import ToolExecutor
from agent.stream_state import RunningTool
from conftest import CollectingNotifier, FakeSettings
from tools._common import ToolResult, ToolValidationError


class RecordingHost(GatewayHost):

    def __init__(self, thread: Thread):
        self.thread = thread
        self.states: List[Any] = []
        self.changes = 0

    def get_thread(self, thread_id):
        return self.thread if thread_id == self.thread.id else None

    def add_message(self, thread_id, message):
        self.thread.messages.append(message)

    def update_latest_tool(self, thread_id, message):
        last = self.thread.messages[-1] if self.thread.messages else None
        if isinstance(last, ToolMessage) and last.id == message.id and last.type != INVALID_PARAMS:
            self.thread.messages[-1] = message
        else:
            self.thread.messages.append(message)

    def set_stream_state(self, thread_id, state):
        self.states.append(state)

    def mark_changed(self, thread_id):
        self.changes += 1

    def tool_messages(self) -> List[ToolMessage]:
        return [m for m in self.thread.messages if isinstance(m, ToolMessage)]


class ScriptedExecutor(ToolExecutor):

    def __init__(self, approval: Optional[str] = None, result: Optional[ToolResult] = None,
                 raises: Optional[Exception] = None, stringify_fails: bool = False, hang: bool = False):
        self.approval = approval
        self.result = result or ToolResult(success=True, output="ok")
        self.raises = raises
        self.stringify_fails = stringify_fails
        self.hang = hang
        self.validated: List[Dict[str, Any]] = []

    def definitions(self):
        return []

    def validate(self, name, raw_params):
        if raw_params.get("bad"):
            raise ToolValidationError("Parameter 'bad' is not allowed.")
        self.validated.append(raw_params)
        return dict(raw_params)

    def execute(self, name, params):
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        if self.raises is not None:
            future.set_exception(self.raises)
        elif not self.hang:
            future.set_result(self.result)
        return future, future.cancel

    def stringify(self, name, params, result):
        if self.stringify_fails:
            raise ValueError("cannot render")
        return f"rendered: {result.output}"

    def approval_type(self, name):
        return self.approval

    def mutated_path(self, name, params):
        return params.get("path") if name == "write_file" else None


@pytest.fixture
def thread():
    return Thread(messages=[CheckpointMessage(), UserMessage("do it")])


def _gateway(executor, thread, files):
    host = RecordingHost(thread)
    checkpoints = CheckpointManager(files, CollectingNotifier())
    return ToolGateway(executor, checkpoints, host), host


def _call(name="read_file", **params) -> PendingToolCall:
    return PendingToolCall(name=name, id="call-1", raw_params=params)


@pytest.mark.asyncio
async def test_invalid_params_recorded_without_running(thread, files):
    gateway, host = _gateway(ScriptedExecutor(), thread, files)
    outcome = await gateway.run_tool_call(thread.id, _call(bad=True), FakeSettings().turn_context())

    assert not outcome.awaiting_user and not outcome.interrupted
    [msg] = host.tool_messages()
    assert msg.type == INVALID_PARAMS
    assert msg.content == "Parameter 'bad' is not allowed."
    assert msg.params is None
    assert host.states == []


@pytest.mark.asyncio
async def test_tool_needing_approval_waits_for_user(thread, files):
    gateway, host = _gateway(ScriptedExecutor(approval="edits"), thread, files)
    outcome = await gateway.run_tool_call(thread.id, _call("write_file", path="a.txt"),
                                          FakeSettings().turn_context())

    assert outcome.awaiting_user
    [msg] = host.tool_messages()
    assert msg.type == TOOL_REQUEST
    assert msg.content == AWAITING_PERMISSION
    assert msg.params == {"path": "a.txt"}
    assert host.states == []


@pytest.mark.asyncio
async def test_auto_approved_tool_runs_and_replaces_request(thread, files, workspace):
    (workspace / "a.txt").write_text("before")
    gateway, host = _gateway(ScriptedExecutor(approval="edits"), thread, files)
    ctx = FakeSettings({"edits": True}).turn_context()
    outcome = await gateway.run_tool_call(thread.id, _call("write_file", path="a.txt"), ctx)

    assert not outcome.awaiting_user
    [msg] = host.tool_messages()
    assert msg.type == SUCCESS
    assert msg.content == "rendered: ok"
    assert msg.result == {"success": True, "output": "ok", "error": None}
    assert isinstance(host.states[0], RunningTool)
    assert host.states[0].tool_name == "write_file"
    assert thread.messages[0].snapshot_by_path["a.txt"].file_text == "before"


@pytest.mark.asyncio
async def test_preapproved_call_skips_validation_and_approval(thread, files):
    executor = ScriptedExecutor(approval="terminal")
    gateway, host = _gateway(executor, thread, files)
    call = PendingToolCall(name="run_command", id="call-1", raw_params={"command": "ls"},
                           preapproved_params={"command": "ls", "cwd": ".", "timeout": 5})
    await gateway.run_tool_call(thread.id, call, FakeSettings().turn_context())

    assert executor.validated == []
    [msg] = host.tool_messages()
    assert msg.type == SUCCESS
    assert msg.params == {"command": "ls", "cwd": ".", "timeout": 5}


@pytest.mark.asyncio
async def test_failed_result_becomes_tool_error(thread, files):
    executor = ScriptedExecutor(result=ToolResult(success=False, output="", error="File not found: a.txt"))
    gateway, host = _gateway(executor, thread, files)
    await gateway.run_tool_call(thread.id, _call(path="a.txt"), FakeSettings().turn_context())

    [msg] = host.tool_messages()
    assert msg.type == TOOL_ERROR
    assert msg.content == "File not found: a.txt"


@pytest.mark.asyncio
async def test_raising_tool_becomes_tool_error(thread, files):
    gateway, host = _gateway(ScriptedExecutor(raises=RuntimeError("exploded")), thread, files)
    outcome = await gateway.run_tool_call(thread.id, _call(), FakeSettings().turn_context())

    assert not outcome.interrupted
    [msg] = host.tool_messages()
    assert msg.type == TOOL_ERROR
    assert msg.content == "exploded"


@pytest.mark.asyncio
async def test_stringify_failure_keeps_result(thread, files):
    gateway, host = _gateway(ScriptedExecutor(stringify_fails=True), thread, files)
    await gateway.run_tool_call(thread.id, _call(), FakeSettings().turn_context())

    [msg] = host.tool_messages()
    assert msg.type == TOOL_ERROR
    assert msg.content.startswith("Tool call succeeded, but there was an error stringifying the output.")
    assert "cannot render" in msg.content
    assert msg.result["success"] is True


@pytest.mark.asyncio
async def test_interrupt_stops_a_running_tool(thread, files):
    gateway, host = _gateway(ScriptedExecutor(hang=True), thread, files)
    task = asyncio.ensure_future(gateway.run_tool_call(thread.id, _call(), FakeSettings().turn_context()))
    while not host.states:
        await asyncio.sleep(0.001)

    running = host.states[-1]
    assert isinstance(running, RunningTool)
    assert host.tool_messages()[-1].type == RUNNING_NOW
    running.interrupt()

    outcome = await task
    assert outcome.interrupted
    # the abort path owns the terminal message
    assert host.tool_messages()[-1].type == RUNNING_NOW
