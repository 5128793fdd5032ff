"""Shared fakes and fixtures for the Threadloop tests."""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from agent.controller import AgentLoopController
from agent.file_service import BufferedFileService
from agent.history import ContextCompactor
from agent.ports import (
    ModelOutput,
    ModelTransport,
    Notifier,
    Settings,
    TransportHandle,
    TurnContext,
)
from agent.stream_state import RawToolCall
from backend import LocalBackend
from config import LoopConfig
from thread_store import MemoryStorage, ThreadStore
from tools.dispatch import BuiltinToolExecutor


# ============================================================
# Scripted model transport
# ============================================================

def final(text: str = "", tool: Optional[Tuple[str, str, Dict[str, Any]]] = None,
          reasoning: str = "") -> Tuple[str, ModelOutput]:
    """A turn that completes with ``text`` and, optionally, one tool call (name, id, params)."""
    tool_call = None
    if tool is not None:
        name, tool_id, params = tool
        tool_call = RawToolCall(name=name, id=tool_id, raw_params=dict(params), is_done=True)
    return "final", ModelOutput(text=text, reasoning=reasoning, tool_call=tool_call)


def error(exc: BaseException) -> Tuple[str, BaseException]:
    return "error", exc


def hang(partial_text: str = "", tool_name: Optional[str] = None) -> Tuple[str, ModelOutput]:
    """A turn that streams ``partial_text`` (and the start of a tool call) then waits to be cancelled."""
    tool_call = RawToolCall(name=tool_name, id="streaming-tool") if tool_name else None
    return "hang", ModelOutput(text=partial_text, tool_call=tool_call)


def dropped(partial_text: str = "", tool: Optional[Tuple[str, str, Dict[str, Any]]] = None) -> Tuple[str, ModelOutput]:
    """A turn the transport itself aborts after streaming ``partial_text`` and a parsed tool call."""
    _, output = final(partial_text, tool)
    return "abort", output


class FakeHandle(TransportHandle):

    def __init__(self, loop: asyncio.AbstractEventLoop, on_abort):
        self._loop = loop
        self._on_abort = on_abort
        self.finished = False
        self.cancelled = False

    def deliver(self, callback, *args) -> None:
        if self.finished:
            return
        self.finished = True
        callback(*args)

    def cancel(self) -> None:
        self.cancelled = True
        if self.finished:
            return
        self.finished = True
        self._loop.call_soon(self._on_abort)


class FakeTransport(ModelTransport):
    """Plays back scripted turns; an exhausted script answers ``done``."""

    def __init__(self, steps=()):
        self.steps: List[Tuple[str, Any]] = list(steps)
        self.sent: List[List[Dict[str, Any]]] = []
        self.systems: List[str] = []
        self.handles: List[FakeHandle] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    def script(self, *steps) -> None:
        self.steps.extend(steps)

    def send(self, messages, system, ctx, tools,
             on_text, on_final_message, on_error, on_abort) -> Optional[TransportHandle]:
        self.sent.append(messages)
        self.systems.append(system)
        kind, payload = self.steps.pop(0) if self.steps else final("done")
        if kind == "no_handle":
            return None

        loop = asyncio.get_running_loop()
        handle = FakeHandle(loop, on_abort)
        self.handles.append(handle)
        if kind == "final":
            if payload.text:
                loop.call_soon(on_text, payload)
            loop.call_soon(handle.deliver, on_final_message, payload)
        elif kind == "error":
            loop.call_soon(handle.deliver, on_error, payload, ModelOutput())
        elif kind == "abort":
            loop.call_soon(on_text, payload)
            loop.call_soon(handle.deliver, on_abort)
        elif kind == "hang":
            if payload.text or payload.tool_call:
                loop.call_soon(on_text, payload)
        return handle


class CollectingNotifier(Notifier):

    def __init__(self):
        self.items = []

    def notify(self, notification) -> None:
        self.items.append(notification)

    def messages(self, severity: Optional[str] = None) -> List[str]:
        return [n.message for n in self.items if severity is None or n.severity == severity]


class FakeSettings(Settings):

    def __init__(self, auto_approve: Optional[Dict[str, bool]] = None, chat_mode: str = "agent"):
        self.auto_approve = dict(auto_approve or {})
        self.chat_mode = chat_mode

    def turn_context(self) -> TurnContext:
        return TurnContext(
            model_id="test-model",
            max_tokens=1024,
            temperature=None,
            enable_thinking=False,
            thinking_budget=0,
            chat_mode=self.chat_mode,
            auto_approve=dict(self.auto_approve),
        )


def fast_loop_config(**overrides) -> LoopConfig:
    values = dict(
        chat_retries=5,
        base_retry_delay_ms=1,
        retry_multiplier=1.5,
        max_retry_delay_ms=5,
        context_retries=2,
        rate_limit_base_backoff_ms=1,
        rate_limit_max_backoff_ms=5,
        stream_state_throttle_ms=0,
        persist_debounce_ms=1,
        command_timeout_s=10,
    )
    values.update(overrides)
    return LoopConfig(**values)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def files(workspace):
    return BufferedFileService(LocalBackend(str(workspace)))


@pytest.fixture
def make_controller(workspace):
    """Build a controller over ``workspace`` with a scripted transport and in-memory storage."""

    def _make(steps=(), auto_approve=None, storage=None, chat_mode="agent", **cfg_overrides):
        backend = LocalBackend(str(workspace))
        file_service = BufferedFileService(backend)
        cfg = fast_loop_config(**cfg_overrides)
        store = ThreadStore(storage if storage is not None else MemoryStorage(),
                            debounce_ms=cfg.persist_debounce_ms)
        ctrl = AgentLoopController(
            transport=FakeTransport(steps),
            executor=BuiltinToolExecutor(file_service, backend),
            files=file_service,
            compactor=ContextCompactor(),
            settings=FakeSettings(auto_approve, chat_mode),
            notifier=CollectingNotifier(),
            store=store,
            cfg=cfg,
            working_directory=str(workspace),
        )
        file_service.on_user_edit(ctrl.on_user_edit)
        ctrl.load()
        return ctrl

    return _make
