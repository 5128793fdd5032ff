"""
Per-thread stream state.

Each variant carries only what is needed to render progress for that
phase. ``None`` stands for "cleared": no run in progress and nothing to
report. A thread's state is always replaced wholesale by the controller.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)


class Interrupter:
    """Cancellation handle whose target may be bound after it is requested.

    Calling it before a target is bound records the request; binding later
    fires the target immediately. Calling it never touches shared state by
    itself, the owner of the operation observes ``requested``.
    """

    def __init__(self, target: Optional[Callable[[], None]] = None):
        self._target = target
        self.requested = False

    def bind(self, target: Callable[[], None]) -> None:
        self._target = target
        if self.requested:
            target()

    def __call__(self) -> None:
        if self.requested:
            return
        self.requested = True
        if self._target is not None:
            try:
                self._target()
            except Exception as e:
                logger.warning(f"Interrupt target raised: {e}")


@dataclass(frozen=True)
class RawToolCall:
    name: str
    id: str
    raw_params: Dict[str, Any] = field(default_factory=dict)
    is_done: bool = False


@dataclass(frozen=True)
class LLMInfo:
    display_content_so_far: str = ""
    reasoning_so_far: str = ""
    tool_call_so_far: Optional[RawToolCall] = None


@dataclass(frozen=True)
class Idle:
    interrupt: Optional[Interrupter] = None


@dataclass(frozen=True)
class RunningModel:
    llm_info: LLMInfo
    interrupt: Interrupter


@dataclass(frozen=True)
class RunningTool:
    tool_name: str
    tool_params: Dict[str, Any]
    tool_id: str
    interrupt: Interrupter
    content: str = ""
    raw_params: Dict[str, Any] = field(default_factory=dict)
    mcp_server_name: Optional[str] = None


@dataclass(frozen=True)
class AwaitingApproval:
    pass


@dataclass(frozen=True)
class Errored:
    message: str
    full_error: Optional[BaseException] = None


StreamState = Union[Idle, RunningModel, RunningTool, AwaitingApproval, Errored, None]


def running_kind(state: StreamState) -> Optional[str]:
    """Short label for the running phase, None when nothing is running."""
    if isinstance(state, Idle):
        return "idle"
    if isinstance(state, RunningModel):
        return "LLM"
    if isinstance(state, RunningTool):
        return "tool"
    if isinstance(state, AwaitingApproval):
        return "awaiting_user"
    return None


def is_terminal(state: StreamState) -> bool:
    return state is None or isinstance(state, Errored)


def state_to_dict(state: StreamState) -> Dict[str, Any]:
    """JSON view for the web surface (cancellation handles are dropped)."""
    if state is None:
        return {"is_running": None}
    if isinstance(state, Errored):
        return {"is_running": None, "error": {"message": state.message}}
    out: Dict[str, Any] = {"is_running": running_kind(state)}
    if isinstance(state, RunningModel):
        tc = state.llm_info.tool_call_so_far
        out["llm_info"] = {
            "display_content_so_far": state.llm_info.display_content_so_far,
            "reasoning_so_far": state.llm_info.reasoning_so_far,
            "tool_call_so_far": (
                {"name": tc.name, "id": tc.id, "raw_params": tc.raw_params, "is_done": tc.is_done}
                if tc else None
            ),
        }
    elif isinstance(state, RunningTool):
        out["tool_info"] = {
            "tool_name": state.tool_name,
            "tool_params": state.tool_params,
            "id": state.tool_id,
            "content": state.content,
        }
    return out
