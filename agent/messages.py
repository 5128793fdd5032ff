"""
Thread data model: messages, snapshots and the thread itself.

Messages are plain dataclasses tagged by ``role``. Everything here
round-trips through ``to_dict`` / ``*_from_dict`` so threads can be
persisted as JSON by the thread store.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Union

# Tool lifecycle tags
TOOL_REQUEST = "tool_request"
RUNNING_NOW = "running_now"
SUCCESS = "success"
TOOL_ERROR = "tool_error"
REJECTED = "rejected"
INVALID_PARAMS = "invalid_params"

TERMINAL_TOOL_TYPES = frozenset({SUCCESS, TOOL_ERROR, REJECTED, INVALID_PARAMS})


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Snapshot:
    """Exact text of a file at a point in time plus its diff decorations.

    ``existed`` is False for the placeholder recorded when a file was first
    touched by a tool before it existed on disk.
    """
    file_text: str
    diff_area_metadata: Dict[str, Any] = field(default_factory=dict)
    existed: bool = True

    @classmethod
    def missing(cls) -> "Snapshot":
        return cls(file_text="", existed=False)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Snapshot":
        return cls(
            file_text=d.get("file_text", ""),
            diff_area_metadata=dict(d.get("diff_area_metadata") or {}),
            existed=d.get("existed", True),
        )


@dataclass
class UserMessage:
    content: str
    display_content: str = ""
    selections: List[Dict[str, Any]] = field(default_factory=list)
    images: List[Dict[str, Any]] = field(default_factory=list)
    is_being_edited: bool = False
    # Continuation prompts generated by the app rather than typed by a human
    auto_generated: bool = False
    role: str = field(default="user", init=False)

    def __post_init__(self):
        if not self.display_content:
            self.display_content = self.content

    @property
    def is_genuine(self) -> bool:
        return bool(self.content.strip()) and not self.auto_generated


@dataclass
class AssistantMessage:
    display_content: str = ""
    reasoning: str = ""
    anthropic_reasoning: Optional[List[Dict[str, Any]]] = None
    role: str = field(default="assistant", init=False)


@dataclass
class ToolMessage:
    type: str
    name: str
    id: str
    content: str = ""
    params: Optional[Dict[str, Any]] = None
    raw_params: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    mcp_server_name: Optional[str] = None
    role: str = field(default="tool", init=False)

    @property
    def path(self) -> Optional[str]:
        if not self.params:
            return None
        return self.params.get("path")


@dataclass
class CheckpointMessage:
    snapshot_by_path: Dict[str, Snapshot] = field(default_factory=dict)
    # Out-of-band edits captured while the user stood on this checkpoint
    user_modifications: Dict[str, Snapshot] = field(default_factory=dict)
    type: str = "user_edit"
    role: str = field(default="checkpoint", init=False)

    def snapshot_for(self, path: str, include_user_modifications: bool = False) -> Optional[Snapshot]:
        if include_user_modifications and path in self.user_modifications:
            return self.user_modifications[path]
        return self.snapshot_by_path.get(path)


@dataclass
class InterruptedStreamingToolMessage:
    name: str
    mcp_server_name: Optional[str] = None
    role: str = field(default="interrupted_streaming_tool", init=False)


Message = Union[
    UserMessage,
    AssistantMessage,
    ToolMessage,
    CheckpointMessage,
    InterruptedStreamingToolMessage,
]


def message_to_dict(msg: Message) -> Dict[str, Any]:
    return asdict(msg)


def message_from_dict(d: Dict[str, Any]) -> Message:
    role = d.get("role")
    if role == "user":
        return UserMessage(
            content=d.get("content", ""),
            display_content=d.get("display_content", ""),
            selections=list(d.get("selections") or []),
            images=list(d.get("images") or []),
            is_being_edited=d.get("is_being_edited", False),
            auto_generated=d.get("auto_generated", False),
        )
    if role == "assistant":
        return AssistantMessage(
            display_content=d.get("display_content", ""),
            reasoning=d.get("reasoning", ""),
            anthropic_reasoning=d.get("anthropic_reasoning"),
        )
    if role == "tool":
        return ToolMessage(
            type=d["type"],
            name=d["name"],
            id=d.get("id", ""),
            content=d.get("content", ""),
            params=d.get("params"),
            raw_params=dict(d.get("raw_params") or {}),
            result=d.get("result"),
            mcp_server_name=d.get("mcp_server_name"),
        )
    if role == "checkpoint":
        return CheckpointMessage(
            snapshot_by_path={p: Snapshot.from_dict(s) for p, s in (d.get("snapshot_by_path") or {}).items()},
            user_modifications={p: Snapshot.from_dict(s) for p, s in (d.get("user_modifications") or {}).items()},
            type=d.get("type", "user_edit"),
        )
    if role == "interrupted_streaming_tool":
        return InterruptedStreamingToolMessage(name=d.get("name", ""), mcp_server_name=d.get("mcp_server_name"))
    raise ValueError(f"Unknown message role: {role!r}")


# ------------------------------------------------------------------
# Thread
# ------------------------------------------------------------------

@dataclass
class ThreadState:
    """Transient per-thread UI state (persisted with the thread)."""
    curr_checkpoint_idx: Optional[int] = None
    staging_selections: List[Dict[str, Any]] = field(default_factory=list)
    focused_message_idx: Optional[int] = None
    links_of_message_idx: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class Thread:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=now_iso)
    last_modified: str = field(default_factory=now_iso)
    messages: List[Message] = field(default_factory=list)
    files_with_user_changes: Set[str] = field(default_factory=set)
    state: ThreadState = field(default_factory=ThreadState)

    def last_checkpoint_idx(self) -> Optional[int]:
        for i in range(len(self.messages) - 1, -1, -1):
            if isinstance(self.messages[i], CheckpointMessage):
                return i
        return None

    def first_checkpoint_idx(self) -> Optional[int]:
        for i, m in enumerate(self.messages):
            if isinstance(m, CheckpointMessage):
                return i
        return None

    def checkpoint_at_or_before(self, message_idx: int) -> Optional[int]:
        for i in range(min(message_idx, len(self.messages) - 1), -1, -1):
            if isinstance(self.messages[i], CheckpointMessage):
                return i
        return None

    def last_user_message(self) -> Optional[UserMessage]:
        for m in reversed(self.messages):
            if isinstance(m, UserMessage):
                return m
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "last_modified": self.last_modified,
            "messages": [message_to_dict(m) for m in self.messages],
            "files_with_user_changes": sorted(self.files_with_user_changes),
            "state": asdict(self.state),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Thread":
        st = d.get("state") or {}
        return cls(
            id=d["id"],
            created_at=d.get("created_at", ""),
            last_modified=d.get("last_modified", ""),
            messages=[message_from_dict(m) for m in d.get("messages", [])],
            files_with_user_changes=set(d.get("files_with_user_changes") or []),
            state=ThreadState(
                curr_checkpoint_idx=st.get("curr_checkpoint_idx"),
                staging_selections=list(st.get("staging_selections") or []),
                focused_message_idx=st.get("focused_message_idx"),
                links_of_message_idx=dict(st.get("links_of_message_idx") or {}),
            ),
        )
