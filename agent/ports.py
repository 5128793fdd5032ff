"""
Collaborator interfaces used by the agent loop.

The controller, checkpoint manager and tool gateway receive concrete
implementations through their constructors; nothing here is looked up
globally.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import app_config, model_config
from agent.events import Notification
from agent.messages import Message, Snapshot
from agent.stream_state import RawToolCall
from tools._common import ToolResult


# ============================================================
# Model transport
# ============================================================

@dataclass
class ModelOutput:
    """Text, reasoning and tool call accumulated from one streamed turn."""
    text: str = ""
    reasoning: str = ""
    anthropic_reasoning: Optional[List[Dict[str, Any]]] = None
    tool_call: Optional[RawToolCall] = None


class TransportHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        """Stop the stream. ``on_abort`` fires once the transport has wound down."""


class ModelTransport(ABC):
    """Streams one model completion and reports through callbacks."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Key used for the provider's rate-limit cooldown."""

    @abstractmethod
    def send(
        self,
        messages: List[Dict[str, Any]],
        system: str,
        ctx: "TurnContext",
        tools: List[Dict[str, Any]],
        on_text: Callable[[ModelOutput], None],
        on_final_message: Callable[[ModelOutput], None],
        on_error: Callable[[BaseException, ModelOutput], None],
        on_abort: Callable[[], None],
    ) -> Optional[TransportHandle]:
        """Start a turn. Returns None when the request could not be issued."""


# ============================================================
# Settings
# ============================================================

@dataclass(frozen=True)
class TurnContext:
    """Settings captured once at turn start and held for the whole run."""
    model_id: str
    max_tokens: int
    temperature: Optional[float]
    enable_thinking: bool
    thinking_budget: int
    chat_mode: str = "agent"
    auto_approve: Dict[str, bool] = field(default_factory=dict)

    def is_auto_approved(self, approval_type: Optional[str]) -> bool:
        return bool(approval_type and self.auto_approve.get(approval_type))


class Settings(ABC):
    @abstractmethod
    def turn_context(self) -> TurnContext:
        """Snapshot of the current settings."""


class EnvSettings(Settings):
    """Settings backed by the dotenv-loaded config singletons."""

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        self.overrides: Dict[str, Any] = dict(overrides or {})

    def turn_context(self) -> TurnContext:
        values = {
            "model_id": model_config.model_id,
            "max_tokens": model_config.max_tokens,
            "temperature": model_config.temperature,
            "enable_thinking": model_config.enable_thinking,
            "thinking_budget": model_config.thinking_budget,
            "chat_mode": app_config.chat_mode,
            "auto_approve": dict(app_config.auto_approve()),
        }
        values.update(self.overrides)
        return TurnContext(**values)


# ============================================================
# Files, notifications, tools, compaction
# ============================================================

class FileService(ABC):
    """Live text buffers over the workspace.

    Reads and writes go to an in-memory buffer; ``save`` persists it.
    ``begin_edit``/``end_edit`` bracket every mutation so that a second
    writer can be refused while one is in progress.
    """

    @abstractmethod
    def read_text(self, path: str) -> Optional[str]:
        """Buffer content, falling back to disk. None when the file does not exist."""

    @abstractmethod
    def read_disk(self, path: str) -> Optional[str]:
        """On-disk content, ignoring buffers. None when the file does not exist."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def set_text(self, path: str, text: str) -> None:
        ...

    @abstractmethod
    def snapshot(self, path: str) -> Optional[Snapshot]:
        """Live snapshot of a file, None when it does not exist."""

    @abstractmethod
    def restore(self, path: str, snapshot: Snapshot) -> None:
        """Replace the buffer with a snapshot's text and decorations."""

    @abstractmethod
    async def save(self, path: str) -> None:
        """Persist the buffer for ``path``. Raises on failure."""

    @abstractmethod
    def begin_edit(self, path: str) -> bool:
        """Claim ``path`` for writing. False when another writer holds it."""

    @abstractmethod
    def end_edit(self, path: str) -> None:
        ...

    @abstractmethod
    def forget(self, path: str) -> None:
        """Drop any buffer for ``path`` (after deletion)."""

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Delete ``path`` from disk and drop its buffer. Raises on failure."""

    def normalize(self, path: str) -> str:
        return path


class Notifier(ABC):
    @abstractmethod
    def notify(self, notification: Notification) -> None:
        ...


class ToolExecutor(ABC):
    """validate -> execute -> stringify for every tool the model may call."""

    @abstractmethod
    def definitions(self) -> List[Dict[str, Any]]:
        """Tool schemas sent with every turn."""

    @abstractmethod
    def validate(self, name: str, raw_params: Dict[str, Any]) -> Dict[str, Any]:
        """Normalized params. Raises ``ToolValidationError``."""

    @abstractmethod
    def execute(
        self, name: str, params: Dict[str, Any]
    ) -> Tuple[Awaitable[ToolResult], Optional[Callable[[], None]]]:
        """Start the tool. Returns the pending result and an optional interrupt."""

    @abstractmethod
    def stringify(self, name: str, params: Dict[str, Any], result: ToolResult) -> str:
        ...

    @abstractmethod
    def approval_type(self, name: str) -> Optional[str]:
        """``edits``, ``terminal``, ``MCP tools`` or None for read-only tools."""

    def mutated_path(self, name: str, params: Dict[str, Any]) -> Optional[str]:
        """Path a mutating tool is about to change, None for the rest."""
        return None


class Compactor(ABC):
    """Renders thread messages for the provider, eliding pruned tool outputs."""

    @abstractmethod
    def prepare_messages(
        self, messages: List[Message], system_prompt: str
    ) -> Tuple[List[Dict[str, Any]], str]:
        ...

    @abstractmethod
    def prune_all(self, tool_ids: List[str]) -> int:
        """Mark every given tool output as pruned. Returns the number newly pruned."""
