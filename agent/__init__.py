"""
Agent package - the agent loop and its collaborators.

- messages: thread, message and snapshot data model
- stream_state: per-thread stream state sum type
- events: signals, notifications and the observer registry
- publisher: coalescing stream-state publisher
- retry: error classification, backoff and rate-limit cooldowns
- ports: collaborator interfaces (transport, files, settings, tools, compaction)
- history: context compaction and message preparation
- prompts: system prompt composition
- checkpoints: checkpoint and snapshot manager
- gateway: tool invocation gateway
- controller: agent loop controller and thread collection
- transport: Bedrock adapter for the model transport
- file_service: in-memory buffers over the backend
"""

from .events import AgentEvent, Notification, EventEmitter
from .messages import (
    Thread,
    UserMessage,
    AssistantMessage,
    ToolMessage,
    CheckpointMessage,
    InterruptedStreamingToolMessage,
    Snapshot,
)
from .stream_state import Idle, RunningModel, RunningTool, AwaitingApproval, Errored

__all__ = [
    "AgentEvent",
    "Notification",
    "EventEmitter",
    "Thread",
    "UserMessage",
    "AssistantMessage",
    "ToolMessage",
    "CheckpointMessage",
    "InterruptedStreamingToolMessage",
    "Snapshot",
    "Idle",
    "RunningModel",
    "RunningTool",
    "AwaitingApproval",
    "Errored",
]
