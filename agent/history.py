"""
Context compaction for the agent loop.
Renders thread messages into Anthropic Messages API format and replaces
old or oversized tool outputs with short placeholders.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from agent.messages import (
    AssistantMessage,
    CheckpointMessage,
    InterruptedStreamingToolMessage,
    Message,
    ToolMessage,
    UserMessage,
    SUCCESS,
    TERMINAL_TOOL_TYPES,
)
from agent.ports import Compactor

logger = logging.getLogger(__name__)

PROTECT_TOKENS = 20000
MINIMUM_TOKENS = 15000
PROTECT_RECENT_TURNS = 3
PROTECTED_TOOLS: List[str] = []
LARGE_OUTPUT_THRESHOLD = 50000


def estimate_tokens(text: str) -> int:
    """Token estimate: ~4 chars per token."""
    return max(1, len(text) // 4) if text else 0


def _render_selections(msg: UserMessage) -> str:
    if not msg.selections:
        return msg.content
    parts = [msg.content, "", "SELECTIONS"]
    for sel in msg.selections:
        path = sel.get("path") or sel.get("uri") or "?"
        kind = sel.get("type", "File")
        text = sel.get("text")
        if text:
            parts.append(f"{kind} {path}:\n```\n{text}\n```")
        else:
            parts.append(f"{kind} {path}")
    return "\n".join(parts)


class ContextCompactor(Compactor):
    """Keeps the rendered conversation inside the model's context window.

    Tool outputs older than the protected recent turns are pruned once the
    unprotected total passes PROTECT_TOKENS and the saving is at least
    MINIMUM_TOKENS. Outputs above LARGE_OUTPUT_THRESHOLD chars are pruned as
    soon as they leave the protected turns. ``prune_all`` is the aggressive
    path taken after a context-length error.
    """

    def __init__(self):
        self.pruned_tool_ids: Set[str] = set()

    # ------------------------------------------------------------------
    # Pruning
    # ------------------------------------------------------------------

    def prune_tool_outputs(self, messages: List[Message]) -> int:
        turns = 0
        protected_tokens = 0
        candidates: List[Tuple[str, int]] = []
        newly = 0

        for msg in reversed(messages):
            if isinstance(msg, UserMessage):
                turns += 1
                continue
            if not isinstance(msg, ToolMessage) or msg.type not in TERMINAL_TOOL_TYPES:
                continue
            if turns < PROTECT_RECENT_TURNS or msg.name in PROTECTED_TOOLS:
                continue
            if not msg.id or msg.id in self.pruned_tool_ids:
                continue
            if len(msg.content) > LARGE_OUTPUT_THRESHOLD:
                self.pruned_tool_ids.add(msg.id)
                newly += 1
                continue
            tokens = estimate_tokens(msg.content)
            if protected_tokens < PROTECT_TOKENS:
                protected_tokens += tokens
                continue
            candidates.append((msg.id, tokens))

        if sum(t for _, t in candidates) >= MINIMUM_TOKENS:
            for tool_id, _ in candidates:
                self.pruned_tool_ids.add(tool_id)
            newly += len(candidates)
        if newly:
            logger.info(f"Pruned {newly} tool outputs ({len(self.pruned_tool_ids)} total)")
        return newly

    def prune_all(self, tool_ids: List[str]) -> int:
        before = len(self.pruned_tool_ids)
        self.pruned_tool_ids.update(t for t in tool_ids if t)
        added = len(self.pruned_tool_ids) - before
        logger.warning(f"Aggressive prune: {added} more tool outputs elided")
        return added

    @staticmethod
    def placeholder(tool_name: str, content: str, path: Optional[str] = None) -> str:
        if tool_name == "read_file":
            lines = content.count("\n") + 1
            first = path or (content.split("\n", 1)[0] if content else "")
            return (
                f"[Previously read: {first} ({lines} lines) - content pruned. "
                "Use read_file to re-read if needed.]"
            )
        if tool_name == "run_command":
            return "[Previous command output pruned.]"
        if tool_name == "ls_dir":
            return "[Previous directory listing pruned. Use ls_dir to re-list if needed.]"
        if tool_name in ("edit_file", "rewrite_file", "write_file"):
            return "[Previous edit result - change was applied successfully.]"
        return f"[{tool_name} output pruned to save context space.]"

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _tool_result_text(self, msg: ToolMessage) -> str:
        if msg.id in self.pruned_tool_ids:
            return self.placeholder(msg.name, msg.content, msg.path)
        return msg.content or "(no output)"

    def prepare_messages(
        self, messages: List[Message], system_prompt: str
    ) -> Tuple[List[Dict[str, Any]], str]:
        """Anthropic-format messages for ``messages``, alternating user/assistant."""
        self.prune_tool_outputs(messages)
        out: List[Dict[str, Any]] = []

        def _append(role: str, blocks: List[Dict[str, Any]]):
            if not blocks:
                return
            if out and out[-1]["role"] == role:
                out[-1]["content"].extend(blocks)
            else:
                out.append({"role": role, "content": list(blocks)})

        for msg in messages:
            if isinstance(msg, UserMessage):
                text = _render_selections(msg)
                if text.strip():
                    _append("user", [{"type": "text", "text": text}])
            elif isinstance(msg, AssistantMessage):
                blocks: List[Dict[str, Any]] = []
                for block in msg.anthropic_reasoning or []:
                    if block.get("type") in ("thinking", "redacted_thinking"):
                        blocks.append(dict(block))
                if msg.display_content.strip():
                    blocks.append({"type": "text", "text": msg.display_content})
                _append("assistant", blocks)
            elif isinstance(msg, ToolMessage):
                if msg.type not in TERMINAL_TOOL_TYPES or not msg.id:
                    continue
                _append("assistant", [{
                    "type": "tool_use",
                    "id": msg.id,
                    "name": msg.name,
                    "input": msg.raw_params or {},
                }])
                result = {
                    "type": "tool_result",
                    "tool_use_id": msg.id,
                    "content": self._tool_result_text(msg),
                }
                if msg.type != SUCCESS:
                    result["is_error"] = True
                _append("user", [result])
            elif isinstance(msg, (CheckpointMessage, InterruptedStreamingToolMessage)):
                continue

        # Conversations must open with a user turn
        while out and out[0]["role"] != "user":
            out.pop(0)
        return out, system_prompt

    def estimate(self, prepared: List[Dict[str, Any]], system_prompt: str = "") -> int:
        total = estimate_tokens(system_prompt)
        for m in prepared:
            total += 5 + estimate_tokens(json.dumps(m["content"]))
        return total
