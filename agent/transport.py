"""
Bedrock adapter for the model transport contract.

The boto3 stream is blocking, so it is consumed on a worker thread and every
update is handed back to the event loop with ``call_soon_threadsafe``.
"""

import asyncio
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from bedrock_service import BedrockService, GenerationConfig
from agent.ports import ModelOutput, ModelTransport, TransportHandle, TurnContext
from agent.stream_state import RawToolCall

logger = logging.getLogger(__name__)


class StreamAccumulator:
    """Folds chunk dicts from ``generate_response_stream`` into a ModelOutput."""

    def __init__(self):
        self.text = ""
        self.reasoning = ""
        self.blocks: List[Dict[str, Any]] = []
        self._thinking = ""
        self._tool: Optional[Dict[str, str]] = None
        self._tool_json: List[str] = []
        self._tool_done = False

    def feed(self, chunk: Dict[str, Any]) -> bool:
        """Apply one chunk. Returns True when the visible output changed."""
        ct = chunk.get("type", "")
        cc = chunk.get("content", "")

        if ct == "thinking_start":
            self._thinking = ""
        elif ct == "thinking":
            self._thinking += cc
            self.reasoning += cc
            return True
        elif ct == "thinking_end":
            block: Dict[str, Any] = {"type": "thinking", "thinking": self._thinking}
            if chunk.get("signature"):
                block["signature"] = chunk["signature"]
            self.blocks.append(block)
        elif ct == "redacted_thinking":
            self.blocks.append({"type": "redacted_thinking", "data": chunk.get("data", "")})
        elif ct == "text":
            self.text += cc
            return True
        elif ct == "tool_use_start":
            # One tool call per turn; later ones are ignored
            if self._tool is None:
                self._tool = dict(chunk.get("data") or {})
                return True
        elif ct == "tool_use_delta":
            if self._tool is not None and not self._tool_done:
                self._tool_json.append(cc)
                return True
        elif ct == "tool_use_end":
            if self._tool is not None and not self._tool_done:
                self._tool_done = True
                return True
        return False

    def _raw_params(self) -> Dict[str, Any]:
        raw = "".join(self._tool_json)
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def output(self) -> ModelOutput:
        tool_call = None
        if self._tool is not None:
            tool_call = RawToolCall(
                name=self._tool.get("name", ""),
                id=self._tool.get("id", ""),
                raw_params=self._raw_params(),
                is_done=self._tool_done,
            )
        return ModelOutput(
            text=self.text,
            reasoning=self.reasoning,
            anthropic_reasoning=list(self.blocks) or None,
            tool_call=tool_call,
        )


class _ThreadedStreamHandle(TransportHandle):

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel

    def cancel(self) -> None:
        self._cancel()


class BedrockTransport(ModelTransport):

    def __init__(self, service: BedrockService):
        self.service = service

    @property
    def provider_name(self) -> str:
        return "bedrock"

    def send(self, messages, system, ctx: TurnContext, tools,
             on_text, on_final_message, on_error, on_abort) -> Optional[TransportHandle]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("BedrockTransport.send called outside an event loop")
            return None

        config = GenerationConfig(
            max_tokens=ctx.max_tokens,
            temperature=ctx.temperature,
            enable_thinking=ctx.enable_thinking,
            thinking_budget=ctx.thinking_budget,
        )
        acc = StreamAccumulator()
        cancelled = threading.Event()
        finished = False

        def _finish(callback: Callable, *args) -> None:
            nonlocal finished
            if finished:
                return
            finished = True
            callback(*args)

        def _text(output: ModelOutput) -> None:
            if not finished:
                on_text(output)

        def _post(callback: Callable, *args) -> None:
            try:
                loop.call_soon_threadsafe(callback, *args)
            except RuntimeError:
                logger.debug("Event loop closed before stream update was delivered")

        def _producer():
            try:
                stream = self.service.generate_response_stream(
                    messages=messages,
                    system_prompt=system,
                    model_id=ctx.model_id,
                    config=config,
                    tools=tools or None,
                )
                for chunk in stream:
                    if cancelled.is_set():
                        stream.close()
                        return
                    if acc.feed(chunk):
                        _post(_text, acc.output())
                if not cancelled.is_set():
                    _post(_finish, on_final_message, acc.output())
            except Exception as exc:
                if cancelled.is_set():
                    return
                logger.warning(f"Model stream failed: {exc}")
                _post(_finish, on_error, exc, acc.output())

        def _cancel():
            if cancelled.is_set():
                return
            cancelled.set()
            loop.call_soon(_finish, on_abort)

        t = threading.Thread(target=_producer, daemon=True)
        t.start()
        return _ThreadedStreamHandle(_cancel)
