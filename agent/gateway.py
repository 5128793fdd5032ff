"""
Tool invocation gateway.

Drives one tool call through validate -> (approval) -> before-state capture
-> execute -> stringify, writing the tool message for each step. The last
tool message of a call always ends in a terminal type unless the call is
waiting for approval or was interrupted (the abort path writes that one).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from agent.checkpoints import CheckpointManager
from agent.messages import (
    Thread,
    ToolMessage,
    TOOL_REQUEST,
    RUNNING_NOW,
    SUCCESS,
    TOOL_ERROR,
    INVALID_PARAMS,
)
from agent.ports import ToolExecutor, TurnContext
from agent.stream_state import Interrupter, RunningTool, StreamState
from tools._common import ToolResult, ToolValidationError

logger = logging.getLogger(__name__)

AWAITING_PERMISSION = "(Awaiting user permission...)"
VALUE_NOT_RECEIVED = "(value not received yet...)"


@dataclass
class ToolCallOutcome:
    awaiting_user: bool = False
    interrupted: bool = False


@dataclass
class PendingToolCall:
    """A tool call the model produced, optionally already validated and approved."""
    name: str
    id: str
    raw_params: Dict[str, Any]
    mcp_server_name: Optional[str] = None
    preapproved_params: Optional[Dict[str, Any]] = None


class GatewayHost(ABC):
    """Thread and stream-state access the gateway needs from its owner."""

    @abstractmethod
    def get_thread(self, thread_id: str) -> Optional[Thread]:
        ...

    @abstractmethod
    def add_message(self, thread_id: str, message) -> None:
        ...

    @abstractmethod
    def update_latest_tool(self, thread_id: str, message: ToolMessage) -> None:
        ...

    @abstractmethod
    def set_stream_state(self, thread_id: str, state: StreamState) -> None:
        ...

    @abstractmethod
    def mark_changed(self, thread_id: str) -> None:
        ...


class ToolGateway:

    def __init__(self, executor: ToolExecutor, checkpoints: CheckpointManager, host: GatewayHost):
        self.executor = executor
        self.checkpoints = checkpoints
        self.host = host

    def _message(self, call: PendingToolCall, type_: str, content: str,
                 params: Optional[Dict[str, Any]], result: Any = None) -> ToolMessage:
        return ToolMessage(
            type=type_,
            name=call.name,
            id=call.id,
            content=content,
            params=params,
            raw_params=dict(call.raw_params or {}),
            result=result,
            mcp_server_name=call.mcp_server_name,
        )

    def _attach_late_result(self, thread_id: str, call: PendingToolCall, result: ToolResult) -> None:
        """Attach a result that finished after the call was interrupted."""
        thread = self.host.get_thread(thread_id)
        if thread is None:
            return
        for msg in reversed(thread.messages):
            if isinstance(msg, ToolMessage) and msg.id == call.id:
                msg.result = result.to_dict()
                text = (result.output or result.error or "").strip()
                if text and text not in msg.content:
                    msg.content = f"{msg.content}\n{text}" if msg.content else text
                self.host.mark_changed(thread_id)
                return

    async def run_tool_call(self, thread_id: str, call: PendingToolCall, ctx: TurnContext) -> ToolCallOutcome:
        params = call.preapproved_params
        if params is None:
            try:
                params = self.executor.validate(call.name, call.raw_params)
            except ToolValidationError as e:
                logger.info(f"Invalid params for {call.name}: {e}")
                self.host.add_message(thread_id, self._message(call, INVALID_PARAMS, str(e), None))
                return ToolCallOutcome()

            approval = self.executor.approval_type(call.name)
            if approval:
                self.host.add_message(thread_id, self._message(call, TOOL_REQUEST, AWAITING_PERMISSION, params))
                if not ctx.is_auto_approved(approval):
                    return ToolCallOutcome(awaiting_user=True)

        path = self.executor.mutated_path(call.name, params)
        if path:
            thread = self.host.get_thread(thread_id)
            if thread is not None:
                self.checkpoints.ensure_before_state(thread, path)

        interrupter = Interrupter()
        self.host.update_latest_tool(thread_id, self._message(call, RUNNING_NOW, VALUE_NOT_RECEIVED, params))
        self.host.set_stream_state(thread_id, RunningTool(
            tool_name=call.name,
            tool_params=params,
            tool_id=call.id,
            interrupt=interrupter,
            raw_params=dict(call.raw_params or {}),
            mcp_server_name=call.mcp_server_name,
        ))

        try:
            pending, interrupt = self.executor.execute(call.name, params)
            if interrupt is not None:
                interrupter.bind(interrupt)
            result: ToolResult = await pending
        except asyncio.CancelledError:
            if interrupter.requested:
                return ToolCallOutcome(interrupted=True)
            raise
        except Exception as e:
            if interrupter.requested:
                return ToolCallOutcome(interrupted=True)
            logger.exception(f"Tool {call.name} raised")
            self.host.update_latest_tool(thread_id, self._message(call, TOOL_ERROR, str(e), params))
            return ToolCallOutcome()

        if interrupter.requested:
            self._attach_late_result(thread_id, call, result)
            return ToolCallOutcome(interrupted=True)

        if not result.success:
            content = result.error or result.output or "Tool failed without output."
            self.host.update_latest_tool(thread_id, self._message(call, TOOL_ERROR, content, params, result.to_dict()))
            return ToolCallOutcome()

        try:
            text = self.executor.stringify(call.name, params, result)
        except Exception as e:
            logger.warning(f"Stringify failed for {call.name}: {e}")
            self.host.update_latest_tool(thread_id, self._message(
                call, TOOL_ERROR,
                f"Tool call succeeded, but there was an error stringifying the output.\n{e}",
                params, result.to_dict(),
            ))
            return ToolCallOutcome()

        self.host.update_latest_tool(thread_id, self._message(call, SUCCESS, text, params, result.to_dict()))
        return ToolCallOutcome()
