"""
Agent loop controller.

Owns the thread collection and the per-thread stream state. A run repeats
model turn -> tool call -> model turn until the model stops calling tools,
a tool needs the user's approval, or the user aborts. Transport failures are
retried here: rate limits indefinitely, context overflow after pruning, and
everything else with bounded exponential backoff.
"""

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import app_config, loop_config, LoopConfig
from agent.checkpoints import CheckpointManager
from agent.events import (
    AgentEvent,
    EventEmitter,
    Notification,
    STREAM_STATE_CHANGED,
    THREAD_CHANGED,
    INFO,
    WARNING,
    ERROR,
)
from agent.gateway import GatewayHost, PendingToolCall, ToolGateway
from agent.messages import (
    AssistantMessage,
    InterruptedStreamingToolMessage,
    Thread,
    ToolMessage,
    UserMessage,
    now_iso,
    INVALID_PARAMS,
    REJECTED,
    RUNNING_NOW,
    SUCCESS,
    TOOL_REQUEST,
)
from agent.ports import (
    Compactor,
    FileService,
    ModelOutput,
    ModelTransport,
    Notifier,
    Settings,
    ToolExecutor,
    TurnContext,
)
from agent.prompts import compose_system_prompt, detect_project_language, tools_for_mode
from agent.publisher import CoalescingPublisher
from agent.retry import CONTEXT_LENGTH, RATE_LIMIT, RateLimiter, classify_error, retry_delay_ms
from agent.stream_state import (
    AwaitingApproval,
    Errored,
    Idle,
    Interrupter,
    LLMInfo,
    RunningModel,
    RunningTool,
    StreamState,
    is_terminal,
    running_kind,
)
from thread_store import ThreadStore

logger = logging.getLogger(__name__)

# User-facing messages
PREPARE_FAILED = "Failed to prepare messages. Please try again."
SEND_FAILED = "There was an unexpected error when sending your chat message."
CONTEXT_TOO_LARGE = (
    "The conversation context is too large. Please start a new conversation "
    "or reduce the number of selected files/folders."
)
CONTEXT_TOO_LARGE_AFTER_PRUNE = "Context too large even after pruning. Please start a new conversation."
TOOL_INTERRUPTED = "Tool call was interrupted by the user."
TOOL_REJECTED = "Tool call was rejected by the user."
COMMAND_STOPPED = "Command stopped by user."
TOOL_LOST_ON_RESTART = "Tool call was interrupted because the session ended."
RESULT_READY = "A new chat result is ready."

CONTEXT_RETRY_NOTE = "\n[Context too large, compressing history and retrying...]"


@dataclass
class _TurnResult:
    kind: str  # final, error, abort, no_handle
    output: ModelOutput
    error: Optional[BaseException] = None


class AgentLoopController(GatewayHost):
    """Thread collection plus the streaming agent loop for every thread."""

    def __init__(
        self,
        transport: ModelTransport,
        executor: ToolExecutor,
        files: FileService,
        compactor: Compactor,
        settings: Settings,
        notifier: Notifier,
        store: ThreadStore,
        limiter: Optional[RateLimiter] = None,
        cfg: LoopConfig = loop_config,
        working_directory: Optional[str] = None,
    ):
        self.transport = transport
        self.executor = executor
        self.files = files
        self.compactor = compactor
        self.settings = settings
        self.notifier = notifier
        self.store = store
        self.cfg = cfg
        self.limiter = limiter or RateLimiter(cfg)
        self.working_directory = working_directory or app_config.working_directory
        self._language = detect_project_language(self.working_directory)

        self.emitter = EventEmitter()
        self.threads: Dict[str, Thread] = {}
        self.current_thread_id: Optional[str] = None
        self.stream_state: Dict[str, StreamState] = {}
        self.publisher = CoalescingPublisher(self._publish_stream_state, cfg.stream_state_throttle_ms)

        self.checkpoints = CheckpointManager(files, notifier, on_change=lambda t: self.mark_changed(t.id))
        self.gateway = ToolGateway(executor, self.checkpoints, self)

        self.store.attach(self.threads)
        self.store.is_streaming = self._any_streaming

    # ============================================================
    # Signals
    # ============================================================

    def subscribe(self, listener: Callable[[AgentEvent], None]) -> Callable[[], None]:
        return self.emitter.subscribe(listener)

    def _publish_stream_state(self, thread_id: str) -> None:
        self.emitter.emit(AgentEvent(type=STREAM_STATE_CHANGED, data={"thread_id": thread_id}))

    def _notify(self, severity: str, message: str) -> None:
        self.notifier.notify(Notification(severity=severity, message=message, source="chat"))

    # ============================================================
    # GatewayHost
    # ============================================================

    def get_thread(self, thread_id: str) -> Optional[Thread]:
        return self.threads.get(thread_id)

    def mark_changed(self, thread_id: str) -> None:
        thread = self.threads.get(thread_id)
        if thread is None:
            return
        thread.last_modified = now_iso()
        self.store.mark_dirty(thread_id)
        if thread_id == self.current_thread_id:
            self.emitter.emit(AgentEvent(type=THREAD_CHANGED, data={"thread_id": thread_id}))

    def add_message(self, thread_id: str, message) -> None:
        thread = self._require(thread_id)
        thread.messages.append(message)
        self.mark_changed(thread_id)

    def update_latest_tool(self, thread_id: str, message: ToolMessage) -> None:
        """Replace the last message when it is the same tool call, otherwise append."""
        thread = self._require(thread_id)
        last = thread.messages[-1] if thread.messages else None
        if isinstance(last, ToolMessage) and last.id == message.id and last.type != INVALID_PARAMS:
            thread.messages[-1] = message
            self.mark_changed(thread_id)
        else:
            self.add_message(thread_id, message)

    def set_stream_state(self, thread_id: str, state: StreamState) -> None:
        self.stream_state[thread_id] = state
        self.publisher.submit(thread_id, terminal=is_terminal(state))

    # ============================================================
    # Queries
    # ============================================================

    def _require(self, thread_id: str) -> Thread:
        thread = self.threads.get(thread_id)
        if thread is None:
            raise KeyError(f"Unknown thread: {thread_id}")
        return thread

    def current_thread(self) -> Optional[Thread]:
        if self.current_thread_id is None:
            return None
        return self.threads.get(self.current_thread_id)

    def get_stream_state(self, thread_id: str) -> StreamState:
        return self.stream_state.get(thread_id)

    def is_running(self, thread_id: str) -> bool:
        return running_kind(self.stream_state.get(thread_id)) is not None

    def is_streaming(self, thread_id: str) -> bool:
        """True while a run is actively working (model, tool or retry wait)."""
        return running_kind(self.stream_state.get(thread_id)) in ("LLM", "tool", "idle")

    def _any_streaming(self) -> bool:
        return any(self.is_streaming(tid) for tid in list(self.stream_state))

    def list_threads(self) -> List[Thread]:
        return sorted(self.threads.values(), key=lambda t: t.last_modified, reverse=True)

    # ============================================================
    # Thread collection
    # ============================================================

    def load(self) -> None:
        """Read every persisted thread and restore pending approvals."""
        self.threads.clear()
        self.threads.update(self.store.load_all())
        for thread in self.threads.values():
            self._restore_pending_tool(thread)
        if self.threads:
            self.current_thread_id = self.list_threads()[0].id
        else:
            self.open_new_thread()

    def _restore_pending_tool(self, thread: Thread) -> None:
        last = thread.messages[-1] if thread.messages else None
        if not isinstance(last, ToolMessage):
            return
        if last.type == TOOL_REQUEST:
            self.stream_state[thread.id] = AwaitingApproval()
        elif last.type == RUNNING_NOW:
            last.type = REJECTED
            last.content = TOOL_LOST_ON_RESTART
            self.store.mark_dirty(thread.id)

    def open_new_thread(self) -> Thread:
        for thread in self.threads.values():
            if not thread.messages:
                self.switch_to_thread(thread.id)
                return thread
        thread = Thread()
        self.threads[thread.id] = thread
        logger.info(f"Created thread {thread.id}")
        self.current_thread_id = thread.id
        self.mark_changed(thread.id)
        return thread

    def switch_to_thread(self, thread_id: str) -> None:
        self._require(thread_id)
        self.current_thread_id = thread_id
        self.emitter.emit(AgentEvent(type=THREAD_CHANGED, data={"thread_id": thread_id}))

    def delete_thread(self, thread_id: str) -> None:
        self._require(thread_id)
        if self.is_running(thread_id):
            self.abort_running(thread_id)
        del self.threads[thread_id]
        self.stream_state.pop(thread_id, None)
        self.publisher.forget(thread_id)
        self.checkpoints.invalidate(thread_id)
        self.store.mark_deleted(thread_id)
        logger.info(f"Deleted thread {thread_id}")
        if thread_id == self.current_thread_id:
            self.current_thread_id = None
            self.open_new_thread()

    def duplicate_thread(self, thread_id: str) -> Thread:
        original = self._require(thread_id)
        clone = copy.deepcopy(original)
        clone.id = str(uuid.uuid4())
        clone.created_at = clone.last_modified = now_iso()
        self.threads[clone.id] = clone
        self.mark_changed(clone.id)
        logger.info(f"Duplicated thread {thread_id} as {clone.id}")
        return clone

    def add_staging_selection(self, thread_id: str, selection: Dict[str, Any]) -> None:
        thread = self._require(thread_id)
        thread.state.staging_selections.append(dict(selection))
        self.mark_changed(thread_id)

    def pop_staging_selections(self, thread_id: str, count: int = 1) -> List[Dict[str, Any]]:
        thread = self._require(thread_id)
        count = max(0, min(count, len(thread.state.staging_selections)))
        if count == 0:
            return []
        popped = thread.state.staging_selections[-count:]
        del thread.state.staging_selections[-count:]
        self.mark_changed(thread_id)
        return popped

    def dismiss_stream_error(self, thread_id: str) -> None:
        if isinstance(self.stream_state.get(thread_id), Errored):
            self.set_stream_state(thread_id, None)

    def on_user_edit(self, path: str) -> None:
        """Record a human edit against the current thread's checkpoint timeline."""
        thread = self.current_thread()
        if thread is not None:
            self.checkpoints.capture_user_edit(thread, path)

    # ============================================================
    # User actions
    # ============================================================

    async def send_message(
        self,
        thread_id: str,
        text: str,
        selections: Optional[List[Dict[str, Any]]] = None,
        images: Optional[List[Dict[str, Any]]] = None,
        auto_generated: bool = False,
    ) -> None:
        thread = self._require(thread_id)
        if self.is_running(thread_id):
            self.abort_running(thread_id)

        curr = thread.state.curr_checkpoint_idx
        if curr is not None:
            del thread.messages[curr + 1:]
            self.checkpoints.invalidate(thread_id)

        self.checkpoints.add_checkpoint(thread)

        if selections is None:
            selections = list(thread.state.staging_selections)
            thread.state.staging_selections = []
        self.add_message(thread_id, UserMessage(
            content=text,
            selections=list(selections),
            images=list(images or []),
            auto_generated=auto_generated,
        ))
        thread.state.curr_checkpoint_idx = None
        await self._run_agent_loop(thread_id)

    async def edit_user_message_and_stream(self, thread_id: str, message_idx: int, text: str) -> None:
        thread = self._require(thread_id)
        if not 0 <= message_idx < len(thread.messages):
            raise ValueError(f"No message at index {message_idx}")
        target = thread.messages[message_idx]
        if not isinstance(target, UserMessage):
            raise ValueError("Only user messages can be edited")
        if self.is_running(thread_id):
            self.abort_running(thread_id)

        selections = list(target.selections)
        del thread.messages[message_idx:]
        thread.state.curr_checkpoint_idx = None
        self.checkpoints.invalidate(thread_id)
        self.mark_changed(thread_id)
        await self.send_message(thread_id, text, selections=selections)

    async def approve_latest_tool_request(self, thread_id: str) -> None:
        thread = self._require(thread_id)
        last = thread.messages[-1] if thread.messages else None
        if not isinstance(last, ToolMessage) or last.type != TOOL_REQUEST:
            logger.warning(f"No pending tool request on {thread_id}")
            return
        call = PendingToolCall(
            name=last.name,
            id=last.id,
            raw_params=dict(last.raw_params),
            mcp_server_name=last.mcp_server_name,
            preapproved_params=dict(last.params or {}),
        )
        await self._run_agent_loop(thread_id, call_this_tool_first=call)

    def reject_latest_tool_request(self, thread_id: str) -> None:
        thread = self._require(thread_id)
        last = thread.messages[-1] if thread.messages else None
        if isinstance(last, ToolMessage) and last.type == TOOL_REQUEST:
            self.update_latest_tool(thread_id, ToolMessage(
                type=REJECTED,
                name=last.name,
                id=last.id,
                content=TOOL_REJECTED,
                params=last.params,
                raw_params=dict(last.raw_params),
                mcp_server_name=last.mcp_server_name,
            ))
        self.checkpoints.add_checkpoint(thread)
        self.set_stream_state(thread_id, None)

    def abort_running(self, thread_id: str) -> None:
        """Write the terminal message for whatever is in flight, checkpoint, then clear."""
        thread = self._require(thread_id)
        state = self.stream_state.get(thread_id)

        if isinstance(state, RunningModel):
            self._add_partial_assistant(thread_id, state.llm_info.display_content_so_far,
                                        state.llm_info.reasoning_so_far, None,
                                        state.llm_info.tool_call_so_far)
        elif isinstance(state, RunningTool):
            if state.tool_name == "run_command":
                type_, content = SUCCESS, COMMAND_STOPPED
            else:
                type_, content = REJECTED, state.content or TOOL_INTERRUPTED
            self.update_latest_tool(thread_id, ToolMessage(
                type=type_,
                name=state.tool_name,
                id=state.tool_id,
                content=content,
                params=state.tool_params,
                raw_params=dict(state.raw_params),
                mcp_server_name=state.mcp_server_name,
            ))
        elif isinstance(state, AwaitingApproval):
            self.reject_latest_tool_request(thread_id)

        self.checkpoints.add_checkpoint(thread)
        interrupt = getattr(state, "interrupt", None)
        if interrupt is not None:
            interrupt()
        self.set_stream_state(thread_id, None)
        self.store.force_flush()
        logger.info(f"Aborted run on {thread_id} ({running_kind(state)})")

    async def jump_to_checkpoint_before_message_idx(
        self, thread_id: str, message_idx: int, jump_to_user_modified: bool = False
    ) -> bool:
        thread = self._require(thread_id)
        if self.is_streaming(thread_id):
            self._notify(WARNING, "Stop the running response before jumping to a checkpoint.")
            return False
        return await self.checkpoints.jump_to_checkpoint_before(thread, message_idx, jump_to_user_modified)

    # ============================================================
    # Agent loop
    # ============================================================

    def _add_partial_assistant(self, thread_id: str, text: str, reasoning: str,
                               anthropic_reasoning, tool_call) -> None:
        if text or reasoning:
            self.add_message(thread_id, AssistantMessage(
                display_content=text,
                reasoning=reasoning,
                anthropic_reasoning=anthropic_reasoning,
            ))
        if tool_call is not None:
            self.add_message(thread_id, InterruptedStreamingToolMessage(name=tool_call.name))

    @staticmethod
    def _interrupter(stop: asyncio.Event, cancel: Optional[Callable[[], None]] = None) -> Interrupter:
        def _target():
            stop.set()
            if cancel is not None:
                cancel()
        return Interrupter(_target)

    @staticmethod
    async def _sleep(ms: float, stop: asyncio.Event) -> None:
        """Sleep up to ``ms`` milliseconds, waking early when ``stop`` is set."""
        if ms <= 0:
            return
        try:
            await asyncio.wait_for(stop.wait(), timeout=ms / 1000.0)
        except asyncio.TimeoutError:
            pass

    async def _wait_cooldown(self, stop: asyncio.Event) -> None:
        wait = self.limiter.wait_time_ms(self.transport.provider_name)
        if wait > 0:
            logger.info(f"Waiting {wait:.0f}ms for {self.transport.provider_name} cooldown")
            await self._sleep(wait, stop)

    def _prepare(self, thread: Thread, ctx: TurnContext) -> Optional[Tuple[List[Dict[str, Any]], str, List[Dict[str, Any]]]]:
        tools = tools_for_mode(self.executor.definitions(), ctx.chat_mode)
        system = compose_system_prompt(ctx.chat_mode, self.working_directory,
                                       [t["name"] for t in tools], self._language)
        for attempt in range(2):
            try:
                messages, system_out = self.compactor.prepare_messages(thread.messages, system)
                return messages, system_out, tools
            except Exception as e:
                logger.warning(f"Preparing messages for {thread.id} failed (attempt {attempt + 1}): {e}")
        return None

    def _append_reasoning_note(self, thread_id: str, note: str) -> None:
        state = self.stream_state.get(thread_id)
        if not isinstance(state, RunningModel):
            return
        info = state.llm_info
        self.set_stream_state(thread_id, RunningModel(
            LLMInfo(info.display_content_so_far, info.reasoning_so_far + note, info.tool_call_so_far),
            state.interrupt,
        ))

    async def _stream_turn(self, thread_id: str, messages, system: str, ctx: TurnContext,
                           tools, stop: asyncio.Event) -> _TurnResult:
        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()
        latest = ModelOutput()

        def _resolve(result: _TurnResult) -> None:
            if not done.done():
                done.set_result(result)

        def on_text(output: ModelOutput) -> None:
            nonlocal latest
            latest = output
            state = self.stream_state.get(thread_id)
            if isinstance(state, RunningModel) and not done.done():
                self.set_stream_state(thread_id, RunningModel(
                    LLMInfo(output.text, output.reasoning, output.tool_call), state.interrupt,
                ))

        def on_final_message(output: ModelOutput) -> None:
            _resolve(_TurnResult("final", output))

        def on_error(error: BaseException, partial: ModelOutput) -> None:
            _resolve(_TurnResult("error", partial if partial is not None else latest, error))

        def on_abort() -> None:
            _resolve(_TurnResult("abort", latest))

        handle = self.transport.send(messages, system, ctx, tools,
                                     on_text, on_final_message, on_error, on_abort)
        if handle is None:
            return _TurnResult("no_handle", latest)

        prev = self.stream_state.get(thread_id)
        info = prev.llm_info if isinstance(prev, RunningModel) else LLMInfo()
        self.set_stream_state(thread_id, RunningModel(info, self._interrupter(stop, handle.cancel)))
        if stop.is_set():
            handle.cancel()
        return await done

    def _fail(self, thread_id: str, message: str, error: Optional[BaseException],
              partial: Optional[ModelOutput] = None) -> None:
        """End a run with an error, keeping any partial output in the thread."""
        thread = self._require(thread_id)
        if partial is not None:
            self._add_partial_assistant(thread_id, partial.text, partial.reasoning,
                                        partial.anthropic_reasoning, partial.tool_call)
        logger.error(f"Run on {thread_id} failed: {message}")
        self.set_stream_state(thread_id, Errored(message, error))
        self.checkpoints.add_checkpoint(thread)
        self.store.force_flush()
        self._notify_completion(thread_id, message)

    def _notify_completion(self, thread_id: str, error: Optional[str] = None) -> None:
        if thread_id == self.current_thread_id:
            return
        if error:
            self._notify(ERROR, f"Error: {error}")
        else:
            self._notify(INFO, RESULT_READY)

    async def _run_agent_loop(self, thread_id: str,
                              call_this_tool_first: Optional[PendingToolCall] = None) -> None:
        thread = self._require(thread_id)
        ctx = self.settings.turn_context()
        provider = self.transport.provider_name
        stop = asyncio.Event()

        if isinstance(self.stream_state.get(thread_id), Errored):
            self.set_stream_state(thread_id, None)
        self.set_stream_state(thread_id, Idle(self._interrupter(stop)))

        if call_this_tool_first is not None:
            outcome = await self.gateway.run_tool_call(thread_id, call_this_tool_first, ctx)
            if outcome.interrupted or stop.is_set():
                return
            self.set_stream_state(thread_id, Idle(self._interrupter(stop)))

        awaiting = False
        send_another = True
        while send_another:
            send_another = False
            if not isinstance(self.stream_state.get(thread_id), RunningModel):
                self.set_stream_state(thread_id, RunningModel(LLMInfo(), self._interrupter(stop)))

            await self._wait_cooldown(stop)
            if stop.is_set():
                return

            prepared = self._prepare(thread, ctx)
            if prepared is None:
                self._fail(thread_id, PREPARE_FAILED, None)
                return
            messages, system, tools = prepared

            # transient failures and context retries are budgeted separately
            n_attempts = 0
            n_context_retries = 0
            first_send = True
            while True:
                if not first_send:
                    await self._wait_cooldown(stop)
                    if stop.is_set():
                        return
                first_send = False

                result = await self._stream_turn(thread_id, messages, system, ctx, tools, stop)
                if stop.is_set():
                    return

                if result.kind == "no_handle":
                    self._fail(thread_id, SEND_FAILED, None)
                    return

                if result.kind == "error":
                    kind = classify_error(result.error)
                    if kind == CONTEXT_LENGTH:
                        self.compactor.prune_all([m.id for m in thread.messages if isinstance(m, ToolMessage)])
                        if n_context_retries < self.cfg.context_retries:
                            n_context_retries += 1
                            prepared = self._prepare(thread, ctx)
                            if prepared is None:
                                self._fail(thread_id, CONTEXT_TOO_LARGE_AFTER_PRUNE, result.error)
                                return
                            messages, system, tools = prepared
                            logger.warning(f"Context overflow on {thread_id}, retrying after pruning")
                            self._append_reasoning_note(thread_id, CONTEXT_RETRY_NOTE)
                            continue
                        self._fail(thread_id, CONTEXT_TOO_LARGE, result.error)
                        return

                    if kind == RATE_LIMIT:
                        wait = self.limiter.handle_rate_limit_error(provider, result.error)
                        logger.warning(f"Rate limited on {thread_id}, retrying in {wait:.0f}ms")
                        self._append_reasoning_note(
                            thread_id, f"\n[API rate limit, retrying in {wait / 1000:.0f}s...]"
                        )
                        await self._sleep(wait, stop)
                        if stop.is_set():
                            return
                        # Rate-limit retries do not use up the retry budget
                        continue

                    n_attempts += 1
                    if n_attempts < self.cfg.chat_retries:
                        delay = retry_delay_ms(n_attempts, self.cfg)
                        logger.warning(f"Transient error on {thread_id} (attempt {n_attempts}), "
                                       f"retrying in {delay}ms: {result.error}")
                        self.set_stream_state(thread_id, Idle(self._interrupter(stop)))
                        await self._sleep(delay, stop)
                        if stop.is_set():
                            return
                        continue

                    self._fail(thread_id, str(result.error) or SEND_FAILED, result.error, result.output)
                    return

                # final message, or a transport-side abort that keeps its partial output
                output = result.output
                if result.kind == "final":
                    self.limiter.record_success(provider)
                else:
                    logger.info(f"Transport aborted on {thread_id}, keeping partial output")
                self.add_message(thread_id, AssistantMessage(
                    display_content=output.text,
                    reasoning=output.reasoning,
                    anthropic_reasoning=output.anthropic_reasoning,
                ))
                self.set_stream_state(thread_id, Idle(self._interrupter(stop)))

                tool_call = output.tool_call
                if tool_call is not None:
                    outcome = await self.gateway.run_tool_call(thread_id, PendingToolCall(
                        name=tool_call.name,
                        id=tool_call.id,
                        raw_params=dict(tool_call.raw_params),
                    ), ctx)
                    if outcome.interrupted or stop.is_set():
                        return
                    if outcome.awaiting_user:
                        awaiting = True
                    else:
                        send_another = True
                break

        if awaiting:
            self.set_stream_state(thread_id, AwaitingApproval())
        else:
            self.set_stream_state(thread_id, None)
            self.checkpoints.add_checkpoint(thread)
        self.store.force_flush()
        self._notify_completion(thread_id)
