"""
Shared state for the web server.

The controller and its collaborators are module globals built once at
startup (or on first use). Route modules import web.state to reach them.
"""

import asyncio
import collections
import logging
import os
from typing import Any, Deque, Dict, List, Optional, Set

from agent.controller import AgentLoopController
from agent.events import Notification, ERROR, WARNING
from agent.file_service import BufferedFileService
from agent.history import ContextCompactor
from agent.ports import EnvSettings, ModelTransport, Notifier
from backend import Backend, LocalBackend
from config import app_config
from thread_store import JsonFileStorage, KeyValueStorage, ThreadStore
from tools.dispatch import BuiltinToolExecutor

logger = logging.getLogger(__name__)

# ============================================================
# Globals
# ============================================================

_working_directory: str = os.path.abspath(app_config.working_directory)
_backend: Optional[Backend] = None
_files: Optional[BufferedFileService] = None
_controller: Optional[AgentLoopController] = None
_notifier: Optional["BufferedNotifier"] = None

# Background runs started by the API; kept so they are not garbage collected
_run_tasks: Set[asyncio.Task] = set()


class BufferedNotifier(Notifier):
    """Keeps the most recent notifications for the UI to poll, and logs them."""

    def __init__(self, maxlen: int = 100):
        self._items: Deque[Notification] = collections.deque(maxlen=maxlen)

    def notify(self, notification: Notification) -> None:
        level = {ERROR: logging.ERROR, WARNING: logging.WARNING}.get(notification.severity, logging.INFO)
        logger.log(level, f"[{notification.source or 'app'}] {notification.message}")
        self._items.append(notification)

    def drain(self) -> List[Dict[str, Any]]:
        items = [
            {"severity": n.severity, "message": n.message, "source": n.source}
            for n in self._items
        ]
        self._items.clear()
        return items


def build_controller(
    working_directory: Optional[str] = None,
    transport: Optional[ModelTransport] = None,
    storage: Optional[KeyValueStorage] = None,
    settings_overrides: Optional[Dict[str, Any]] = None,
) -> AgentLoopController:
    """Wire the controller for ``working_directory`` and load persisted threads."""
    global _working_directory, _backend, _files, _controller, _notifier

    _working_directory = os.path.abspath(os.path.expanduser(working_directory or _working_directory))
    _backend = LocalBackend(_working_directory)
    _files = BufferedFileService(_backend)
    _notifier = BufferedNotifier()

    if transport is None:
        from bedrock_service import BedrockService
        from agent.transport import BedrockTransport
        transport = BedrockTransport(BedrockService())

    store = ThreadStore(storage if storage is not None else JsonFileStorage(app_config.threads_dir))
    _controller = AgentLoopController(
        transport=transport,
        executor=BuiltinToolExecutor(_files, _backend),
        files=_files,
        compactor=ContextCompactor(),
        settings=EnvSettings(settings_overrides),
        notifier=_notifier,
        store=store,
        working_directory=_working_directory,
    )
    _files.on_user_edit(_controller.on_user_edit)
    _controller.load()
    logger.info(f"Controller ready for {_working_directory} ({len(_controller.threads)} threads)")
    return _controller


def get_controller() -> AgentLoopController:
    if _controller is None:
        return build_controller()
    return _controller


def start_run(coro) -> asyncio.Task:
    """Run a controller coroutine in the background and log its failure."""
    task = asyncio.ensure_future(coro)
    _run_tasks.add(task)

    def _done(t: asyncio.Task):
        _run_tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.error(f"Background run failed: {t.exception()}")

    task.add_done_callback(_done)
    return task
