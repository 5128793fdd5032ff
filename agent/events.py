"""
Agent signals, notifications and the observer registry that carries them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Signal types
STREAM_STATE_CHANGED = "stream_state_changed"
THREAD_CHANGED = "thread_changed"

# Notification severities
INFO = "info"
WARNING = "warning"
ERROR = "error"


@dataclass
class AgentEvent:
    """Signal emitted by the controller"""
    type: str  # stream_state_changed, thread_changed
    content: str = ""
    data: Optional[Dict[str, Any]] = None


@dataclass
class Notification:
    """User-facing notice (jump results, background run completion, ...)"""
    severity: str
    message: str
    source: Optional[str] = None


class EventEmitter:
    """Plain observer list. Listener failures are logged, never propagated."""

    def __init__(self):
        self._listeners: List[Callable[[AgentEvent], None]] = []

    def subscribe(self, listener: Callable[[AgentEvent], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _unsubscribe

    def emit(self, event: AgentEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener failed for {event.type}")
