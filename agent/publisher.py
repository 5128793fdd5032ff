"""
Coalescing publisher for high-rate per-key updates.

Updates may be submitted at any rate; listeners hear about a key at most
once per ``min_interval_ms``, a pending update is always flushed by a
timer, and terminal updates go out immediately.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CoalescingPublisher:

    def __init__(
        self,
        publish: Callable[[str], None],
        min_interval_ms: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._publish = publish
        self._min_interval = min_interval_ms / 1000.0
        self._clock = clock
        self._last_fire: Dict[str, float] = {}
        self._pending: Dict[str, asyncio.TimerHandle] = {}

    def submit(self, key: str, terminal: bool = False) -> None:
        now = self._clock()
        since_last = now - self._last_fire.get(key, float("-inf"))

        if terminal or since_last >= self._min_interval:
            self._cancel_pending(key)
            self._fire(key)
            return

        if key in self._pending:
            return
        loop = self._running_loop()
        if loop is None:
            self._fire(key)
            return
        delay = self._min_interval - since_last
        self._pending[key] = loop.call_later(delay, self._fire_pending, key)

    def has_pending(self, key: str) -> bool:
        return key in self._pending

    def flush(self) -> None:
        for key in list(self._pending):
            self._cancel_pending(key)
            self._fire(key)

    def forget(self, key: str) -> None:
        self._cancel_pending(key)
        self._last_fire.pop(key, None)

    # ------------------------------------------------------------------

    def _fire_pending(self, key: str) -> None:
        self._pending.pop(key, None)
        self._fire(key)

    def _fire(self, key: str) -> None:
        self._last_fire[key] = self._clock()
        try:
            self._publish(key)
        except Exception:
            logger.exception(f"Publish failed for {key}")

    def _cancel_pending(self, key: str) -> None:
        handle = self._pending.pop(key, None)
        if handle is not None:
            handle.cancel()

    @staticmethod
    def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None
