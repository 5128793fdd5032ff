"""
In-memory file buffers over a Backend.

Tools and checkpoint jumps mutate buffers; ``save`` writes them through to
the backend in a worker thread. Out-of-band edits made by a human go
through ``user_edit`` so listeners can record them against the current
checkpoint.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from backend import Backend
from agent.messages import Snapshot
from agent.ports import FileService

logger = logging.getLogger(__name__)


@dataclass
class _Buffer:
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    dirty: bool = False


class BufferedFileService(FileService):

    def __init__(self, backend: Backend):
        self.backend = backend
        self._buffers: Dict[str, _Buffer] = {}
        self._editing: Set[str] = set()
        self._user_edit_listeners: List[Callable[[str], None]] = []

    def normalize(self, path: str) -> str:
        rel = self.backend.relative_path(path)
        if rel == ".." or rel.startswith(".." + os.sep):
            raise ValueError(f"Path escapes working directory: {path!r}")
        return rel

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_disk(self, path: str) -> Optional[str]:
        if not self.backend.file_exists(path) or self.backend.is_dir(path):
            return None
        return self.backend.read_file(path)

    def read_text(self, path: str) -> Optional[str]:
        buf = self._buffers.get(path)
        if buf is not None:
            return buf.text
        text = self.read_disk(path)
        if text is not None:
            self._buffers[path] = _Buffer(text=text)
        return text

    def exists(self, path: str) -> bool:
        return path in self._buffers or self.read_disk(path) is not None

    def snapshot(self, path: str) -> Optional[Snapshot]:
        text = self.read_text(path)
        if text is None:
            return None
        return Snapshot(file_text=text, diff_area_metadata=dict(self._buffers[path].metadata))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_text(self, path: str, text: str) -> None:
        buf = self._buffers.get(path)
        if buf is None:
            self._buffers[path] = _Buffer(text=text, dirty=True)
        else:
            buf.text = text
            buf.dirty = True

    def restore(self, path: str, snapshot: Snapshot) -> None:
        self._buffers[path] = _Buffer(
            text=snapshot.file_text,
            metadata=dict(snapshot.diff_area_metadata),
            dirty=True,
        )

    async def save(self, path: str) -> None:
        buf = self._buffers.get(path)
        if buf is None:
            return
        await asyncio.to_thread(self.backend.write_file, path, buf.text)
        buf.dirty = False
        logger.debug(f"Saved {path} ({len(buf.text)} chars)")

    def forget(self, path: str) -> None:
        self._buffers.pop(path, None)

    async def remove(self, path: str) -> None:
        if self.backend.file_exists(path):
            await asyncio.to_thread(self.backend.remove_file, path)
        self.forget(path)
        logger.debug(f"Removed {path}")

    # ------------------------------------------------------------------
    # Writer guard
    # ------------------------------------------------------------------

    def begin_edit(self, path: str) -> bool:
        if path in self._editing:
            logger.warning(f"Refusing concurrent edit of {path}")
            return False
        self._editing.add(path)
        return True

    def end_edit(self, path: str) -> None:
        self._editing.discard(path)

    def is_being_edited(self, path: str) -> bool:
        return path in self._editing

    # ------------------------------------------------------------------
    # Human edits
    # ------------------------------------------------------------------

    def on_user_edit(self, listener: Callable[[str], None]) -> Callable[[], None]:
        self._user_edit_listeners.append(listener)

        def _unsubscribe():
            if listener in self._user_edit_listeners:
                self._user_edit_listeners.remove(listener)
        return _unsubscribe

    async def user_edit(self, path: str, text: str) -> None:
        """Apply a human edit to ``path``, save it and tell listeners."""
        path = self.normalize(path)
        if not self.begin_edit(path):
            raise RuntimeError(f"{path} is being changed by the agent; try again when it finishes.")
        try:
            self.set_text(path, text)
            await self.save(path)
        finally:
            self.end_edit(path)
        for listener in list(self._user_edit_listeners):
            try:
                listener(path)
            except Exception:
                logger.exception(f"User-edit listener failed for {path}")
