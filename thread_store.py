"""
Thread persistence.

Threads are stored in a key/value storage as one index record plus one
shard per thread. Only threads marked dirty since the last flush are
rewritten; flushes are debounced and skipped while a thread is streaming.
A legacy single-record layout is migrated to shards on first load.
"""

import asyncio
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Set

from agent.messages import Thread
from config import loop_config

logger = logging.getLogger(__name__)

INDEX_KEY = "threadloop.threads.index"
SHARD_PREFIX = "threadloop.threads.shard."
LEGACY_KEY = "threadloop.threads"


def shard_key(thread_id: str) -> str:
    return SHARD_PREFIX + thread_id


# ============================================================
# Storage backends
# ============================================================

class KeyValueStorage(ABC):
    """String key/value storage."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...


class MemoryStorage(KeyValueStorage):

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self.data)


class JsonFileStorage(KeyValueStorage):
    """One file per key under ``base_dir``; writes go through a temp file and os.replace."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def _path_for(self, key: str) -> str:
        return os.path.join(self.base_dir, re.sub(r"[^A-Za-z0-9._-]", "_", key) + ".json")

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            logger.warning(f"Failed to read {path}: {e}")
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path_for(key)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        if os.path.exists(path):
            os.remove(path)

    def keys(self) -> List[str]:
        # File names are sanitised keys; shard keys survive unchanged
        return [f[:-5] for f in os.listdir(self.base_dir) if f.endswith(".json")]


# ============================================================
# Thread store
# ============================================================

class ThreadStore:

    def __init__(
        self,
        storage: KeyValueStorage,
        debounce_ms: int = loop_config.persist_debounce_ms,
        is_streaming: Callable[[], bool] = lambda: False,
    ):
        self.storage = storage
        self.debounce_ms = debounce_ms
        self.is_streaming = is_streaming
        self._threads: Dict[str, Thread] = {}
        self._dirty: Set[str] = set()
        self._deleted: Set[str] = set()
        self._timer: Optional[asyncio.TimerHandle] = None

    def attach(self, threads: Dict[str, Thread]) -> None:
        """Share the live thread map the flush reads from."""
        self._threads = threads

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _migrate_legacy(self) -> None:
        raw = self.storage.get(LEGACY_KEY)
        if raw is None:
            return
        try:
            legacy = json.loads(raw) or {}
        except ValueError as e:
            logger.warning(f"Unreadable legacy thread record left in place: {e}")
            return
        index = self._read_index()
        for thread_id, data in legacy.items():
            if not data:
                continue
            self.storage.set(shard_key(thread_id), json.dumps(data, ensure_ascii=False))
            index[thread_id] = True
        self.storage.set(INDEX_KEY, json.dumps(index))
        self.storage.delete(LEGACY_KEY)
        logger.info(f"Migrated {len(legacy)} threads from the legacy single-record layout")

    def _read_index(self) -> Dict[str, bool]:
        raw = self.storage.get(INDEX_KEY)
        if not raw:
            return {}
        try:
            return dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"Thread index unreadable, starting empty: {e}")
            return {}

    def load_all(self) -> Dict[str, Thread]:
        self._migrate_legacy()
        threads: Dict[str, Thread] = {}
        for thread_id in self._read_index():
            raw = self.storage.get(shard_key(thread_id))
            if raw is None:
                logger.warning(f"Thread {thread_id} listed in index but has no shard")
                continue
            try:
                threads[thread_id] = Thread.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable thread {thread_id}: {e}")
        logger.info(f"Loaded {len(threads)} threads")
        return threads

    # ------------------------------------------------------------------
    # Dirty tracking and flushing
    # ------------------------------------------------------------------

    def mark_dirty(self, thread_id: str) -> None:
        self._deleted.discard(thread_id)
        self._dirty.add(thread_id)
        self.schedule_flush()

    def mark_deleted(self, thread_id: str) -> None:
        self._dirty.discard(thread_id)
        self._deleted.add(thread_id)
        self.schedule_flush()

    @property
    def pending(self) -> bool:
        return bool(self._dirty or self._deleted)

    def schedule_flush(self) -> None:
        if self.is_streaming():
            logger.debug("Flush deferred while streaming")
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._timer = loop.call_later(self.debounce_ms / 1000.0, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        try:
            self.flush()
        except Exception:
            logger.exception("Debounced thread flush failed")

    def force_flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.flush()

    def flush(self) -> None:
        if not self.pending:
            return
        dirty, deleted = set(self._dirty), set(self._deleted)
        self._dirty.clear()
        self._deleted.clear()
        try:
            for thread_id in dirty:
                thread = self._threads.get(thread_id)
                if thread is None:
                    continue
                self.storage.set(shard_key(thread_id), json.dumps(thread.to_dict(), ensure_ascii=False))
            for thread_id in deleted:
                self.storage.delete(shard_key(thread_id))
            self.storage.set(INDEX_KEY, json.dumps({tid: True for tid in self._threads}))
        except Exception:
            # Retry these on the next flush
            self._dirty |= dirty - deleted
            self._deleted |= deleted
            raise
        logger.debug(f"Flushed {len(dirty)} threads, removed {len(deleted)}")
