"""Tests for sharded thread persistence."""

import asyncio
import json
import os

import pytest

from agent.messages import AssistantMessage, CheckpointMessage, Snapshot, Thread, UserMessage
from thread_store import (
    INDEX_KEY,
    LEGACY_KEY,
    JsonFileStorage,
    MemoryStorage,
    ThreadStore,
    shard_key,
)


class CountingStorage(MemoryStorage):

    def __init__(self, initial=None):
        super().__init__(initial)
        self.writes = []
        self.fail_next = False

    def set(self, key, value):
        if self.fail_next:
            self.fail_next = False
            raise OSError("quota exceeded")
        self.writes.append(key)
        super().set(key, value)


def _thread(text: str) -> Thread:
    return Thread(messages=[
        CheckpointMessage({"a.py": Snapshot("x")}),
        UserMessage(text),
        AssistantMessage(f"re: {text}"),
    ])


@pytest.fixture
def threads():
    one, two = _thread("one"), _thread("two")
    return {one.id: one, two.id: two}


def test_each_thread_gets_its_own_shard(threads):
    storage = MemoryStorage()
    store = ThreadStore(storage)
    store.attach(threads)
    for thread_id in threads:
        store.mark_dirty(thread_id)

    assert set(json.loads(storage.get(INDEX_KEY))) == set(threads)
    for thread_id, thread in threads.items():
        assert json.loads(storage.get(shard_key(thread_id))) == thread.to_dict()


def test_load_all_restores_threads(threads):
    storage = MemoryStorage()
    store = ThreadStore(storage)
    store.attach(threads)
    for thread_id in threads:
        store.mark_dirty(thread_id)

    loaded = ThreadStore(storage).load_all()
    assert {tid: t.to_dict() for tid, t in loaded.items()} == {tid: t.to_dict() for tid, t in threads.items()}


def test_only_dirty_threads_are_rewritten(threads):
    storage = CountingStorage()
    store = ThreadStore(storage)
    store.attach(threads)
    for thread_id in threads:
        store.mark_dirty(thread_id)
    storage.writes.clear()

    first = next(iter(threads))
    threads[first].messages.append(UserMessage("more"))
    store.mark_dirty(first)
    assert sorted(storage.writes) == sorted([shard_key(first), INDEX_KEY])


def test_deleted_thread_shard_is_removed(threads):
    storage = MemoryStorage()
    store = ThreadStore(storage)
    store.attach(threads)
    for thread_id in threads:
        store.mark_dirty(thread_id)

    gone = next(iter(threads))
    del threads[gone]
    store.mark_deleted(gone)
    assert storage.get(shard_key(gone)) is None
    assert gone not in json.loads(storage.get(INDEX_KEY))


def test_legacy_record_is_migrated_to_shards():
    thread = _thread("legacy")
    storage = MemoryStorage({LEGACY_KEY: json.dumps({thread.id: thread.to_dict(), "empty": None})})

    loaded = ThreadStore(storage).load_all()
    assert list(loaded) == [thread.id]
    assert loaded[thread.id].to_dict() == thread.to_dict()
    assert storage.get(LEGACY_KEY) is None
    assert storage.get(shard_key(thread.id)) is not None
    assert json.loads(storage.get(INDEX_KEY)) == {thread.id: True}


def test_unreadable_shards_are_skipped():
    good = _thread("good")
    storage = MemoryStorage({
        INDEX_KEY: json.dumps({good.id: True, "broken": True, "absent": True}),
        shard_key(good.id): json.dumps(good.to_dict()),
        shard_key("broken"): "{not json",
    })
    assert list(ThreadStore(storage).load_all()) == [good.id]


def test_flush_waits_while_streaming(threads):
    storage = MemoryStorage()
    streaming = {"on": True}
    store = ThreadStore(storage, is_streaming=lambda: streaming["on"])
    store.attach(threads)
    first = next(iter(threads))

    store.mark_dirty(first)
    assert storage.get(shard_key(first)) is None
    assert store.pending

    store.force_flush()
    assert storage.get(shard_key(first)) is not None
    assert not store.pending


def test_failed_flush_keeps_threads_dirty(threads):
    storage = CountingStorage()
    store = ThreadStore(storage)
    store.attach(threads)
    first = next(iter(threads))

    storage.fail_next = True
    with pytest.raises(OSError):
        store.mark_dirty(first)
    assert store.pending

    store.flush()
    assert storage.get(shard_key(first)) is not None
    assert not store.pending


@pytest.mark.asyncio
async def test_writes_are_debounced_on_the_event_loop(threads):
    storage = CountingStorage()
    store = ThreadStore(storage, debounce_ms=20)
    store.attach(threads)
    first = next(iter(threads))

    store.mark_dirty(first)
    store.mark_dirty(first)
    assert storage.writes == []

    await asyncio.sleep(0.08)
    assert storage.writes.count(shard_key(first)) == 1


def test_json_file_storage_round_trip(tmp_path):
    storage = JsonFileStorage(str(tmp_path / "threads"))
    storage.set(shard_key("abc-123"), '{"id": "abc-123"}')
    storage.set("weird/key:name", "value")

    assert storage.get(shard_key("abc-123")) == '{"id": "abc-123"}'
    assert storage.get("weird/key:name") == "value"
    assert shard_key("abc-123") in storage.keys()
    assert not any(name.endswith(".tmp") for name in os.listdir(tmp_path / "threads"))

    storage.delete(shard_key("abc-123"))
    assert storage.get(shard_key("abc-123")) is None
    assert storage.get("never-written") is None


def test_thread_store_over_json_files(tmp_path, threads):
    storage = JsonFileStorage(str(tmp_path / "threads"))
    store = ThreadStore(storage)
    store.attach(threads)
    for thread_id in threads:
        store.mark_dirty(thread_id)

    reloaded = ThreadStore(JsonFileStorage(str(tmp_path / "threads"))).load_all()
    assert set(reloaded) == set(threads)
