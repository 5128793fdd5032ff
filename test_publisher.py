"""Tests for the coalescing stream-state publisher."""

import asyncio

import pytest

from agent.publisher import CoalescingPublisher


@pytest.mark.asyncio
async def test_bursts_are_coalesced_and_trailing_update_flushed():
    fired = []
    pub = CoalescingPublisher(fired.append, min_interval_ms=20)

    pub.submit("t1")
    pub.submit("t1")
    pub.submit("t1")
    assert fired == ["t1"]
    assert pub.has_pending("t1")

    await asyncio.sleep(0.06)
    assert fired == ["t1", "t1"]
    assert not pub.has_pending("t1")


@pytest.mark.asyncio
async def test_terminal_update_is_immediate_and_replaces_pending():
    fired = []
    pub = CoalescingPublisher(fired.append, min_interval_ms=1000)

    pub.submit("t1")
    pub.submit("t1")
    assert pub.has_pending("t1")
    pub.submit("t1", terminal=True)
    assert fired == ["t1", "t1"]
    assert not pub.has_pending("t1")


@pytest.mark.asyncio
async def test_keys_are_throttled_independently():
    fired = []
    pub = CoalescingPublisher(fired.append, min_interval_ms=1000)
    pub.submit("a")
    pub.submit("b")
    pub.submit("a")
    assert fired == ["a", "b"]
    assert pub.has_pending("a") and not pub.has_pending("b")


@pytest.mark.asyncio
async def test_flush_and_forget():
    fired = []
    pub = CoalescingPublisher(fired.append, min_interval_ms=1000)
    pub.submit("a")
    pub.submit("a")
    pub.submit("b")
    pub.submit("b")

    pub.forget("b")
    pub.flush()
    assert fired == ["a", "b", "a"]
    assert not pub.has_pending("a") and not pub.has_pending("b")


def test_without_event_loop_updates_fire_synchronously():
    fired = []
    pub = CoalescingPublisher(fired.append, min_interval_ms=1000)
    pub.submit("a")
    pub.submit("a")
    assert fired == ["a", "a"]


def test_listener_failure_does_not_propagate():
    def boom(key):
        raise RuntimeError("listener broke")

    pub = CoalescingPublisher(boom, min_interval_ms=0)
    pub.submit("a")
