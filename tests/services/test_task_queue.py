"""Tests for the in-process trigger queue."""

import asyncio
import logging
from datetime import timedelta

import pytest

from agentrelay.db.models import utc_now
from agentrelay.services.task_queue import RecordingTaskQueue, TaskQueue


class Collector:
    def __init__(self):
        self.calls = []

    async def __call__(self, data):
        self.calls.append(data)


@pytest.mark.asyncio
async def test_send_runs_registered_handler():
    queue = TaskQueue()
    collector = Collector()
    queue.register("demo/ping", collector)
    await queue.start()

    queue.send("demo/ping", {"n": 1})
    await asyncio.sleep(0)
    await queue.drain()
    await queue.stop()

    assert collector.calls == [{"n": 1}]


@pytest.mark.asyncio
async def test_triggers_sent_before_start_are_flushed():
    queue = TaskQueue()
    collector = Collector()
    queue.register("demo/ping", collector)

    queue.send("demo/ping", {"n": 1})
    assert collector.calls == []
    await queue.start()
    await queue.drain()
    await queue.stop()

    assert collector.calls == [{"n": 1}]


@pytest.mark.asyncio
async def test_rearming_a_key_replaces_the_timer():
    queue = TaskQueue()
    collector = Collector()
    queue.register("demo/timeout", collector)
    await queue.start()

    queue.schedule_at(utc_now() + timedelta(minutes=5), "demo/timeout", {"v": "old"}, key="evt-1")
    queue.schedule_at(utc_now() - timedelta(seconds=1), "demo/timeout", {"v": "new"}, key="evt-1")
    await asyncio.sleep(0.05)
    await queue.drain()
    await queue.stop()

    assert collector.calls == [{"v": "new"}]


@pytest.mark.asyncio
async def test_handler_failure_is_logged_not_raised(caplog):
    queue = TaskQueue()

    async def broken(data):
        raise RuntimeError("boom")

    queue.register("demo/broken", broken)
    await queue.start()
    with caplog.at_level(logging.ERROR, logger="agentrelay.services.task_queue"):
        queue.send("demo/broken", {})
        await asyncio.sleep(0)
        await queue.drain()
    await queue.stop()

    assert "Handler for demo/broken failed" in caplog.text


def test_schedule_requires_started_queue():
    with pytest.raises(RuntimeError):
        TaskQueue().schedule_at(utc_now(), "demo/timeout", {})


def test_recording_queue_filters_by_name():
    queue = RecordingTaskQueue()
    queue.send("a", {"x": 1})
    queue.send("b", {"x": 2})
    queue.send("a", {"x": 3})
    assert queue.sent_named("a") == [{"x": 1}, {"x": 3}]
