from __future__ import annotations

import threading

import allure
import pytest

from agent_pipeline.orchestrator.models import SandboxHandle
from agent_pipeline.orchestrator.resources import ResourceTracker
from agent_pipeline.storage.common import utc_now

pytestmark = [
    allure.epic("Sandbox Lifecycle"),
    allure.feature("Resource Tracker"),
]


def _handle(sandbox_id: str, task_id: str = "task-1") -> SandboxHandle:
    return SandboxHandle(sandbox_id=sandbox_id, task_id=task_id, created_at=utc_now())


def test_release_stops_and_removes_exactly_once(provider) -> None:
    tracker = ResourceTracker(provider)
    handle = _handle("sb-1")
    assert tracker.register(handle) is True

    assert tracker.release(handle) is True
    assert tracker.release(handle) is False

    assert provider.stopped == ["sb-1"]
    assert provider.removed == ["sb-1"]
    assert len(tracker) == 0


def test_register_is_idempotent(provider) -> None:
    tracker = ResourceTracker(provider)
    handle = _handle("sb-1")

    assert tracker.register(handle) is True
    assert tracker.register(handle) is False
    assert tracker.active() == [handle]
    assert handle in tracker


def test_release_all_continues_after_remove_failure(provider) -> None:
    tracker = ResourceTracker(provider)
    first, second, third = _handle("sb-1"), _handle("sb-2"), _handle("sb-3")
    for handle in (first, second, third):
        tracker.register(handle)
    provider.fail_remove.add("sb-2")

    released = tracker.release_all()

    assert {handle.sandbox_id for handle in released} == {"sb-1", "sb-2", "sb-3"}
    assert sorted(provider.stopped) == ["sb-1", "sb-2", "sb-3"]
    assert sorted(provider.removed) == ["sb-1", "sb-3"]
    assert len(tracker) == 0


def test_release_for_task_only_touches_that_task(provider) -> None:
    tracker = ResourceTracker(provider)
    tracker.register(_handle("sb-a", task_id="a"))
    tracker.register(_handle("sb-b", task_id="b"))

    released = tracker.release_for_task("a")

    assert [handle.sandbox_id for handle in released] == ["sb-a"]
    assert [handle.sandbox_id for handle in tracker.active()] == ["sb-b"]


def test_concurrent_release_removes_once(provider) -> None:
    tracker = ResourceTracker(provider)
    handle = _handle("sb-1")
    tracker.register(handle)
    start = threading.Event()
    results: list[bool] = []

    def _release() -> None:
        start.wait(timeout=2)
        results.append(tracker.release(handle))

    threads = [threading.Thread(target=_release) for _ in range(8)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=5)

    assert results.count(True) == 1
    assert provider.removed == ["sb-1"]


def test_unknown_objects_are_not_contained(provider) -> None:
    tracker = ResourceTracker(provider)
    assert "sb-1" not in tracker


def test_remove_runs_when_stop_is_interrupted(provider) -> None:
    tracker = ResourceTracker(provider)
    handle = _handle("sb-1")
    tracker.register(handle)

    def _interrupted_stop(_handle: SandboxHandle) -> None:
        raise KeyboardInterrupt

    provider.stop = _interrupted_stop

    with pytest.raises(KeyboardInterrupt):
        tracker.release(handle)

    assert provider.removed == ["sb-1"]
    assert tracker.in_flight() == []
