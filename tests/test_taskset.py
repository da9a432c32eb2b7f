from __future__ import annotations

import allure
import pytest

from gearline.errors import InvalidArgumentError, TaskNotFoundError, UnknownHandleError
from gearline.servers import ServerEndpoint
from gearline.task import Task, TaskType
from gearline.taskset import TaskSet

pytestmark = [
    allure.epic("Task Submission"),
    allure.feature("Task Sets"),
]


def test_duplicate_unique_key_is_ignored() -> None:
    task_set = TaskSet()

    assert task_set.add_task(Task("f", "a", unique="k")) is True
    assert task_set.add_task(Task("f", "b", unique="k")) is False
    assert len(task_set) == 1
    assert task_set.remaining == 1


def test_batch_callback_fires_once_with_results_in_set_order() -> None:
    calls: list[list[str]] = []
    first, second = Task("f", "1", unique="a"), Task("f", "2", unique="b")
    task_set = TaskSet([first, second]).attach_callback(calls.append)
    task_set.register_handle("H:1", first)
    task_set.register_handle("H:2", second)

    task_set.complete_task(second, "two")
    assert task_set.finished() is False
    task_set.complete_task(first, "one")

    assert task_set.finished() is True
    assert task_set.finished() is True
    assert calls == [["one", "two"]]


def test_remaining_only_decrements_on_real_transitions() -> None:
    task = Task("f", unique="a")
    task_set = TaskSet([task, Task("f", unique="b")])

    task_set.complete_task(task, "x")
    task_set.complete_task(task, "y")
    task_set.fail_task(task)

    assert task_set.remaining == 1
    assert [t.unique for t in task_set.unfinished()] == ["b"]


def test_get_task_distinguishes_unknown_handle_from_missing_task() -> None:
    task = Task("f", unique="a")
    task_set = TaskSet([task])
    task_set.register_handle("H:1", task)
    task_set.handles[(None, "H:ghost")] = "gone"

    assert task_set.get_task("H:1") is task
    with pytest.raises(UnknownHandleError):
        task_set.get_task("H:unknown")
    with pytest.raises(TaskNotFoundError):
        task_set.get_task("H:ghost")


def test_same_handle_from_different_servers_maps_to_different_tasks() -> None:
    first, second = Task("f", "1", unique="a"), Task("f", "2", unique="b")
    gm1, gm2 = ServerEndpoint("gm1.local"), ServerEndpoint("gm2.local")
    first.mark_submitted(gm1)
    second.mark_submitted(gm2)
    task_set = TaskSet([first, second])

    task_set.register_handle("H:1", first)
    task_set.register_handle("H:1", second)

    assert task_set.get_task("H:1", server=gm1) is first
    assert task_set.get_task("H:1", server=gm2) is second
    with pytest.raises(UnknownHandleError):
        task_set.get_task("H:1")


def test_dispatch_counts_background_task_done() -> None:
    task = Task("log", type=TaskType.BACKGROUND)
    task_set = TaskSet([task])

    task_set.dispatch_task(task)
    task_set.dispatch_task(task)

    assert task_set.remaining == 0
    assert task.finished is True


def test_attach_callback_rejects_non_callable() -> None:
    with pytest.raises(InvalidArgumentError):
        TaskSet().attach_callback(None)
