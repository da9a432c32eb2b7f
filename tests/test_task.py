from __future__ import annotations

import allure
import pytest

from gearline.errors import InvalidArgumentError, JobTypeError
from gearline.servers import ServerEndpoint
from gearline.task import Task, TaskEvent, TaskState, TaskType, derive_unique

pytestmark = [
    allure.epic("Task Submission"),
    allure.feature("Task Lifecycle"),
]


def test_unknown_type_code_raises_job_type_error() -> None:
    with pytest.raises(JobTypeError):
        Task("reverse", "abc", type=8)


def test_type_codes_map_to_submit_commands() -> None:
    assert Task("f", type=3).type is TaskType.HIGH
    assert TaskType.LOW_BACKGROUND.submit_command == "submit_job_low_bg"
    assert TaskType.EPOCH.is_background is True
    assert TaskType.HIGH.is_background is False


def test_derived_unique_is_stable_and_depends_on_type() -> None:
    first = Task("reverse", {"text": "abc"})
    second = Task("reverse", {"text": "abc"})
    background = Task("reverse", {"text": "abc"}, type=TaskType.BACKGROUND)

    assert first.unique == second.unique == derive_unique("reverse", {"text": "abc"}, 1)
    assert background.unique != first.unique


def test_payload_keeps_text_and_serializes_structures() -> None:
    assert Task("f", "plain").payload == b"plain"
    assert Task("f", b"\x00raw").payload == b"\x00raw"
    assert Task("f", {"b": 1, "a": [1, 2]}).payload == b'{"a":[1,2],"b":1}'


def test_epoch_is_only_kept_for_epoch_tasks() -> None:
    assert Task("f", epoch=1_700_000_000).epoch == 0
    assert Task("f", type=TaskType.EPOCH, epoch=1_700_000_000).epoch == 1_700_000_000


def test_attach_callback_validates_callable_and_kind() -> None:
    task = Task("f")

    with pytest.raises(InvalidArgumentError, match="Invalid callback specified"):
        task.attach_callback("not callable")
    with pytest.raises(InvalidArgumentError, match="Invalid callback type"):
        task.attach_callback(print, 9)


def test_callbacks_lists_attached_callbacks_per_event() -> None:
    failed: list[Task] = []
    task = Task("f").attach_callback(failed.append, TaskEvent.FAIL)

    registered = task.callbacks
    assert registered[TaskEvent.FAIL] == [failed.append]
    assert registered[TaskEvent.COMPLETE] == []
    assert registered[TaskEvent.STATUS] == []

    registered[TaskEvent.FAIL].clear()
    assert task.callbacks[TaskEvent.FAIL] == [failed.append]


def test_complete_fires_callbacks_once_and_ignores_later_outcomes() -> None:
    completed: list[tuple[str, str, str]] = []
    failed: list[Task] = []
    task = Task("reverse", "abc")
    task.attach_callback(lambda *args: completed.append(args))
    task.attach_callback(failed.append, TaskEvent.FAIL)
    task.mark_submitted(ServerEndpoint("localhost"))
    task.mark_created("H:1")

    assert task.state is TaskState.RUNNING
    assert task.complete("cba") is True
    assert task.complete("again") is False
    assert task.fail() is False

    assert completed == [("reverse", "H:1", "cba")]
    assert failed == []
    assert task.result == "cba"
    assert task.state is TaskState.COMPLETED


def test_fail_invokes_fail_callback_with_task() -> None:
    failed: list[Task] = []
    task = Task("boom").attach_callback(failed.append, TaskEvent.FAIL)

    task.fail()

    assert failed == [task]
    assert task.finished is True
    assert task.state is TaskState.FAILED


def test_status_callbacks_stop_after_finish() -> None:
    updates: list[tuple[int, int]] = []
    task = Task("slow").attach_callback(
        lambda _func, _handle, num, den: updates.append((num, den)),
        TaskEvent.STATUS,
    )

    task.status(1, 4)
    task.complete("ok")
    task.status(4, 4)

    assert updates == [(1, 4)]


def test_background_task_completes_on_creation_ack() -> None:
    task = Task("log", "line", type=TaskType.BACKGROUND)

    task.mark_created("H:7")

    assert task.finished is True
    assert task.handle == "H:7"
    assert task.state is TaskState.COMPLETED
