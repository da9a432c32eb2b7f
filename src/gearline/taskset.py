"""Batches of tasks submitted and tracked together."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from typing import Any

from gearline.errors import InvalidArgumentError, TaskNotFoundError, UnknownHandleError
from gearline.servers import ServerEndpoint
from gearline.task import Task

SetCallback = Callable[[list[Any]], object]
HandleKey = tuple[ServerEndpoint | None, str]


class TaskSet:
    """Tasks keyed by uniqueness key, in insertion order.

    Handles are only unique per job server, so the handle map is keyed by
    ``(server, handle)``.

    ``remaining`` counts tasks that have not finished yet. The batch callback,
    if attached, runs exactly once when that count reaches zero and receives
    every task's result in set order.

    Example::

        task_set = TaskSet([Task("reverse", "abc"), Task("upper", "abc")])
        task_set.attach_callback(print)
        client.run_set(task_set)
    """

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self.tasks: dict[str, Task] = {}
        self.handles: dict[HandleKey, str] = {}
        self.remaining = 0
        self._callback: SetCallback | None = None
        self._callback_fired = False
        for task in tasks:
            self.add_task(task)

    def __iter__(self) -> Iterator[Task]:
        return iter(self.tasks.values())

    def __len__(self) -> int:
        return len(self.tasks)

    def add_task(self, task: Task) -> bool:
        """Add ``task``; a task whose uniqueness key is already present is ignored."""

        if task.unique in self.tasks:
            return False
        self.tasks[task.unique] = task
        if not task.finished:
            self.remaining += 1
        return True

    def attach_callback(self, callback: SetCallback) -> TaskSet:
        if not callable(callback):
            raise InvalidArgumentError("Invalid callback specified")
        self._callback = callback
        return self

    def register_handle(self, handle: str, task: Task) -> None:
        task.mark_created(handle)
        self.handles[(task.server, handle)] = task.unique

    def get_task(self, handle: str, server: ServerEndpoint | None = None) -> Task:
        unique = self.handles.get((server, handle))
        if unique is None:
            raise UnknownHandleError(f"Unknown handle: {handle!r} from {server or '-'}")
        task = self.tasks.get(unique)
        if task is None:
            raise TaskNotFoundError(f"No task by handle {handle!r} (unique {unique!r})")
        return task

    def complete_task(self, task: Task, result: Any) -> None:
        if task.complete(result):
            self._decrement()

    def fail_task(self, task: Task) -> None:
        if task.fail():
            self._decrement()

    def dispatch_task(self, task: Task) -> None:
        """Count a fire-and-forget task as done once it has been submitted."""

        if not task.finished:
            task.mark_dispatched()
            self._decrement()

    def results(self) -> list[Any]:
        return [task.result for task in self.tasks.values()]

    def unfinished(self) -> list[Task]:
        return [task for task in self.tasks.values() if not task.finished]

    def finished(self) -> bool:
        """Whether every task has finished; fires the batch callback the first time."""

        if self.remaining != 0:
            return False
        if self._callback is not None and not self._callback_fired:
            self._callback_fired = True
            self._callback(self.results())
        return True

    def _decrement(self) -> None:
        self.remaining = max(0, self.remaining - 1)
