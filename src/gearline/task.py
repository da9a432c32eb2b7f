"""Single unit of work submitted to a job server."""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from enum import Enum, IntEnum
from typing import Any

from gearline.errors import InvalidArgumentError, JobTypeError
from gearline.servers import ServerEndpoint

logger = logging.getLogger(__name__)


class TaskType(IntEnum):
    """Submission class of a task; values match the historical job type codes."""

    NORMAL = 1
    BACKGROUND = 2
    HIGH = 3
    HIGH_BACKGROUND = 4
    LOW = 5
    LOW_BACKGROUND = 6
    EPOCH = 7

    @property
    def is_background(self) -> bool:
        """Fire-and-forget types: the server never reports their outcome."""

        return self in _BACKGROUND_TYPES

    @property
    def submit_command(self) -> str:
        return _SUBMIT_COMMANDS[self]


_BACKGROUND_TYPES = frozenset(
    {TaskType.BACKGROUND, TaskType.HIGH_BACKGROUND, TaskType.LOW_BACKGROUND, TaskType.EPOCH},
)
_SUBMIT_COMMANDS = {
    TaskType.NORMAL: "submit_job",
    TaskType.BACKGROUND: "submit_job_bg",
    TaskType.HIGH: "submit_job_high",
    TaskType.HIGH_BACKGROUND: "submit_job_high_bg",
    TaskType.LOW: "submit_job_low",
    TaskType.LOW_BACKGROUND: "submit_job_low_bg",
    TaskType.EPOCH: "submit_job_epoch",
}


class TaskEvent(IntEnum):
    """Callback kinds a task can fire."""

    COMPLETE = 1
    FAIL = 2
    STATUS = 3


class TaskState(str, Enum):
    """Task lifecycle states."""

    CREATED = "created"
    AWAITING_HANDLE = "awaiting_handle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


CompleteCallback = Callable[[str, str, Any], object]
FailCallback = Callable[["Task"], object]
StatusCallback = Callable[[str, str, int, int], object]


class Task:
    """A job to run: function name, argument, uniqueness key and type.

    Callbacks are invoked with fixed signatures:

    - ``COMPLETE``: ``callback(func, handle, result)``
    - ``FAIL``: ``callback(task)``
    - ``STATUS``: ``callback(func, handle, numerator, denominator)``

    The uniqueness key defaults to a digest of function, argument and type so
    that identical submissions coalesce on the server that receives them. Keys
    and handles are only meaningful on that one server.
    """

    def __init__(
        self,
        func: str,
        arg: Any = "",
        unique: str | None = None,
        type: TaskType | int = TaskType.NORMAL,  # noqa: A002
        epoch: int = 0,
    ) -> None:
        try:
            task_type = TaskType(type)
        except ValueError as error:
            raise JobTypeError(
                f"Unknown job type: {type!r}. Expected one of {[t.value for t in TaskType]}",
            ) from error

        self.func = func
        self.arg = arg
        self.type = task_type
        self.epoch = epoch if task_type is TaskType.EPOCH else 0
        self.unique = unique if unique is not None else derive_unique(func, arg, task_type)
        self.handle = ""
        self.server: ServerEndpoint | None = None
        self.finished = False
        self.result: Any = None
        self.state = TaskState.CREATED
        self._callbacks: dict[TaskEvent, list[Callable[..., object]]] = {
            event: [] for event in TaskEvent
        }

    def __repr__(self) -> str:
        return (
            f"<Task func={self.func!r} unique={self.unique!r} type={self.type.name} "
            f"state={self.state.value} handle={self.handle!r}>"
        )

    @property
    def payload(self) -> bytes:
        """Argument as sent on the wire."""

        return encode_payload(self.arg)

    @property
    def callbacks(self) -> dict[TaskEvent, list[Callable[..., object]]]:
        return {event: list(callbacks) for event, callbacks in self._callbacks.items()}

    def attach_callback(
        self,
        callback: Callable[..., object],
        event: TaskEvent | int = TaskEvent.COMPLETE,
    ) -> Task:
        if not callable(callback):
            raise InvalidArgumentError("Invalid callback specified")
        try:
            kind = TaskEvent(event)
        except ValueError as error:
            raise InvalidArgumentError(f"Invalid callback type specified: {event!r}") from error
        self._callbacks[kind].append(callback)
        return self

    def mark_submitted(self, server: ServerEndpoint) -> None:
        self.server = server
        if self.state is TaskState.CREATED:
            self.state = TaskState.AWAITING_HANDLE

    def mark_created(self, handle: str) -> None:
        """Record the handle from the creation-ack.

        Fire-and-forget tasks complete here since no further result is reported.
        """

        self.handle = handle
        if self.type.is_background:
            self.finished = True
            self.state = TaskState.COMPLETED
        elif not self.finished:
            self.state = TaskState.RUNNING

    def mark_dispatched(self) -> None:
        """Finish a fire-and-forget task as soon as its submission is on the wire."""

        self.finished = True
        if self.state is not TaskState.FAILED:
            self.state = TaskState.COMPLETED

    def complete(self, result: Any) -> bool:
        """Terminal success; returns ``False`` if the task was already finished."""

        if self.finished:
            logger.debug("Ignoring completion for finished task %s", self.unique)
            return False
        self.finished = True
        self.result = result
        self.state = TaskState.COMPLETED
        for callback in self._callbacks[TaskEvent.COMPLETE]:
            callback(self.func, self.handle, result)
        return True

    def fail(self) -> bool:
        """Terminal failure; returns ``False`` if the task was already finished."""

        if self.finished:
            logger.debug("Ignoring failure for finished task %s", self.unique)
            return False
        self.finished = True
        self.state = TaskState.FAILED
        for callback in self._callbacks[TaskEvent.FAIL]:
            callback(self)
        return True

    def status(self, numerator: int, denominator: int) -> None:
        if self.finished:
            return
        for callback in self._callbacks[TaskEvent.STATUS]:
            callback(self.func, self.handle, numerator, denominator)


def encode_payload(value: Any) -> bytes:
    """Wire form of a task argument: text and bytes as is, anything else as JSON."""

    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")


def derive_unique(func: str, arg: Any, task_type: TaskType) -> str:
    digest = hashlib.md5(usedforsecurity=False)
    digest.update(func.encode("utf-8"))
    digest.update(encode_payload(arg))
    digest.update(str(int(task_type)).encode("ascii"))
    return digest.hexdigest()
