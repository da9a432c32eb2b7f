"""Client and worker engine for the Gearman job-distribution protocol."""

from gearline.admin import AdminClient
from gearline.client import Client, RunSetSummary
from gearline.errors import (
    GearmanError,
    InvalidArgumentError,
    JobTypeError,
    NoServersAvailableError,
    ProtocolError,
    ServerConnectionError,
    ServerErrorResponse,
    TaskNotFoundError,
    UnknownHandleError,
    WorkerExecutionError,
)
from gearline.task import Task, TaskEvent, TaskState, TaskType
from gearline.taskset import TaskSet
from gearline.worker import Worker, WorkerEvent

__version__ = "0.1.0"

__all__ = [
    "AdminClient",
    "Client",
    "GearmanError",
    "InvalidArgumentError",
    "JobTypeError",
    "NoServersAvailableError",
    "ProtocolError",
    "RunSetSummary",
    "ServerConnectionError",
    "ServerErrorResponse",
    "Task",
    "TaskEvent",
    "TaskNotFoundError",
    "TaskSet",
    "TaskState",
    "TaskType",
    "UnknownHandleError",
    "Worker",
    "WorkerEvent",
    "WorkerExecutionError",
    "__version__",
]
