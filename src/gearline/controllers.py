"""Controllers for gearline CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from gearline.admin import AdminClient
from gearline.client import Client
from gearline.config import Settings
from gearline.handlers import BUILTIN_FUNCTIONS
from gearline.task import Task, TaskState, TaskType
from gearline.taskset import TaskSet
from gearline.worker import Worker

_FOREGROUND_TYPES = {
    "normal": TaskType.NORMAL,
    "high": TaskType.HIGH,
    "low": TaskType.LOW,
}
_BACKGROUND_TYPES = {
    "normal": TaskType.BACKGROUND,
    "high": TaskType.HIGH_BACKGROUND,
    "low": TaskType.LOW_BACKGROUND,
}


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for one task submission."""

    servers: tuple[str, ...]
    function: str
    workload: str
    priority: str = "normal"
    background: bool = False
    epoch: int | None = None
    unique: str | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class EchoCommand:
    """CLI input for an echo round trip."""

    servers: tuple[str, ...]
    text: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    servers: tuple[str, ...]
    functions: tuple[str, ...]
    max_jobs: int | None = None
    idle_exit: bool = False


@dataclass(slots=True)
class AdminCommand:
    """CLI input for an administrative command."""

    server: str | None
    action: str
    function: str | None = None
    size: int | None = None
    graceful: bool = False


@dataclass(slots=True)
class CommandResult:
    """Lines to render in CLI plus overall success."""

    lines: list[str]
    success: bool = True


class GearlineCliController:
    """Coordinates client, worker and admin CLI operations."""

    def submit(self, command: SubmitCommand) -> CommandResult:
        settings = _settings(command.servers)
        task = Task(
            command.function,
            command.workload,
            unique=command.unique,
            type=_task_type(command),
            epoch=command.epoch or 0,
        )
        with _client(settings) as client:
            summary = client.run_set(TaskSet([task]), timeout=command.timeout_seconds)

        header = (
            f"Task: func={task.func} unique={task.unique} type={task.type.name.lower()} "
            f"handle={task.handle or '-'} server={task.server or '-'}"
        )
        if summary.timed_out:
            return CommandResult(lines=[header, "Timed out waiting for the job."], success=False)
        if task.state is TaskState.FAILED:
            return CommandResult(lines=[header, "Job failed."], success=False)
        if task.type.is_background:
            return CommandResult(lines=[header, "Submitted in background."])
        return CommandResult(lines=[header, f"Result: {task.result}"])

    def echo(self, command: EchoCommand) -> list[str]:
        settings = _settings(command.servers)
        with _client(settings) as client:
            return [f"Echo: {client.echo(command.text)}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.servers)
        worker = Worker(
            settings.worker.worker_id,
            connect_timeout_ms=settings.worker.connect_timeout_ms,
            retry_seconds=settings.worker.retry_seconds,
            idle_wait_seconds=settings.worker.idle_wait_seconds,
        )
        worker.add_servers(settings.servers)
        for name in command.functions or tuple(BUILTIN_FUNCTIONS):
            worker.add_function(name, BUILTIN_FUNCTIONS[name])

        def _should_stop(idle: bool, _last_job: float) -> bool:
            if command.max_jobs is not None and worker.summary.processed >= command.max_jobs:
                return True
            return command.idle_exit and idle

        with worker:
            summary = worker.work(_should_stop)

        return [
            "Worker summary: "
            f"id={worker.worker_id} processed={summary.processed} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"idle_waits={summary.idle_waits} reconnects={summary.reconnects}",
        ]

    def admin(self, command: AdminCommand) -> list[str]:
        settings = _settings((command.server,) if command.server else ())
        with AdminClient(settings.servers[0], timeout=settings.admin.timeout_seconds) as admin:
            if command.action == "version":
                return [f"Version: {admin.version()}"]
            if command.action == "status":
                statuses = admin.status()
                lines = [f"Functions: {len(statuses)}"]
                for status in statuses.values():
                    lines.append(
                        f"  {status.function} queued={status.in_queue} "
                        f"running={status.jobs_running} workers={status.capable_workers}",
                    )
                return lines
            if command.action == "workers":
                workers = admin.workers()
                lines = [f"Workers: {len(workers)}"]
                for info in workers:
                    lines.append(
                        f"  fd={info.fd} ip={info.ip} id={info.client_id} "
                        f"abilities={','.join(info.abilities) or '-'}",
                    )
                return lines
            if command.action == "maxqueue":
                if command.function is None or command.size is None:
                    raise ValueError("maxqueue requires a function name and a size")
                ok = admin.set_max_queue_size(command.function, command.size)
                return [f"Max queue for {command.function}: {'OK' if ok else 'rejected'}"]
            if command.action == "shutdown":
                ok = admin.shutdown(graceful=command.graceful)
                return [f"Shutdown: {'OK' if ok else 'rejected'}"]
        raise ValueError(f"Unknown admin action: {command.action!r}")


def _task_type(command: SubmitCommand) -> TaskType:
    if command.epoch is not None:
        return TaskType.EPOCH
    table = _BACKGROUND_TYPES if command.background else _FOREGROUND_TYPES
    try:
        return table[command.priority]
    except KeyError as error:
        raise ValueError(f"Unsupported priority: {command.priority!r}") from error


def _settings(servers: tuple[str, ...]) -> Settings:
    settings = Settings.from_env(servers=servers)
    settings.validate()
    return settings


@contextmanager
def _client(settings: Settings) -> Iterator[Client]:
    client = Client(
        settings.client.connect_timeout_ms,
        poll_ceiling_seconds=settings.client.poll_ceiling_seconds,
    )
    client.add_servers(settings.servers)
    try:
        yield client
    finally:
        client.disconnect()
