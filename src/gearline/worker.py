"""Worker loop that pulls jobs from every configured job server and runs them."""

from __future__ import annotations

import json
import logging
import os
import signal
import time
import uuid
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, NamedTuple

from gearline.connection import DEFAULT_CONNECT_TIMEOUT_MS, Connection, wait_readable
from gearline.errors import (
    InvalidArgumentError,
    NoServersAvailableError,
    ProtocolError,
    ServerConnectionError,
    WorkerExecutionError,
)
from gearline.protocol import raise_for_error
from gearline.servers import ServerEndpoint, ServerPool

logger = logging.getLogger(__name__)

DEFAULT_RETRY_SECONDS = 5.0
DEFAULT_IDLE_WAIT_SECONDS = 60.0
EMPTY_POOL_SLEEP_SECONDS = 1.0

JobFunction = Callable[[Any], Any]
Monitor = Callable[[bool, float], bool]
Connector = Callable[[ServerEndpoint, int], Connection]


class WorkerEvent(IntEnum):
    """Callback kinds fired around job execution."""

    START = 1
    COMPLETE = 2
    FAIL = 3


@dataclass(slots=True)
class WorkerFunction:
    """A registered job function."""

    name: str
    callback: JobFunction
    timeout: int | None = None


@dataclass(slots=True)
class AssignedJob:
    """Job handed to this worker by a job server."""

    function: str
    handle: str
    arg: Any
    connection: Connection


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    idle_waits: int = 0
    reconnects: int = 0


class PassOutcome(NamedTuple):
    worked: bool
    idle: bool


class Worker:
    """Registers functions with job servers and executes the jobs they assign.

    The loop is single-threaded: each pass asks every open connection for one
    job, sleeps on the sockets when none had work, and reconnects servers that
    dropped once ``retry_seconds`` have passed since their last attempt.
    """

    def __init__(  # noqa: PLR0913
        self,
        worker_id: str | None = None,
        *,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        retry_seconds: float = DEFAULT_RETRY_SECONDS,
        idle_wait_seconds: float = DEFAULT_IDLE_WAIT_SECONDS,
        empty_pool_sleep_seconds: float = EMPTY_POOL_SLEEP_SECONDS,
        connector: Connector | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.worker_id = worker_id or f"pid_{os.getpid()}_{uuid.uuid4().hex}"
        self.connect_timeout_ms = connect_timeout_ms
        self.retry_seconds = retry_seconds
        self.idle_wait_seconds = idle_wait_seconds
        self.empty_pool_sleep_seconds = empty_pool_sleep_seconds
        self.servers = ServerPool()
        self.retry_table: dict[ServerEndpoint, float] = {}
        self.summary = WorkerRunSummary()
        self._connector: Connector = connector or Connection.connect
        self._clock = clock
        self._sleep = sleep
        self._functions: dict[str, WorkerFunction] = {}
        self._callbacks: dict[WorkerEvent, list[Callable[..., object]]] = {
            event: [] for event in WorkerEvent
        }
        self._connections: dict[ServerEndpoint, Connection] = {}
        self._current_job: AssignedJob | None = None
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def __enter__(self) -> Worker:
        return self

    def __exit__(self, *_: object) -> None:
        self.end_work()

    def add_server(self, host: str = "localhost", port: int | None = None) -> Worker:
        self.servers.add(host, port)
        return self

    def add_servers(self, servers: str | Iterable[str]) -> Worker:
        self.servers.add_many(servers)
        return self

    @property
    def functions(self) -> dict[str, WorkerFunction]:
        return dict(self._functions)

    @property
    def connections(self) -> dict[ServerEndpoint, Connection]:
        return dict(self._connections)

    def add_function(
        self,
        name: str,
        callback: JobFunction,
        timeout: int | None = None,
    ) -> Worker:
        if name in self._functions:
            raise InvalidArgumentError(f"Function {name} is already registered")
        if not callable(callback):
            raise InvalidArgumentError(f"Callback for function {name} is not callable")
        self._functions[name] = WorkerFunction(name=name, callback=callback, timeout=timeout)
        return self

    def unregister(self, name: str) -> Worker:
        if name not in self._functions:
            raise InvalidArgumentError(f"Function {name} is not registered")
        del self._functions[name]
        self._broadcast("cant_do", {"func": name})
        return self

    def unregister_all(self) -> Worker:
        self._functions.clear()
        self._broadcast("reset_abilities")
        return self

    def attach_callback(
        self,
        callback: Callable[..., object],
        event: WorkerEvent | int = WorkerEvent.COMPLETE,
    ) -> None:
        """Run ``callback`` on job start, completion or failure.

        START and COMPLETE callbacks receive ``(handle, function, arg_or_result)``;
        FAIL callbacks receive ``(handle, function, WorkerExecutionError)``.
        """

        if not callable(callback):
            raise InvalidArgumentError("Invalid callback specified")
        try:
            kind = WorkerEvent(event)
        except ValueError as error:
            raise InvalidArgumentError(f"Invalid callback type specified: {event!r}") from error
        self._callbacks[kind].append(callback)

    def connect(self) -> None:
        """Connect to every configured server and announce registered functions."""

        now = self._clock()
        for endpoint in self.servers:
            if endpoint in self._connections:
                continue
            try:
                self._open(endpoint)
            except ServerConnectionError as error:
                logger.warning("Job server %s unavailable, will retry: %s", endpoint, error)
                self.retry_table[endpoint] = now

        if not self._connections:
            raise NoServersAvailableError("Couldn't connect to any available servers")
        self._announce_functions()

    def work(self, monitor: Monitor | None = None) -> WorkerRunSummary:
        """Run until ``monitor(idle, last_job_time)`` returns true or a stop is requested."""

        should_stop = monitor or self.stop_work
        self.connect()
        last_job = self._clock()
        with self._signal_handlers():
            while not self._stop_requested:
                outcome = self.run_pass()
                if outcome.worked:
                    last_job = self._clock()
                if should_stop(outcome.idle, last_job):
                    break
        return self.summary

    def run_pass(self) -> PassOutcome:
        """One iteration of the work loop."""

        worked = False
        for endpoint, connection in list(self._connections.items()):
            try:
                if self._work_on(connection):
                    worked = True
            except (ServerConnectionError, ProtocolError) as error:
                self._drop(endpoint, connection, error)

        idle = False
        if not worked and self._connections:
            idle = self._idle_wait()

        self.retry_dropped_connections()

        if not self._connections:
            self._sleep(self.empty_pool_sleep_seconds)
        return PassOutcome(worked=worked, idle=idle)

    def retry_dropped_connections(self) -> bool:
        """Reconnect servers whose last attempt is at least ``retry_seconds`` old."""

        now = self._clock()
        reconnected = False
        for endpoint, last_try in list(self.retry_table.items()):
            if now - last_try < self.retry_seconds:
                continue
            try:
                self._open(endpoint)
            except ServerConnectionError as error:
                logger.info("Reconnect to %s failed: %s", endpoint, error)
                self.retry_table[endpoint] = now
                continue
            del self.retry_table[endpoint]
            reconnected = True
            self.summary.reconnects += 1
            logger.info("Reconnected to job server %s", endpoint)

        if reconnected:
            self._announce_functions()
        return reconnected

    def job_status(self, numerator: int, denominator: int) -> None:
        """Report progress of the job currently executing."""

        job = self._current_job
        if job is None:
            raise RuntimeError("job_status() called while no job is executing")
        job.connection.send(
            "work_status",
            {"handle": job.handle, "numerator": numerator, "denominator": denominator},
        )

    def request_stop(self, *, signal_name: str | None = None) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        if signal_name:
            logger.info("Worker %s stopping on %s", self.worker_id, signal_name)

    def stop_work(self, idle: bool, last_job: float) -> bool:  # noqa: ARG002
        """Default monitor: keep working until a stop is requested."""

        return False

    def end_work(self) -> None:
        for connection in self._connections.values():
            connection.close()
        self._connections.clear()

    def _open(self, endpoint: ServerEndpoint) -> Connection:
        connection = self._connector(endpoint, self.connect_timeout_ms)
        connection.send("set_client_id", {"client_id": self.worker_id})
        self._connections[endpoint] = connection
        return connection

    def _drop(self, endpoint: ServerEndpoint, connection: Connection, error: Exception) -> None:
        logger.warning("Lost job server %s, scheduling retry: %s", endpoint, error)
        connection.close()
        self._connections.pop(endpoint, None)
        self.retry_table[endpoint] = self._clock()

    def _announce_functions(self) -> None:
        for endpoint, connection in list(self._connections.items()):
            try:
                for function in self._functions.values():
                    if function.timeout is None:
                        connection.send("can_do", {"func": function.name})
                    else:
                        connection.send(
                            "can_do_timeout",
                            {"func": function.name, "timeout": function.timeout},
                        )
            except ServerConnectionError as error:
                self._drop(endpoint, connection, error)

    def _broadcast(self, command: str, fields: dict[str, Any] | None = None) -> None:
        for endpoint, connection in list(self._connections.items()):
            try:
                connection.send(command, fields)
            except ServerConnectionError as error:
                self._drop(endpoint, connection, error)

    def _idle_wait(self) -> bool:
        self._broadcast("pre_sleep")
        if not self._connections:
            return False
        self.summary.idle_waits += 1
        ready = wait_readable(self._connections.values(), self.idle_wait_seconds)
        return not ready

    def _work_on(self, connection: Connection) -> bool:
        connection.send("grab_job")
        packet = connection.blocking_read()
        while packet.command == "noop":
            packet = connection.blocking_read()
        raise_for_error(packet)

        if packet.command == "no_job":
            return False
        if packet.command != "job_assign":
            raise ProtocolError(
                f"Expected job_assign after grab_job, got {packet.command} "
                f"from {connection.endpoint}",
            )

        self._execute(
            AssignedJob(
                function=packet["func"],
                handle=packet["handle"],
                arg=decode_argument(packet.get("arg")),
                connection=connection,
            ),
        )
        return True

    def _execute(self, job: AssignedJob) -> None:
        self.summary.processed += 1
        self._fire(WorkerEvent.START, job.handle, job.function, job.arg)

        registered = self._functions.get(job.function)
        if registered is None:
            self._report_failure(
                job,
                WorkerExecutionError(
                    f"Function {job.function} is not registered",
                    function=job.function,
                    handle=job.handle,
                ),
            )
            return

        self._current_job = job
        try:
            result = registered.callback(job.arg)
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s (%s) failed", job.handle, job.function)
            failure = WorkerExecutionError(
                str(error) or type(error).__name__,
                function=job.function,
                handle=job.handle,
            )
            failure.__cause__ = error
            self._report_failure(job, failure)
            return
        finally:
            self._current_job = None

        job.connection.send(
            "work_complete",
            {"handle": job.handle, "result": encode_result(result)},
        )
        self.summary.succeeded += 1
        self._fire(WorkerEvent.COMPLETE, job.handle, job.function, result)

    def _report_failure(self, job: AssignedJob, failure: WorkerExecutionError) -> None:
        job.connection.send("work_fail", {"handle": job.handle})
        self.summary.failed += 1
        self._fire(WorkerEvent.FAIL, job.handle, job.function, failure)

    def _fire(self, event: WorkerEvent, *args: Any) -> None:
        for callback in self._callbacks[event]:
            callback(*args)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def decode_argument(raw: str) -> Any:
    """JSON-decode a job argument, falling back to the raw text."""

    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def encode_result(result: Any) -> str | bytes:
    if result is None:
        return ""
    if isinstance(result, str | bytes):
        return result
    return json.dumps(result)
