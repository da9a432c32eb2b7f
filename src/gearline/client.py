"""Client that submits task sets to job servers and collects their outcome."""

from __future__ import annotations

import logging
import os
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from gearline.connection import DEFAULT_CONNECT_TIMEOUT_MS, Connection, wait_readable
from gearline.errors import (
    NoServersAvailableError,
    ProtocolError,
    ServerConnectionError,
    ServerErrorResponse,
    TaskNotFoundError,
    UnknownHandleError,
)
from gearline.protocol import FieldValue, Packet, raise_for_error
from gearline.selection import RandomSelector, ServerSelector
from gearline.servers import ServerEndpoint, ServerPool
from gearline.task import Task, TaskType
from gearline.taskset import TaskSet

logger = logging.getLogger(__name__)

DEFAULT_POLL_CEILING_SECONDS = 10.0

Connector = Callable[[ServerEndpoint, int], Connection]


@dataclass(slots=True)
class RunSetSummary:
    """Outcome of one ``Client.run_set`` call."""

    submitted: int = 0
    finished: int = 0
    unfinished: list[Task] = field(default_factory=list)
    timed_out: bool = False
    dropped_servers: list[ServerEndpoint] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.unfinished


@dataclass(slots=True)
class JobStatus:
    """Answer to a ``get_status`` request."""

    handle: str
    known: bool
    running: bool
    numerator: int
    denominator: int


class _SetRun:
    """Per-run bookkeeping: open pool, pending creation-acks and submitted tasks."""

    def __init__(self, task_set: TaskSet, connections: Iterable[Connection]) -> None:
        self.task_set = task_set
        self.pool = list(connections)
        self.pending: dict[Connection, deque[Task]] = {conn: deque() for conn in self.pool}
        self.assigned: dict[Connection, list[Task]] = {conn: [] for conn in self.pool}
        self.dropped: list[ServerEndpoint] = []

    def awaiting_handles(self) -> bool:
        return any(self.pending.values())

    def record_submission(self, connection: Connection, task: Task) -> None:
        task.mark_submitted(connection.endpoint)
        self.pending[connection].append(task)
        self.assigned[connection].append(task)
        if task.type.is_background:
            self.task_set.dispatch_task(task)

    def drop(self, connection: Connection, error: Exception) -> None:
        """Remove ``connection`` from the pool and fail what was in flight on it."""

        logger.warning("Dropping job server %s: %s", connection.endpoint, error)
        connection.close()
        if connection in self.pool:
            self.pool.remove(connection)
            self.dropped.append(connection.endpoint)
        self.pending.pop(connection, None)
        for task in self.assigned.pop(connection, []):
            if not task.finished:
                self.task_set.fail_task(task)


class Client:
    """Submit tasks to a pool of job servers.

    Each task goes to a connection chosen by ``selector`` (uniform random by
    default). ``run_set`` then multiplexes reads across every open connection
    until the set finishes or the caller's timeout elapses.
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        *,
        selector: ServerSelector | None = None,
        connector: Connector | None = None,
        poll_ceiling_seconds: float = DEFAULT_POLL_CEILING_SECONDS,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.selector: ServerSelector = selector or RandomSelector()
        self.poll_ceiling_seconds = poll_ceiling_seconds
        self.servers = ServerPool()
        self._connector: Connector = connector or Connection.connect
        self._connections: dict[ServerEndpoint, Connection] = {}

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *_: object) -> None:
        self.disconnect()

    def add_server(self, host: str = "localhost", port: int | None = None) -> Client:
        self.servers.add(host, port)
        return self

    def add_servers(self, servers: str | Iterable[str]) -> Client:
        self.servers.add_many(servers)
        return self

    @property
    def connections(self) -> list[Connection]:
        return [conn for conn in self._connections.values() if conn.is_connected]

    def do_normal(self, func: str, workload: Any, unique: str | None = None) -> Any:
        """Run one task and return its result (``None`` if the job failed)."""

        return self._run_single(func, workload, unique, TaskType.NORMAL).result

    def do_high(self, func: str, workload: Any, unique: str | None = None) -> Any:
        return self._run_single(func, workload, unique, TaskType.HIGH).result

    def do_low(self, func: str, workload: Any, unique: str | None = None) -> Any:
        return self._run_single(func, workload, unique, TaskType.LOW).result

    def do_background(self, func: str, workload: Any, unique: str | None = None) -> Task:
        """Submit a fire-and-forget task; the returned task carries its handle."""

        return self._run_single(func, workload, unique, TaskType.BACKGROUND)

    def do_high_background(self, func: str, workload: Any, unique: str | None = None) -> Task:
        return self._run_single(func, workload, unique, TaskType.HIGH_BACKGROUND)

    def do_low_background(self, func: str, workload: Any, unique: str | None = None) -> Task:
        return self._run_single(func, workload, unique, TaskType.LOW_BACKGROUND)

    def do_epoch(
        self,
        func: str,
        workload: Any,
        epoch: int,
        unique: str | None = None,
    ) -> Task:
        """Schedule a background task to run at unix time ``epoch``."""

        return self._run_single(func, workload, unique, TaskType.EPOCH, epoch=epoch)

    def run_set(self, task_set: TaskSet, timeout: float | None = None) -> RunSetSummary:
        """Submit every unfinished task in ``task_set`` and wait for the outcome.

        With ``timeout`` (seconds) the loop stops once that much wall time has
        passed; tasks still outstanding are listed in the summary rather than
        raised as an error.
        """

        run = _SetRun(task_set, self._open_connections())
        queue = [task for task in task_set if not task.finished]
        wait = self.poll_ceiling_seconds
        if timeout is not None:
            wait = min(wait, timeout)

        started = time.monotonic()
        submitted = 0
        timed_out = False
        try:
            while not task_set.finished():
                if submitted < len(queue):
                    self._submit(run, queue[submitted])
                    submitted += 1
                elif not run.pool:
                    break

                self._collect(run, wait)

                if timeout is not None and time.monotonic() - started >= timeout:
                    timed_out = not task_set.finished()
                    break

            if not timed_out:
                self._drain_acks(run, wait)
        finally:
            self._discard_unsettled(run)

        unfinished = task_set.unfinished()
        summary = RunSetSummary(
            submitted=submitted,
            finished=len(task_set) - len(unfinished),
            unfinished=unfinished,
            timed_out=timed_out,
            dropped_servers=run.dropped,
        )
        logger.info(
            "Task set run: submitted=%d finished=%d unfinished=%d timed_out=%s",
            summary.submitted,
            summary.finished,
            len(summary.unfinished),
            summary.timed_out,
        )
        return summary

    def echo(self, text: str) -> str:
        """Round-trip ``text`` through one job server."""

        connections = self._open_connections()
        connection = self.selector.choose(connections)
        connection.send("echo_req", {"text": text})
        packet = self._await_reply(connection, "echo_res")
        return packet["text"]

    def get_status(self, task: Task) -> JobStatus:
        """Ask the server that created ``task`` how far along it is."""

        if task.server is None or not task.handle:
            raise ProtocolError(f"Task {task.unique!r} has no server handle yet")
        connection = self._connection_for(task.server)
        connection.send("get_status", {"handle": task.handle})
        packet = self._await_reply(connection, "status_res")
        return JobStatus(
            handle=packet["handle"],
            known=packet["known"] == "1",
            running=packet["running"] == "1",
            numerator=_to_int(packet["numerator"]),
            denominator=_to_int(packet["denominator"]),
        )

    def disconnect(self) -> None:
        for connection in self._connections.values():
            connection.close()
        self._connections.clear()

    def _run_single(
        self,
        func: str,
        workload: Any,
        unique: str | None,
        task_type: TaskType,
        *,
        epoch: int = 0,
    ) -> Task:
        task = Task(
            func,
            workload,
            unique if unique is not None else _generate_unique_id(),
            task_type,
            epoch=epoch,
        )
        self.run_set(TaskSet([task]))
        return task

    def _open_connections(self) -> list[Connection]:
        for endpoint in self.servers:
            existing = self._connections.get(endpoint)
            if existing is not None and existing.is_connected:
                continue
            try:
                self._connections[endpoint] = self._connector(endpoint, self.timeout_ms)
            except ServerConnectionError as error:
                logger.warning("Skipping unreachable job server %s: %s", endpoint, error)
                self._connections.pop(endpoint, None)

        connections = self.connections
        if not connections:
            raise NoServersAvailableError(
                f"Could not connect to any of {len(self.servers)} job server(s)",
            )
        return connections

    def _connection_for(self, endpoint: ServerEndpoint) -> Connection:
        existing = self._connections.get(endpoint)
        if existing is not None and existing.is_connected:
            return existing
        connection = self._connector(endpoint, self.timeout_ms)
        self._connections[endpoint] = connection
        return connection

    def _submit(self, run: _SetRun, task: Task) -> None:
        fields: dict[str, FieldValue] = {
            "func": task.func,
            "uniq": task.unique,
            "arg": task.payload,
        }
        if task.type is TaskType.EPOCH:
            fields["epoch"] = task.epoch

        while True:
            if not run.pool:
                raise NoServersAvailableError(
                    "Every job server dropped before all tasks were submitted",
                )
            connection = self.selector.choose(run.pool)
            try:
                connection.send(task.type.submit_command, fields)
            except ServerConnectionError as error:
                run.drop(connection, error)
                continue
            run.record_submission(connection, task)
            return

    def _collect(self, run: _SetRun, wait: float) -> bool:
        """Read every ready connection; returns whether any became readable."""

        ready = wait_readable(run.pool, wait)
        for connection in ready:
            try:
                while (packet := connection.read()) is not None:
                    self._handle_packet(run, connection, packet)
            except ServerErrorResponse:
                raise
            except (ServerConnectionError, ProtocolError) as error:
                run.drop(connection, error)
        return bool(ready)

    def _handle_packet(self, run: _SetRun, connection: Connection, packet: Packet) -> None:
        command = packet.command
        if command == "job_created":
            pending = run.pending.get(connection)
            if not pending:
                raise ProtocolError(f"Unexpected job_created from {connection.endpoint}")
            run.task_set.register_handle(packet["handle"], pending.popleft())
            return

        if command in {"work_complete", "work_fail", "work_status"}:
            try:
                task = run.task_set.get_task(packet["handle"], server=connection.endpoint)
            except (UnknownHandleError, TaskNotFoundError) as error:
                logger.warning("Ignoring %s from %s: %s", command, connection.endpoint, error)
                return
            if command == "work_complete":
                run.task_set.complete_task(task, packet["result"])
            elif command == "work_fail":
                run.task_set.fail_task(task)
            else:
                task.status(_to_int(packet["numerator"]), _to_int(packet["denominator"]))
            return

        raise_for_error(packet)
        if command == "noop":
            return
        raise ProtocolError(f"Unexpected {command} packet from {connection.endpoint}")

    def _drain_acks(self, run: _SetRun, wait: float) -> None:
        """Give outstanding creation-acks one bounded window to arrive."""

        deadline = time.monotonic() + wait
        while run.awaiting_handles() and run.pool:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not self._collect(run, remaining):
                return

    def _discard_unsettled(self, run: _SetRun) -> None:
        # A late creation-ack would otherwise be matched against the next run's tasks.
        for connection, pending in list(run.pending.items()):
            if pending:
                logger.info(
                    "Closing %s with %d unacknowledged submission(s)",
                    connection.endpoint,
                    len(pending),
                )
                connection.close()

    def _await_reply(self, connection: Connection, expected: str) -> Packet:
        while True:
            packet = connection.blocking_read()
            raise_for_error(packet)
            if packet.command == expected:
                return packet
            logger.debug("Skipping %s while waiting for %s", packet.command, expected)


def _generate_unique_id() -> str:
    return f"{os.getpid()}_{uuid.uuid4().hex}"


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ProtocolError(f"Expected an integer field, got {value!r}") from error
