"""Client for the job server's line-oriented administrative protocol.

Commands are single text lines. Most replies are one line; ``status`` and
``workers`` reply with several lines terminated by a line holding a lone ``.``.
Errors come back as ``ERR <code> <message>``.
"""

from __future__ import annotations

import logging
import re
import socket
from dataclasses import dataclass

from gearline.errors import (
    AdminCommandError,
    InvalidArgumentError,
    ServerConnectionError,
    ServerShutdownError,
)
from gearline.servers import ServerEndpoint

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5.0
MAX_LINE_LENGTH = 4096
_FUNCTION_NAME = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(slots=True)
class FunctionStatus:
    """Queue counters reported by ``status`` for one function."""

    function: str
    in_queue: int
    jobs_running: int
    capable_workers: int


@dataclass(slots=True)
class WorkerInfo:
    """One connected worker as reported by ``workers``."""

    fd: str
    ip: str
    client_id: str
    abilities: tuple[str, ...]


class AdminClient:
    """Administrative connection to a single job server."""

    def __init__(self, server: str, timeout: float = CONNECT_TIMEOUT_SECONDS) -> None:
        self.endpoint = ServerEndpoint.parse(server)
        try:
            self._sock = socket.create_connection(
                (self.endpoint.host, self.endpoint.port),
                timeout=timeout,
            )
        except TimeoutError as error:
            raise ServerConnectionError(
                f"Timed out connecting to {self.endpoint}",
                endpoint=str(self.endpoint),
                timed_out=True,
            ) from error
        except OSError as error:
            raise ServerConnectionError(
                f"Could not connect to {self.endpoint}: {error}",
                endpoint=str(self.endpoint),
            ) from error
        self._reader = self._sock.makefile("rb")
        self._shutdown = False

    def __enter__(self) -> AdminClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def version(self) -> str:
        self._send("version")
        return self._read_line()

    def shutdown(self, graceful: bool = False) -> bool:
        self._send("shutdown graceful" if graceful else "shutdown")
        self._shutdown = self._read_line() == "OK"
        return self._shutdown

    def set_max_queue_size(self, function: str, size: int) -> bool:
        """Cap the queue for ``function``; a negative size means unlimited."""

        if isinstance(size, bool) or not isinstance(size, int):
            raise InvalidArgumentError("Queue size must be an integer")
        if not _FUNCTION_NAME.match(function):
            raise InvalidArgumentError(f"Invalid function name: {function!r}")
        self._send(f"maxqueue {function} {size}")
        return self._read_line() == "OK"

    def status(self) -> dict[str, FunctionStatus]:
        self._send("status")
        statuses: dict[str, FunctionStatus] = {}
        for line in self._read_block():
            parts = line.split("\t")
            if len(parts) < 4:
                logger.debug("Skipping malformed status line: %r", line)
                continue
            function, in_queue, running, capable = parts[:4]
            statuses[function] = FunctionStatus(
                function=function,
                in_queue=int(in_queue),
                jobs_running=int(running),
                capable_workers=int(capable),
            )
        return statuses

    def workers(self) -> list[WorkerInfo]:
        self._send("workers")
        workers: list[WorkerInfo] = []
        for line in self._read_block():
            identity, _, abilities = line.partition(" : ")
            fields = identity.split()
            if len(fields) < 3:
                logger.debug("Skipping malformed workers line: %r", line)
                continue
            workers.append(
                WorkerInfo(
                    fd=fields[0],
                    ip=fields[1],
                    client_id=fields[2],
                    abilities=tuple(abilities.split()),
                ),
            )
        return workers

    def close(self) -> None:
        self._reader.close()
        self._sock.close()

    def _send(self, command: str) -> None:
        if self._shutdown:
            raise ServerShutdownError("This server has been shut down")
        logger.debug("admin -> %s %s", self.endpoint, command)
        try:
            self._sock.sendall(f"{command}\r\n".encode())
        except OSError as error:
            raise ServerConnectionError(
                f"Send to {self.endpoint} failed: {error}",
                endpoint=str(self.endpoint),
            ) from error

    def _read_line(self) -> str:
        try:
            raw = self._reader.readline(MAX_LINE_LENGTH)
        except OSError as error:
            raise ServerConnectionError(
                f"Read from {self.endpoint} failed: {error}",
                endpoint=str(self.endpoint),
                timed_out=isinstance(error, TimeoutError),
            ) from error
        if not raw:
            raise ServerConnectionError(
                f"Connection to {self.endpoint} closed by peer",
                endpoint=str(self.endpoint),
            )
        line = raw.decode("utf-8", "replace").rstrip("\r\n")
        _check_for_error(line)
        return line.strip()

    def _read_block(self) -> list[str]:
        lines: list[str] = []
        while True:
            line = self._read_line()
            if line == ".":
                return lines
            if line:
                lines.append(line)


def _check_for_error(line: str) -> None:
    if not line.startswith("ERR"):
        return
    _, code, message = (line.split(" ", 2) + ["", ""])[:3]
    raise AdminCommandError(message.replace("+", " ") or line, code=code)
