"""Exception hierarchy shared by client, worker and admin code."""

from __future__ import annotations


class GearmanError(Exception):
    """Base error for everything raised by gearline."""


class ServerConnectionError(GearmanError):
    """Connection to a job server could not be established or was lost."""

    def __init__(self, message: str, *, endpoint: str | None = None, timed_out: bool = False):
        super().__init__(message)
        self.endpoint = endpoint
        self.timed_out = timed_out


class NoServersAvailableError(ServerConnectionError):
    """Every configured server is unreachable."""


class ProtocolError(GearmanError):
    """Malformed frame or unexpected packet on the wire."""


class ServerErrorResponse(ProtocolError):
    """The job server answered with an explicit ``error`` packet."""

    def __init__(self, code: str, text: str) -> None:
        super().__init__(f"Server error {code}: {text}")
        self.code = code
        self.text = text


class InvalidArgumentError(GearmanError, ValueError):
    """Invalid host, port, callback or registration."""


class JobTypeError(GearmanError, ValueError):
    """Unknown task type code."""


class UnknownHandleError(GearmanError, LookupError):
    """Handle was never registered in the task set."""


class TaskNotFoundError(GearmanError, LookupError):
    """Handle maps to a unique key that has no task."""


class WorkerExecutionError(GearmanError):
    """A registered job function raised while executing a job."""

    def __init__(self, message: str, *, function: str, handle: str) -> None:
        super().__init__(message)
        self.function = function
        self.handle = handle


class AdminCommandError(GearmanError):
    """Administrative command answered with ``ERR <code> <message>``."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code


class ServerShutdownError(GearmanError):
    """Administrative command attempted after the server was shut down."""
