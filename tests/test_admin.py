from __future__ import annotations

import allure
import pytest

from gearline.admin import AdminClient
from gearline.errors import (
    AdminCommandError,
    InvalidArgumentError,
    ServerConnectionError,
    ServerShutdownError,
)

pytestmark = [
    allure.epic("Administration"),
    allure.feature("Admin Protocol"),
]

_REPLIES = {
    "version": ["OK 1.1.21"],
    "status": [
        "reverse\t3\t1\t2",
        "upper\t0\t0\t1",
        ".",
    ],
    "workers": [
        "12 10.0.0.5 pid_1_abc : reverse upper",
        "13 10.0.0.6 - :",
        ".",
    ],
    "maxqueue reverse 10": ["OK"],
    "shutdown graceful": ["OK"],
}


def test_version_status_and_workers_are_parsed(admin_server) -> None:
    server = admin_server(_REPLIES)

    with AdminClient(server.address) as admin:
        version = admin.version()
        statuses = admin.status()
        workers = admin.workers()

    assert version == "OK 1.1.21"
    assert statuses["reverse"].in_queue == 3
    assert statuses["reverse"].jobs_running == 1
    assert statuses["reverse"].capable_workers == 2
    assert list(statuses) == ["reverse", "upper"]
    assert workers[0].client_id == "pid_1_abc"
    assert workers[0].abilities == ("reverse", "upper")
    assert workers[1].ip == "10.0.0.6"
    assert workers[1].abilities == ()


def test_set_max_queue_size_validates_input(admin_server) -> None:
    server = admin_server(_REPLIES)

    with AdminClient(server.address) as admin:
        assert admin.set_max_queue_size("reverse", 10) is True
        with pytest.raises(InvalidArgumentError):
            admin.set_max_queue_size("bad name", 10)
        with pytest.raises(InvalidArgumentError):
            admin.set_max_queue_size("reverse", "10")

    assert server.received == ["maxqueue reverse 10"]


def test_error_reply_raises_admin_command_error(admin_server) -> None:
    server = admin_server({"status": ["ERR UNKNOWN_JOB Unknown+job+queue"]})

    with AdminClient(server.address) as admin, pytest.raises(AdminCommandError) as excinfo:
        admin.status()

    assert excinfo.value.code == "UNKNOWN_JOB"
    assert str(excinfo.value) == "Unknown job queue"


def test_commands_after_shutdown_are_refused(admin_server) -> None:
    server = admin_server(_REPLIES)

    with AdminClient(server.address) as admin:
        assert admin.shutdown(graceful=True) is True
        with pytest.raises(ServerShutdownError):
            admin.version()


def test_unreachable_admin_server_raises(closed_port: int) -> None:
    with pytest.raises(ServerConnectionError):
        AdminClient(f"127.0.0.1:{closed_port}", timeout=0.5)
