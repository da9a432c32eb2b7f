from __future__ import annotations

import allure
from click.testing import CliRunner

from gearline import __version__
from gearline.main import gearline
from tests.fakes import JobServerScript, WorkerServerScript

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("CLI Ops"),
]


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(gearline, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_submit_prints_result(job_server) -> None:
    server = job_server(JobServerScript(result=lambda _func, arg: arg[::-1]))

    result = CliRunner().invoke(
        gearline,
        ["submit", "reverse", "abc", "--server", server.address],
    )

    assert result.exit_code == 0, result.output
    assert "Task: func=reverse" in result.output
    assert "type=normal" in result.output
    assert "Result: cba" in result.output


def test_submit_background_with_priority(job_server, monkeypatch) -> None:
    server = job_server(JobServerScript())
    monkeypatch.setenv("GEARLINE_SERVERS", server.address)

    result = CliRunner().invoke(
        gearline,
        ["submit", "reverse", "abc", "--background", "--priority", "high", "--unique", "k1"],
    )

    assert result.exit_code == 0, result.output
    assert "unique=k1 type=high_background" in result.output
    assert "Submitted in background." in result.output
    assert server.packets("submit_job_high_bg")[0]["uniq"] == "k1"


def test_submit_failed_job_exits_non_zero(job_server) -> None:
    server = job_server(JobServerScript(fail_functions={"boom"}))

    result = CliRunner().invoke(gearline, ["submit", "boom", "x", "--server", server.address])

    assert result.exit_code == 1
    assert "Job failed." in result.output


def test_submit_to_unreachable_server_reports_error(closed_port: int) -> None:
    result = CliRunner().invoke(
        gearline,
        ["submit", "reverse", "abc", "--server", f"127.0.0.1:{closed_port}"],
    )

    assert result.exit_code == 1
    assert "Traceback" not in result.output


def test_echo_round_trip(job_server) -> None:
    server = job_server(JobServerScript())

    result = CliRunner().invoke(gearline, ["echo", "hello", "--server", server.address])

    assert result.exit_code == 0, result.output
    assert "Echo: hello" in result.output


def test_worker_processes_job_then_exits_when_idle(job_server, monkeypatch) -> None:
    server = job_server(WorkerServerScript([("reverse", "abc")]))
    monkeypatch.setenv("GEARLINE_WORKER_IDLE_WAIT_SECONDS", "0.05")

    result = CliRunner().invoke(
        gearline,
        ["worker", "--server", server.address, "--function", "reverse", "--idle-exit"],
    )

    assert result.exit_code == 0, result.output
    assert "processed=1 succeeded=1 failed=0" in result.output
    assert server.wait_for("work_complete")[0]["result"] == "cba"
    assert [p["func"] for p in server.packets("can_do")] == ["reverse"]


def test_admin_version_and_status(admin_server) -> None:
    server = admin_server(
        {
            "version": ["OK 1.1.21"],
            "status": ["reverse\t3\t1\t2", "."],
        },
    )
    runner = CliRunner()

    version = runner.invoke(gearline, ["admin", "version", "--server", server.address])
    status = runner.invoke(gearline, ["admin", "status", "--server", server.address])

    assert version.exit_code == 0, version.output
    assert "Version: OK 1.1.21" in version.output
    assert status.exit_code == 0, status.output
    assert "Functions: 1" in status.output
    assert "reverse queued=3 running=1 workers=2" in status.output


def test_admin_maxqueue_rejects_bad_function_name(admin_server) -> None:
    server = admin_server({})

    result = CliRunner().invoke(
        gearline,
        ["admin", "maxqueue", "bad-name", "5", "--server", server.address],
    )

    assert result.exit_code == 1
    assert server.received == []
