"""Shared test fixtures."""

from __future__ import annotations

import socket

import pytest

from tests.fakes import FakeAdminServer, FakeJobServer

_ENV_KEYS = (
    "GEARLINE_SERVERS",
    "GEARLINE_CONNECT_TIMEOUT_MS",
    "GEARLINE_POLL_CEILING_SECONDS",
    "GEARLINE_WORKER_ID",
    "GEARLINE_WORKER_RETRY_SECONDS",
    "GEARLINE_WORKER_IDLE_WAIT_SECONDS",
    "GEARLINE_ADMIN_TIMEOUT_SECONDS",
    "GEARLINE_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's GEARLINE_* variables out of tests."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def job_server():
    """Factory starting fake job servers; all are stopped after the test."""
    started: list[FakeJobServer] = []

    def _start(responder) -> FakeJobServer:
        server = FakeJobServer(responder).start()
        started.append(server)
        return server

    yield _start
    for server in started:
        server.stop()


@pytest.fixture()
def admin_server():
    started: list[FakeAdminServer] = []

    def _start(replies: dict[str, list[str]]) -> FakeAdminServer:
        server = FakeAdminServer(replies).start()
        started.append(server)
        return server

    yield _start
    for server in started:
        server.stop()


@pytest.fixture()
def closed_port() -> int:
    """A loopback port with nothing listening on it."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
