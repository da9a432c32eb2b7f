from __future__ import annotations

import socket

import allure
import pytest

from gearline.connection import Connection, wait_readable
from gearline.errors import ProtocolError, ServerConnectionError
from gearline.protocol import Magic, encode
from gearline.servers import ServerEndpoint

pytestmark = [
    allure.epic("Wire Protocol"),
    allure.feature("Connections"),
]


@pytest.fixture()
def paired():
    left, right = socket.socketpair()
    connection = Connection(ServerEndpoint("127.0.0.1", 4730), left)
    yield connection, right
    connection.close()
    right.close()


def test_connect_to_closed_port_raises_connection_error(closed_port: int) -> None:
    with pytest.raises(ServerConnectionError) as excinfo:
        Connection.connect(ServerEndpoint("127.0.0.1", closed_port), timeout_ms=500)

    assert excinfo.value.endpoint == f"127.0.0.1:{closed_port}"
    assert excinfo.value.timed_out is False


def test_connect_timeout_is_reported_as_timed_out(monkeypatch) -> None:
    def _slow_connect(address, timeout):
        raise TimeoutError("timed out")

    monkeypatch.setattr(socket, "create_connection", _slow_connect)

    with pytest.raises(ServerConnectionError, match="Timed out connecting to 10.0.0.9:4730 after 250ms") as excinfo:
        Connection.connect(ServerEndpoint("10.0.0.9", 4730), timeout_ms=250)

    assert excinfo.value.timed_out is True
    assert excinfo.value.endpoint == "10.0.0.9:4730"


def test_read_without_data_returns_none(paired) -> None:
    connection, _ = paired

    assert connection.read() is None
    assert connection.is_connected


def test_read_returns_each_buffered_packet(paired) -> None:
    connection, peer = paired
    peer.sendall(
        encode("noop", magic=Magic.RESPONSE)
        + encode("echo_res", {"text": "pong"}, magic=Magic.RESPONSE),
    )

    assert wait_readable([connection], 1.0) == [connection]
    assert connection.read().command == "noop"
    assert connection.has_buffered_packet()
    assert wait_readable([connection], 0) == [connection]
    assert connection.read()["text"] == "pong"


def test_peer_close_marks_connection_lost(paired) -> None:
    connection, peer = paired
    peer.close()

    with pytest.raises(ServerConnectionError, match="closed by peer"):
        connection.blocking_read()
    assert connection.is_connected is False


def test_send_on_closed_connection_raises(paired) -> None:
    connection, _ = paired
    connection.close()

    with pytest.raises(ServerConnectionError, match="is closed"):
        connection.send("grab_job")


def test_wait_readable_times_out_with_empty_list(paired) -> None:
    connection, _ = paired

    assert wait_readable([connection], 0.01) == []
    assert wait_readable([], 0.01) == []


def test_request_magic_from_server_is_a_protocol_error(paired) -> None:
    connection, peer = paired
    peer.sendall(encode("echo_req", {"text": "ping"}, magic=Magic.REQUEST))

    with pytest.raises(ProtocolError, match="Expected response magic"):
        connection.blocking_read()
