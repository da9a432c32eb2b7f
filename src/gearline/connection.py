"""Socket lifecycle for one job server connection."""

from __future__ import annotations

import logging
import selectors
import socket
from collections.abc import Iterable
from typing import NoReturn

from gearline.errors import ProtocolError, ServerConnectionError
from gearline.protocol import FieldValue, Magic, Packet, PacketDecoder, encode
from gearline.servers import ServerEndpoint

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_MS = 1000
RECV_CHUNK_SIZE = 8192


class Connection:
    """Framed packet transport over one TCP socket.

    A connection belongs to the client or worker that opened it; it is not safe to
    use from more than one thread.
    """

    def __init__(self, endpoint: ServerEndpoint, sock: socket.socket) -> None:
        self.endpoint = endpoint
        self._sock: socket.socket | None = sock
        self._decoder = PacketDecoder()

    def __repr__(self) -> str:
        state = "open" if self.is_connected else "closed"
        return f"<Connection {self.endpoint} {state}>"

    @classmethod
    def connect(
        cls,
        endpoint: ServerEndpoint,
        timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
    ) -> Connection:
        """Open a connection, giving up after ``timeout_ms`` milliseconds."""

        try:
            sock = socket.create_connection(
                (endpoint.host, endpoint.port),
                timeout=max(timeout_ms, 1) / 1000,
            )
        except TimeoutError as error:
            raise ServerConnectionError(
                f"Timed out connecting to {endpoint} after {timeout_ms}ms",
                endpoint=str(endpoint),
                timed_out=True,
            ) from error
        except OSError as error:
            raise ServerConnectionError(
                f"Could not connect to {endpoint}: {error}",
                endpoint=str(endpoint),
            ) from error

        sock.settimeout(None)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        logger.info("Connected to job server %s", endpoint)
        return cls(endpoint, sock)

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def fileno(self) -> int:
        return self._require_socket().fileno()

    def has_buffered_packet(self) -> bool:
        return self._decoder.has_packet()

    def send(self, command: str, fields: dict[str, FieldValue] | None = None) -> None:
        sock = self._require_socket()
        data = encode(command, fields, magic=Magic.REQUEST)
        logger.debug("-> %s %s (%d bytes)", self.endpoint, command, len(data))
        try:
            sock.sendall(data)
        except OSError as error:
            self.close()
            raise ServerConnectionError(
                f"Send to {self.endpoint} failed: {error}",
                endpoint=str(self.endpoint),
            ) from error

    def read(self) -> Packet | None:
        """Return the next complete packet without blocking, or ``None``."""

        packet = self._decoder.next_packet()
        if packet is not None:
            return self._received(packet)

        sock = self._require_socket()
        sock.setblocking(False)
        try:
            data = sock.recv(RECV_CHUNK_SIZE)
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as error:
            self._lost(error)
        finally:
            if self._sock is not None:
                sock.setblocking(True)
        if not data:
            self._lost(None)
        self._decoder.feed(data)
        packet = self._decoder.next_packet()
        return self._received(packet) if packet is not None else None

    def blocking_read(self) -> Packet:
        """Block until a complete packet arrives."""

        while True:
            packet = self._decoder.next_packet()
            if packet is not None:
                return self._received(packet)
            sock = self._require_socket()
            try:
                data = sock.recv(RECV_CHUNK_SIZE)
            except OSError as error:
                self._lost(error)
            if not data:
                self._lost(None)
            self._decoder.feed(data)

    def close(self) -> None:
        if self._sock is None:
            return
        sock, self._sock = self._sock, None
        try:
            sock.close()
        finally:
            logger.info("Closed connection to %s", self.endpoint)

    def _received(self, packet: Packet) -> Packet:
        logger.debug("<- %s %s", self.endpoint, packet.command)
        if packet.magic is not Magic.RESPONSE:
            raise ProtocolError(
                f"Expected response magic from {self.endpoint}, got request {packet.command}",
            )
        return packet

    def _lost(self, error: OSError | None) -> NoReturn:
        self.close()
        reason = str(error) if error is not None else "connection closed by peer"
        raise ServerConnectionError(
            f"Lost connection to {self.endpoint}: {reason}",
            endpoint=str(self.endpoint),
        )

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise ServerConnectionError(
                f"Connection to {self.endpoint} is closed",
                endpoint=str(self.endpoint),
            )
        return self._sock


def wait_readable(connections: Iterable[Connection], timeout: float) -> list[Connection]:
    """Wait up to ``timeout`` seconds for connections with data to read.

    Connections that already hold a complete buffered packet are returned
    immediately. An empty list means the wait timed out.
    """

    candidates = [connection for connection in connections if connection.is_connected]
    buffered = [connection for connection in candidates if connection.has_buffered_packet()]
    if buffered or not candidates:
        return buffered

    with selectors.DefaultSelector() as selector:
        for connection in candidates:
            selector.register(connection.fileno(), selectors.EVENT_READ, connection)
        events = selector.select(timeout=max(timeout, 0.0))
    return [key.data for key, _ in events]
