"""Job server endpoints and the registration pool shared by client and worker."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from gearline.errors import InvalidArgumentError

DEFAULT_PORT = 4730
MAX_PORT = 65_535


@dataclass(frozen=True, slots=True)
class ServerEndpoint:
    """Immutable ``host:port`` identity of one job server."""

    host: str
    port: int = DEFAULT_PORT

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str, *, default_port: int = DEFAULT_PORT) -> ServerEndpoint:
        """Parse ``host`` or ``host:port`` into a validated endpoint."""

        host, separator, port_raw = value.strip().rpartition(":")
        if not separator:
            host, port_raw = port_raw, ""
        port_raw = port_raw.strip()
        if not port_raw:
            return _validated(host, default_port)
        try:
            port = int(port_raw)
        except ValueError as error:
            raise InvalidArgumentError(f"Invalid port {port_raw!r} given") from error
        return _validated(host, port)


class ServerPool:
    """Ordered set of registered endpoints; duplicates are rejected on registration."""

    def __init__(self, *, default_port: int = DEFAULT_PORT) -> None:
        self.default_port = default_port
        self._endpoints: dict[ServerEndpoint, None] = {}

    def __iter__(self) -> Iterator[ServerEndpoint]:
        return iter(list(self._endpoints))

    def __len__(self) -> int:
        return len(self._endpoints)

    def __contains__(self, endpoint: object) -> bool:
        return endpoint in self._endpoints

    def add(self, host: str = "localhost", port: int | None = None) -> ServerEndpoint:
        endpoint = _validated(host, self.default_port if port is None else port)
        self._register(endpoint)
        return endpoint

    def add_many(self, servers: str | Iterable[str]) -> list[ServerEndpoint]:
        """Register ``"h1:p1,h2"`` or an iterable of ``host[:port]`` strings."""

        values = servers.split(",") if isinstance(servers, str) else list(servers)
        added: list[ServerEndpoint] = []
        for value in values:
            endpoint = ServerEndpoint.parse(value, default_port=self.default_port)
            self._register(endpoint)
            added.append(endpoint)
        return added

    def _register(self, endpoint: ServerEndpoint) -> None:
        if endpoint in self._endpoints:
            raise InvalidArgumentError(f"Server {str(endpoint)!r} is already registered")
        self._endpoints[endpoint] = None


def _validated(host: str, port: int) -> ServerEndpoint:
    normalized = host.strip()
    if not normalized:
        raise InvalidArgumentError(f"Invalid host {host!r} given")
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port <= MAX_PORT:
        raise InvalidArgumentError(f"Invalid port {port!r} given")
    return ServerEndpoint(host=normalized, port=port)
