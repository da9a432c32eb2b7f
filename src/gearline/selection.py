"""Strategies for choosing which open connection receives the next task."""

from __future__ import annotations

import random
from collections.abc import Sequence
from typing import Protocol

from gearline.connection import Connection
from gearline.errors import NoServersAvailableError


class ServerSelector(Protocol):
    """Picks one connection out of the currently open pool."""

    def choose(self, connections: Sequence[Connection]) -> Connection:
        """Return the connection that should receive the next submission."""
        raise NotImplementedError


class RandomSelector:
    """Uniform random choice; pass a seeded ``random.Random`` for reproducible runs."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._random = rng or random.Random()  # noqa: S311

    def choose(self, connections: Sequence[Connection]) -> Connection:
        if not connections:
            raise NoServersAvailableError("No open connection to choose from")
        return self._random.choice(list(connections))


class RoundRobinSelector:
    """Cycle through the pool in endpoint order."""

    def __init__(self) -> None:
        self._current_index = 0

    def choose(self, connections: Sequence[Connection]) -> Connection:
        if not connections:
            raise NoServersAvailableError("No open connection to choose from")
        ordered = sorted(connections, key=lambda connection: str(connection.endpoint))
        if self._current_index >= len(ordered):
            self._current_index = 0
        connection = ordered[self._current_index]
        self._current_index = (self._current_index + 1) % len(ordered)
        return connection
