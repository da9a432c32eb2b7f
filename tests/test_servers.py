from __future__ import annotations

import allure
import pytest

from gearline.errors import InvalidArgumentError
from gearline.servers import DEFAULT_PORT, ServerEndpoint, ServerPool

pytestmark = [
    allure.epic("Server Pool"),
    allure.feature("Registration"),
]


def test_add_uses_default_port_and_keeps_registration_order() -> None:
    pool = ServerPool()

    pool.add("gm2.local")
    pool.add("gm1.local", 4731)

    assert [str(endpoint) for endpoint in pool] == [
        f"gm2.local:{DEFAULT_PORT}",
        "gm1.local:4731",
    ]
    assert ServerEndpoint("gm1.local", 4731) in pool
    assert len(pool) == 2


def test_duplicate_registration_is_rejected() -> None:
    pool = ServerPool()
    pool.add("localhost")

    with pytest.raises(InvalidArgumentError, match="already registered"):
        pool.add("localhost", DEFAULT_PORT)
    assert len(pool) == 1


@pytest.mark.parametrize(
    ("host", "port"),
    [("", 4730), ("  ", 4730), ("localhost", 0), ("localhost", 65_536), ("localhost", True)],
)
def test_invalid_host_or_port_is_rejected(host: str, port: int) -> None:
    with pytest.raises(InvalidArgumentError):
        ServerPool().add(host, port)


def test_add_many_accepts_comma_separated_string() -> None:
    pool = ServerPool()

    added = pool.add_many("a.local:4731, b.local")

    assert added == [ServerEndpoint("a.local", 4731), ServerEndpoint("b.local", DEFAULT_PORT)]


def test_parse_rejects_non_numeric_port() -> None:
    with pytest.raises(InvalidArgumentError, match="Invalid port"):
        ServerEndpoint.parse("localhost:http")
