"""Deterministic demo job functions served by ``gearline worker``."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any


def echo(arg: Any) -> Any:
    """Return the argument unchanged."""

    return arg


def reverse(arg: Any) -> str:
    return _as_text(arg)[::-1]


def upper(arg: Any) -> str:
    return _as_text(arg).upper()


BUILTIN_FUNCTIONS: dict[str, Callable[[Any], Any]] = {
    "echo": echo,
    "reverse": reverse,
    "upper": upper,
}


def _as_text(arg: Any) -> str:
    if arg is None:
        return ""
    if isinstance(arg, str):
        return arg
    return json.dumps(arg)
