"""Binary wire codec for the Gearman job protocol.

Every packet is a 12-byte header followed by the payload::

    [4-byte magic][4-byte command code (big-endian)][4-byte payload length (big-endian)]

The magic is ``\\0REQ`` for packets sent to a job server and ``\\0RES`` for
packets sent back by it. Payload fields are separated by a single NUL byte in a
command-specific order; the last field takes whatever bytes remain, so it may
itself contain NUL.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import Enum

from gearline.errors import ProtocolError, ServerErrorResponse

HEADER = struct.Struct(">4sII")
HEADER_SIZE = HEADER.size
FIELD_SEPARATOR = b"\x00"

# Guards the decoder against a corrupt length prefix allocating unbounded memory.
MAX_PAYLOAD_SIZE = 64 * 1024 * 1024

_FIELD_ENCODING = "utf-8"
_FIELD_ERRORS = "surrogateescape"


class Magic(bytes, Enum):
    """Packet direction marker."""

    REQUEST = b"\x00REQ"
    RESPONSE = b"\x00RES"


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """Wire code and ordered field names of one command."""

    name: str
    code: int
    fields: tuple[str, ...] = ()


_SUBMIT_FIELDS = ("func", "uniq", "arg")

COMMANDS: dict[str, CommandSpec] = {
    spec.name: spec
    for spec in (
        CommandSpec("can_do", 1, ("func",)),
        CommandSpec("cant_do", 2, ("func",)),
        CommandSpec("reset_abilities", 3),
        CommandSpec("pre_sleep", 4),
        CommandSpec("noop", 6),
        CommandSpec("submit_job", 7, _SUBMIT_FIELDS),
        CommandSpec("job_created", 8, ("handle",)),
        CommandSpec("grab_job", 9),
        CommandSpec("no_job", 10),
        CommandSpec("job_assign", 11, ("handle", "func", "arg")),
        CommandSpec("work_status", 12, ("handle", "numerator", "denominator")),
        CommandSpec("work_complete", 13, ("handle", "result")),
        CommandSpec("work_fail", 14, ("handle",)),
        CommandSpec("get_status", 15, ("handle",)),
        CommandSpec("echo_req", 16, ("text",)),
        CommandSpec("echo_res", 17, ("text",)),
        CommandSpec("submit_job_bg", 18, _SUBMIT_FIELDS),
        CommandSpec("error", 19, ("err_code", "err_text")),
        CommandSpec(
            "status_res",
            20,
            ("handle", "known", "running", "numerator", "denominator"),
        ),
        CommandSpec("submit_job_high", 21, _SUBMIT_FIELDS),
        CommandSpec("set_client_id", 22, ("client_id",)),
        CommandSpec("can_do_timeout", 23, ("func", "timeout")),
        CommandSpec("all_yours", 24),
        CommandSpec("submit_job_high_bg", 32, _SUBMIT_FIELDS),
        CommandSpec("submit_job_low", 33, _SUBMIT_FIELDS),
        CommandSpec("submit_job_low_bg", 34, _SUBMIT_FIELDS),
        CommandSpec("submit_job_epoch", 36, ("func", "uniq", "epoch", "arg")),
    )
}
COMMANDS_BY_CODE: dict[int, CommandSpec] = {spec.code: spec for spec in COMMANDS.values()}

FieldValue = str | bytes | int


@dataclass(slots=True)
class Packet:
    """One decoded frame."""

    command: str
    fields: dict[str, str] = field(default_factory=dict)
    magic: Magic = Magic.RESPONSE

    def __getitem__(self, name: str) -> str:
        return self.fields[name]

    def get(self, name: str, default: str = "") -> str:
        return self.fields.get(name, default)

    @property
    def is_error(self) -> bool:
        return self.command == "error"


def encode(
    command: str,
    fields: dict[str, FieldValue] | None = None,
    *,
    magic: Magic = Magic.REQUEST,
) -> bytes:
    """Frame ``command`` with its ``fields`` into bytes ready for the socket."""

    spec = COMMANDS.get(command)
    if spec is None:
        raise ProtocolError(f"Unknown command: {command!r}")
    values = fields or {}
    parts: list[bytes] = []
    for index, name in enumerate(spec.fields):
        if name not in values:
            raise ProtocolError(f"Command {command!r} requires field {name!r}")
        raw = _to_bytes(values[name])
        if index < len(spec.fields) - 1 and FIELD_SEPARATOR in raw:
            raise ProtocolError(f"Field {name!r} of {command!r} must not contain NUL")
        parts.append(raw)
    payload = FIELD_SEPARATOR.join(parts)
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ProtocolError(f"Payload too large: {len(payload)} > {MAX_PAYLOAD_SIZE} bytes")
    return HEADER.pack(magic.value, spec.code, len(payload)) + payload


def decode(buffer: bytes | bytearray) -> tuple[Packet, int] | None:
    """Decode the first complete frame in ``buffer``.

    Returns the packet and the number of bytes it occupied, or ``None`` when the
    buffer does not hold a whole frame yet.
    """

    if len(buffer) < HEADER_SIZE:
        return None
    raw_magic, code, length = HEADER.unpack_from(buffer)
    try:
        magic = Magic(bytes(raw_magic))
    except ValueError as error:
        raise ProtocolError(f"Unrecognized packet magic: {bytes(raw_magic)!r}") from error
    if length > MAX_PAYLOAD_SIZE:
        raise ProtocolError(f"Payload length overflow: {length} > {MAX_PAYLOAD_SIZE} bytes")
    spec = COMMANDS_BY_CODE.get(code)
    if spec is None:
        raise ProtocolError(f"Unknown command code: {code}")

    total = HEADER_SIZE + length
    if len(buffer) < total:
        return None
    payload = bytes(buffer[HEADER_SIZE:total])
    return Packet(command=spec.name, fields=_split_fields(spec, payload), magic=magic), total


def raise_for_error(packet: Packet) -> None:
    """Raise ``ServerErrorResponse`` when ``packet`` is an explicit error reply."""

    if packet.is_error:
        raise ServerErrorResponse(packet.get("err_code"), packet.get("err_text"))


class PacketDecoder:
    """Per-socket read buffer that yields packets as complete frames arrive."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer += data

    def has_packet(self) -> bool:
        if len(self._buffer) < HEADER_SIZE:
            return False
        _, _, length = HEADER.unpack_from(self._buffer)
        return len(self._buffer) >= HEADER_SIZE + length

    def next_packet(self) -> Packet | None:
        decoded = decode(self._buffer)
        if decoded is None:
            return None
        packet, consumed = decoded
        del self._buffer[:consumed]
        return packet


def _split_fields(spec: CommandSpec, payload: bytes) -> dict[str, str]:
    if not spec.fields:
        if payload:
            raise ProtocolError(f"Command {spec.name!r} carries no fields but got payload")
        return {}
    parts = payload.split(FIELD_SEPARATOR, len(spec.fields) - 1)
    parts.extend([b""] * (len(spec.fields) - len(parts)))
    return {
        name: part.decode(_FIELD_ENCODING, _FIELD_ERRORS)
        for name, part in zip(spec.fields, parts, strict=True)
    }


def _to_bytes(value: FieldValue) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, bool):
        raise ProtocolError(f"Unsupported field value: {value!r}")
    if isinstance(value, int):
        return str(value).encode("ascii")
    if isinstance(value, str):
        return value.encode(_FIELD_ENCODING, _FIELD_ERRORS)
    raise ProtocolError(f"Unsupported field value type: {type(value).__name__}")
