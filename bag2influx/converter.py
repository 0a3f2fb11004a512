"""Conversion of introspected messages to and from InfluxDB line protocol."""

from __future__ import annotations

import enum
import math
import os
import struct
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any


class FieldType(enum.Enum):
    """Primitive and composite types a message member can have."""

    BOOL = "bool"
    BYTE = "byte"
    CHAR = "char"
    UINT8 = "uint8"
    INT8 = "int8"
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    UINT64 = "uint64"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    STRING = "string"
    MESSAGE = "message"


# Bit width and signedness of every integer type.
_INTEGER_LAYOUT: dict[FieldType, tuple[int, bool]] = {
    FieldType.BYTE: (8, False),
    FieldType.UINT8: (8, False),
    FieldType.CHAR: (8, True),
    FieldType.INT8: (8, True),
    FieldType.UINT16: (16, False),
    FieldType.INT16: (16, True),
    FieldType.UINT32: (32, False),
    FieldType.INT32: (32, True),
    FieldType.UINT64: (64, False),
    FieldType.INT64: (64, True),
}

_FLOAT_TYPES = (FieldType.FLOAT32, FieldType.FLOAT64)


@dataclass(frozen=True)
class Member:
    """One member of a message type.

    ``array_size`` is the length of a fixed array, or the upper bound of a
    bounded sequence when ``is_upper_bound`` is set; zero means unbounded.
    """

    name: str
    type: FieldType
    is_array: bool = False
    array_size: int = 0
    is_upper_bound: bool = False
    message_type: MessageType | None = None

    def __post_init__(self) -> None:
        if self.type is FieldType.MESSAGE and self.message_type is None:
            raise ValueError(f"member {self.name!r} needs a message type")

    @property
    def is_fixed_array(self) -> bool:
        return self.is_array and bool(self.array_size) and not self.is_upper_bound


@dataclass(frozen=True)
class MessageType:
    """Description of a message: its namespace, name and members."""

    namespace: str
    name: str
    members: tuple[Member, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "members", tuple(self.members))


@dataclass
class SerializedBagMessage:
    """A serialized message together with its topic and time stamp."""

    serialized_data: bytes
    topic_name: str = ""
    time_stamp: int = 0


def _as_int(value: Any) -> int:
    if isinstance(value, str) and len(value) == 1:
        return ord(value)
    if isinstance(value, (bytes, bytearray)) and len(value) == 1:
        return value[0]
    return int(value)


def _wrap(number: int, bits: int, signed: bool) -> int:
    number &= (1 << bits) - 1
    if signed and number >= 1 << (bits - 1):
        number -= 1 << bits
    return number


def _format_float(value: Any, single: bool) -> str:
    number = float(value)
    if not math.isfinite(number):
        return "0"
    if single:
        try:
            number = struct.unpack("f", struct.pack("f", number))[0]
        except OverflowError:
            return "0"
    return f"{number:g}"


def format_value(member: Member, value: Any) -> str:
    """Format one scalar value of ``member`` as a line protocol field value."""
    kind = member.type
    if kind is FieldType.BOOL:
        return "true" if value else "false"
    if kind is FieldType.STRING:
        return f'"{value}"'
    if kind in _FLOAT_TYPES:
        return _format_float(value, single=kind is FieldType.FLOAT32)
    layout = _INTEGER_LAYOUT.get(kind)
    if layout is None:
        raise ValueError(f"member {member.name!r} of type {kind.value} has no scalar form")
    bits, signed = layout
    number = _wrap(_as_int(value), bits, signed)
    return f"{number}{'i' if signed else 'u'}"


def _get_field(message: Any, name: str) -> Any:
    if isinstance(message, Mapping):
        return message[name]
    return getattr(message, name)


def _elements(member: Member, value: Any, check_bound: bool = False) -> list[Any]:
    items = list(value)
    if member.is_fixed_array and len(items) != member.array_size:
        raise ValueError(
            f"member {member.name!r} needs {member.array_size} elements, got {len(items)}"
        )
    if check_bound and member.is_upper_bound and len(items) > member.array_size:
        raise ValueError("vector overcomes the maximum length")
    return items


def _join(base: str, name: str) -> str:
    return f"{base}.{name}" if base else name


def _iter_fields(message_type: MessageType, message: Any, base: str) -> Iterator[str]:
    for member in message_type.members:
        name = _join(base, member.name)
        value = _get_field(message, member.name)
        if member.type is FieldType.MESSAGE:
            sub_type = member.message_type
            if not member.is_array:
                yield from _iter_fields(sub_type, value, name)
            else:
                for index, item in enumerate(_elements(member, value, check_bound=True)):
                    yield from _iter_fields(sub_type, item, f"{name}.{index}")
        elif not member.is_array:
            yield f"{name}={format_value(member, value)}"
        elif member.type is FieldType.BOOL:
            # Boolean arrays collapse to a single field holding the first element.
            first = next(iter(value), False)
            yield f"{name}={format_value(member, first)}"
        else:
            for index, item in enumerate(_elements(member, value)):
                yield f"{name}.{index}={format_value(member, item)}"


def serialize_fields(message_type: MessageType, message: Any, base_field_name: str = "") -> list[str]:
    """Return the ``key=value`` pairs of a message, flattened with dotted names."""
    return list(_iter_fields(message_type, message, base_field_name))


def normalize_message_namespace(message_namespace: str) -> str:
    """Replace the first ``::`` of a namespace with ``/``."""
    head, sep, tail = message_namespace.partition("::")
    if not sep:
        raise ValueError(f"namespace {message_namespace!r} has no '::' delimiter")
    return f"{head}/{tail}"


def _to_milliseconds(time_stamp: int) -> int:
    magnitude = abs(int(time_stamp)) // 1_000_000
    return -magnitude if time_stamp < 0 else magnitude


def to_line_protocol(
    topic_name: str,
    message_type: MessageType,
    message: Any,
    time_stamp: int,
    platform: str,
    machine: str,
) -> str:
    """Render one message as a line protocol record with a millisecond time."""
    tags = (
        f"{topic_name},type={normalize_message_namespace(message_type.namespace)}"
        f"/{message_type.name},platform={platform},machine={machine}"
    )
    fields = ",".join(serialize_fields(message_type, message))
    parts = [tags, fields] if fields else [tags]
    parts.append(str(_to_milliseconds(time_stamp)))
    return " ".join(parts) + "\n"


def _parse_scalar(member: Member, raw: str) -> Any:
    kind = member.type
    if kind is FieldType.BOOL:
        if raw == "true":
            return True
        if raw == "false":
            return False
        raise ValueError(f"bad boolean {raw!r} for {member.name!r}")
    if kind is FieldType.STRING:
        return raw
    if kind in _FLOAT_TYPES:
        return float(raw)
    _, signed = _INTEGER_LAYOUT[kind]
    suffix = "i" if signed else "u"
    if not raw.endswith(suffix):
        raise ValueError(f"bad integer {raw!r} for {member.name!r}")
    return int(raw[:-1])


class _FieldReader:
    """Cursor over the field set of a line protocol record."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def at(self, prefix: str) -> bool:
        return self.text.startswith(prefix, self.pos)

    def value(self, key: str, member: Member) -> Any:
        marker = key + "="
        if not self.at(marker):
            raise ValueError(f"expected field {key!r} at offset {self.pos}")
        text = self.text
        start = self.pos + len(marker)
        if member.type is FieldType.STRING:
            if not text.startswith('"', start):
                raise ValueError(f"field {key!r} is not a quoted string")
            end = start + 1
            while True:
                end = text.find('"', end)
                if end < 0:
                    raise ValueError(f"unterminated string in field {key!r}")
                if end + 1 == len(text) or text[end + 1] == ",":
                    break
                end += 1
            raw = text[start + 1:end]
            stop = end + 1
        else:
            stop = text.find(",", start)
            if stop < 0:
                stop = len(text)
            raw = text[start:stop]
        self.pos = stop + 1 if stop < len(text) else stop
        return _parse_scalar(member, raw)

    def finish(self) -> None:
        if self.pos < len(self.text):
            raise ValueError(f"unexpected data at offset {self.pos}: {self.text[self.pos:]!r}")


def _read_message(reader: _FieldReader, message_type: MessageType, base: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for member in message_type.members:
        name = _join(base, member.name)
        if member.type is FieldType.MESSAGE:
            sub_type = member.message_type
            if not member.is_array:
                result[member.name] = _read_message(reader, sub_type, name)
            elif member.is_fixed_array:
                result[member.name] = [
                    _read_message(reader, sub_type, f"{name}.{index}")
                    for index in range(member.array_size)
                ]
            else:
                items: list[Any] = []
                while sub_type.members and reader.at(f"{name}.{len(items)}."):
                    items.append(_read_message(reader, sub_type, f"{name}.{len(items)}"))
                result[member.name] = items
        elif not member.is_array:
            result[member.name] = reader.value(name, member)
        elif member.type is FieldType.BOOL:
            result[member.name] = [reader.value(name, member)]
        elif member.is_fixed_array:
            result[member.name] = [
                reader.value(f"{name}.{index}", member) for index in range(member.array_size)
            ]
        else:
            items = []
            while reader.at(f"{name}.{len(items)}="):
                items.append(reader.value(f"{name}.{len(items)}", member))
            result[member.name] = items
    return result


class InfluxDBConverter:
    """Serializes messages to line protocol, tagged with platform and machine."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env = os.environ if env is None else env

    def _require(self, name: str) -> str:
        value = self._env.get(name)
        if value is None:
            raise KeyError(f"{name} not set")
        return value

    def serialize(
        self, topic_name: str, message_type: MessageType, message: Any, time_stamp: int
    ) -> SerializedBagMessage:
        """Serialize a message into a line protocol record."""
        line = to_line_protocol(
            topic_name,
            message_type,
            message,
            time_stamp,
            platform=self._require("PLATFORM_TOKEN"),
            machine=self._require("MACHINE_TOKEN"),
        )
        return SerializedBagMessage(line.encode("utf-8"), topic_name, time_stamp)

    def deserialize(
        self, serialized_message: SerializedBagMessage, message_type: MessageType
    ) -> dict[str, Any]:
        """Rebuild a message as nested dicts and lists from a line protocol record.

        Non-finite floats and boolean arrays are lossy in the serialized form
        and come back as written.
        """
        text = bytes(serialized_message.serialized_data).decode("utf-8").rstrip("\n")
        _, sep, rest = text.partition(" ")
        if not sep:
            raise ValueError("record has no field set or time stamp")
        fields, _, _ = rest.rpartition(" ")
        reader = _FieldReader(fields)
        message = _read_message(reader, message_type, "")
        reader.finish()
        return message