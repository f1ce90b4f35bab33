"""JSON value envelope shared by every daemon on the bus.

An envelope is a single-line JSON object mapping value names to either a bare
scalar or a ``[scalar, unit]`` pair::

    {"Temperature": [21.5, "°C"], "Door": true}
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from mq_system.core.errors import BadRoot, BadShape, DecodeError


Scalar = Union[bool, int, float, str]


@dataclass(frozen=True)
class ValuePayload:
    value: Scalar
    unit: str | None = None

    @property
    def unit_name(self) -> str:
        return self.unit if self.unit is not None else ""

    @property
    def is_bool(self) -> bool:
        return isinstance(self.value, bool)

    @property
    def is_number(self) -> bool:
        return isinstance(self.value, (int, float)) and not isinstance(self.value, bool)


Message = dict[str, ValuePayload]


def _is_scalar(value: object) -> bool:
    return isinstance(value, (bool, int, float, str))


def decode(text: str | bytes) -> Message:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    try:
        root = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"payload is not valid JSON: {exc}") from exc

    if not isinstance(root, dict):
        raise BadRoot(f"expected JSON object as envelope root, got {type(root).__name__}")

    message: Message = {}
    for value_name, raw in root.items():
        if isinstance(raw, list):
            if len(raw) != 2 or not _is_scalar(raw[0]) or not isinstance(raw[1], str):
                raise BadShape(f"value {value_name!r} must be [scalar, unit] got {raw!r}")
            message[value_name] = ValuePayload(value=raw[0], unit=raw[1])
        elif _is_scalar(raw):
            message[value_name] = ValuePayload(value=raw)
        else:
            raise BadShape(f"value {value_name!r} has unsupported payload {raw!r}")
    return message


def _dump_text(value: object) -> str:
    return json.dumps(value, ensure_ascii=False)


def _dump_scalar(value: object) -> str:
    if not _is_scalar(value):
        raise BadShape(f"unsupported payload type {type(value).__name__}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"out of range float value {value!r}")
        # plain decimal text with a fraction, never the exponent form
        text = format(Decimal(repr(value)), "f")
        return text if "." in text else f"{text}.0"
    return _dump_text(value)


def _encode_payload(payload: ValuePayload | Scalar) -> str:
    if isinstance(payload, ValuePayload):
        if payload.unit is None:
            return _dump_scalar(payload.value)
        return f"[{_dump_scalar(payload.value)},{_dump_text(payload.unit)}]"
    return _dump_scalar(payload)


def encode(message: Mapping[str, ValuePayload | Scalar]) -> str:
    """Serialise ``message`` on one line; integers stay bare, floats always carry a fraction."""
    members = (f"{_dump_text(name)}:{_encode_payload(payload)}" for name, payload in message.items())
    return "{" + ",".join(members) + "}"
