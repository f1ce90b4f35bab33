from __future__ import annotations

import re
from dataclasses import dataclass


STATUS_PREFIX = "status/"
SET_PREFIX = "set/"
APP_PREFIX = "app/"

RELOAD_TOPIC = "app/exe/reload"

DEVICE_PATH_PATTERN = re.compile(r"[A-Za-z0-9_/]+")
VALUE_NAME_PATTERN = re.compile(r"\w+", re.ASCII)
VALUE_REFERENCE_PATTERN = re.compile(r"([A-Za-z0-9_/]+):(\w+)", re.ASCII)


def is_device_path(text: str) -> bool:
    return bool(DEVICE_PATH_PATTERN.fullmatch(text)) and not text.endswith("/")


def is_value_name(text: str) -> bool:
    return bool(VALUE_NAME_PATTERN.fullmatch(text))


@dataclass(frozen=True)
class ValueReference:
    device_path: str
    value_name: str

    def __str__(self) -> str:
        return f"{self.device_path}:{self.value_name}"

    @property
    def status_topic(self) -> str:
        return status_topic(self.device_path)

    @property
    def set_topic(self) -> str:
        return f"{SET_PREFIX}{self.device_path}"


def parse_value_reference(text: str) -> ValueReference:
    if not isinstance(text, str):
        raise ValueError(f"value reference must be a string, got {type(text).__name__}")
    match = VALUE_REFERENCE_PATTERN.fullmatch(text)
    if match is None or match.group(1).endswith("/"):
        raise ValueError(f"malformed value reference: {text!r} (expected path/path:value)")
    return ValueReference(device_path=match.group(1), value_name=match.group(2))


def status_topic(device_path: str) -> str:
    return f"{STATUS_PREFIX}{device_path}"


def device_path_from_status_topic(topic: str) -> str | None:
    if not topic.startswith(STATUS_PREFIX):
        return None
    device_path = topic[len(STATUS_PREFIX):]
    return device_path if is_device_path(device_path) else None
