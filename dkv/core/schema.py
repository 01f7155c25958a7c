"""
Data model for stored entries, watch events, credentials and dead-man triggers.
"""

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import MalformedInput

Path = Tuple[str, ...]


@dataclass
class Entry:
    path: Path
    value: Any
    versionstamp: str
    expires_at: Optional[float] = None

    @property
    def display_path(self) -> str:
        return format_path(self.path)


@dataclass
class WatchEvent:
    """One observed mutation. ``value`` and ``versionstamp`` are None when the key is gone."""

    path: Path
    value: Any
    versionstamp: Optional[str]

    @property
    def deleted(self) -> bool:
        return self.versionstamp is None


def format_path(path: Path) -> str:
    return "/" + "/".join(path)


class ValueKind(str, Enum):
    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def value_kind(value: Any) -> ValueKind:
    """Classify a stored value. Anything that is not plain JSON is rejected."""
    if value is None:
        return ValueKind.NULL
    # bool is a subclass of int, check it first
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, int):
        return ValueKind.INTEGER
    if isinstance(value, float):
        if not math.isfinite(value):
            raise MalformedInput(f"Non-finite number is not a JSON value: {value!r}")
        return ValueKind.FLOAT
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    if isinstance(value, dict):
        return ValueKind.OBJECT
    raise MalformedInput(f"Unsupported value type: {type(value).__name__}")


def validate_value(value: Any) -> Any:
    """Walk a value tree and make sure every node is a JSON value."""
    kind = value_kind(value)
    if kind is ValueKind.ARRAY:
        for item in value:
            validate_value(item)
    elif kind is ValueKind.OBJECT:
        for key, item in value.items():
            if not isinstance(key, str):
                raise MalformedInput(f"Object keys must be strings, got {type(key).__name__}")
            validate_value(item)
    return value


class PermissionRecord(BaseModel):
    """Capabilities granted to one credential (or to the public)."""

    model_config = ConfigDict(populate_by_name=True)

    can_read: Optional[str] = Field(None, alias="canRead")
    can_write: Optional[str] = Field(None, alias="canWrite")
    can_ping: Optional[str] = Field(None, alias="canPing")
    can_notify: Optional[str] = Field(None, alias="canNotify")
    display_name: str = Field("", alias="displayName")
    description: str = ""

    @field_validator('can_read', 'can_write', 'can_ping', 'can_notify')
    @classmethod
    def regex_must_compile(cls, v):
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f'invalid capability regex {v!r}: {e}')
        return v

    def pattern_for(self, capability: str) -> Optional[str]:
        return getattr(self, f"can_{capability}")


class DeadManTrigger(BaseModel):
    """Heartbeat bookkeeping for one monitored entity. Times are epoch seconds."""

    model_config = ConfigDict(populate_by_name=True)

    last_ping: float = Field(..., alias="lastPing")
    last_notification: Optional[float] = Field(None, alias="lastNotification")
    notify_delay: float = Field(..., alias="notifyDelay")
    notify_cooldown: Optional[float] = Field(None, alias="notifyCooldown")

    @field_validator('notify_delay')
    @classmethod
    def delay_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError('notifyDelay must be > 0')
        return v

    @field_validator('notify_cooldown')
    @classmethod
    def cooldown_must_be_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError('notifyCooldown must be > 0')
        return v

    @property
    def effective_cooldown(self) -> float:
        return self.notify_cooldown if self.notify_cooldown is not None else self.notify_delay

    def to_value(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
