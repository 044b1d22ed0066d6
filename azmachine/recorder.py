"""Process-wide event recorder with a settable default."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol


class EventType(str, Enum):
    """Kind of a recorded event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class RecordedEvent:
    """One event as kept by :class:`FakeRecorder`."""

    obj: Any
    event_type: EventType
    reason: str
    message: str


class EventRecorder(Protocol):
    def event(self, obj: Any, event_type: EventType, reason: str, message: str) -> None: ...

    def eventf(
        self, obj: Any, event_type: EventType, reason: str, message: str, *args: Any
    ) -> None: ...


class FakeRecorder:
    """Recorder that keeps events in memory."""

    def __init__(self) -> None:
        self.events: list[RecordedEvent] = []

    def event(self, obj: Any, event_type: EventType, reason: str, message: str) -> None:
        self.events.append(RecordedEvent(obj, EventType(event_type), reason, message))

    def eventf(
        self, obj: Any, event_type: EventType, reason: str, message: str, *args: Any
    ) -> None:
        self.event(obj, event_type, reason, message % args if args else message)


_lock = threading.Lock()
_initialised = False
_default_recorder: EventRecorder = FakeRecorder()

_WORD_START = re.compile(r"(?<!\w)\w")


def _title(text: str) -> str:
    return _WORD_START.sub(lambda match: match.group().upper(), text)


def init_from_recorder(recorder: EventRecorder) -> None:
    """Set the default recorder. Only the first call has any effect."""
    global _initialised, _default_recorder
    with _lock:
        if _initialised:
            return
        _initialised = True
        _default_recorder = recorder


def event(obj: Any, reason: str, message: str) -> None:
    """Record a normal event."""
    _default_recorder.event(obj, EventType.NORMAL, _title(reason), message)


def eventf(obj: Any, reason: str, message: str, *args: Any) -> None:
    """Record a normal event, formatting ``message`` with ``args``."""
    _default_recorder.eventf(obj, EventType.NORMAL, _title(reason), message, *args)


def warn(obj: Any, reason: str, message: str) -> None:
    """Record a warning event."""
    _default_recorder.event(obj, EventType.WARNING, _title(reason), message)


def warnf(obj: Any, reason: str, message: str, *args: Any) -> None:
    """Record a warning event, formatting ``message`` with ``args``."""
    _default_recorder.eventf(obj, EventType.WARNING, _title(reason), message, *args)