"""
Structured diagnostic events for connection attempts.

Each hop of a connection emits a small JSON record at every interesting
step, so a broken ProxyJump chain can be diagnosed from the event log alone.

Event types:
- CONNECT: a hop finished its handshake (or failed to)
- JUMP: a hop is about to be dialled through a ProxyJump parent
- HOST_KEY: a host key was classified
- AUTH: an authentication method was offered
- PROMPT: a human was asked a question (never the answer)
- EXEC: a command finished on the final hop
- ERROR: an attempt failed
- DISCONNECT: the chain was closed

Every event carries:
- timestamp: Unix time in milliseconds
- event_type: one of the above
- data: event-specific fields
"""
from __future__ import annotations

import json
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator


class EventType(str, Enum):
    """Diagnostic event categories."""
    CONNECT = "CONNECT"
    JUMP = "JUMP"
    HOST_KEY = "HOST_KEY"
    AUTH = "AUTH"
    PROMPT = "PROMPT"
    EXEC = "EXEC"
    ERROR = "ERROR"
    DISCONNECT = "DISCONNECT"


@dataclass
class Event:
    """One immutable diagnostic record."""
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {valid_types}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        """Serialise the event to one line of JSON."""
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        """Deserialise an event written by to_json()."""
        data = json.loads(json_str)
        return cls(
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            data=data.get("data", {}),
        )


class EventCollector:
    """In-memory sink, mainly for tests."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        """Record one event."""
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Copy of the collected events."""
        return list(self._events)

    def clear(self) -> None:
        """Drop all collected events."""
        self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        """Collected events of one type, in emission order."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]


class JSONLEventWriter:
    """Appends one JSON object per line to a log file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    def open(self) -> None:
        """Open the log file for appending, creating its directory."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        """Close the log file."""
        if self._file:
            self._file.close()
            self._file = None

    def emit(self, event: Event) -> None:
        """Append one event as a JSON line and flush."""
        assert self._file is not None, "Writer not opened. Call open() first."
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Dispatches events to an optional collector and an optional JSONL file.

    An emitter with neither sink is valid and discards everything.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._collector = collector
        self._jsonl_writer: JSONLEventWriter | None = None

        if jsonl_path:
            self._jsonl_writer = JSONLEventWriter(jsonl_path)
            self._jsonl_writer.open()

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """
        Create an event and hand it to every configured sink.

        Args:
            event_type: The type of event
            **data: Event-specific data

        Returns:
            The created event
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(event_type=event_type, data=data)
        if self._collector:
            self._collector.emit(event)
        if self._jsonl_writer:
            self._jsonl_writer.emit(event)
        return event

    def close(self) -> None:
        """Close the JSONL file, if any."""
        if self._jsonl_writer:
            self._jsonl_writer.close()

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Emit an event on exit with duration_ms added.

        If the body raises, the event records status="failed" and the error
        type before the exception propagates.

        Usage:
            with emitter.timed_event(EventType.CONNECT, target=name) as data:
                conn = await dial()
                data["depth"] = depth
        """
        start_ms = time.time() * 1000
        event_data = dict(initial_data)

        try:
            yield event_data
        except BaseException as e:
            event_data.setdefault("status", "failed")
            event_data.setdefault("error_type", type(e).__name__)
            raise
        finally:
            event_data["duration_ms"] = (time.time() * 1000) - start_ms
            self.emit(event_type, **event_data)


def read_jsonl_events(path: Path | str) -> list[Event]:
    """
    Read all events from a JSONL file.

    Args:
        path: Path to the JSONL file

    Returns:
        List of Event objects, in file order
    """
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    with open(path, "r", encoding="utf-8") as f:
        return [Event.from_json(line) for line in f if line.strip()]
