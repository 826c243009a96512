"""
Per-session JSONL event log for live coaching sessions.

The session controller appends one line per event (state changes, sealed
turns, barge-ins, analysis results) to <session_dir>/events.jsonl.
Listeners registered with on() see every event as it happens, including
ephemeral high-frequency ones (mic volume) that never reach the file.

Lines are kept at or below PIPE_BUF (4096 bytes) so each append is atomic.
"""

import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 4096
MAX_FIELD_CHARS = 200
HEADER_KEYS = ("ts", "src", "type", "sid")


class EventType(str, Enum):
    SESSION_START = "session_start"
    STATE = "state"
    VOLUME = "volume"            # ephemeral
    TURN = "turn"
    BARGE_IN = "barge_in"
    INTERRUPTED = "interrupted"
    DECODE_ERROR = "decode_error"
    ANALYSIS = "analysis"
    METRICS = "metrics"
    ERROR = "error"
    SESSION_END = "session_end"


def type_name(event_type) -> str:
    """EventType members and plain strings both name an event type."""
    return str(getattr(event_type, "value", event_type))


def _dump(record: dict) -> str:
    return json.dumps(record, separators=(",", ":"), default=str) + "\n"


def _shorten(value):
    if isinstance(value, str) and len(value) > MAX_FIELD_CHARS:
        return value[:MAX_FIELD_CHARS] + "...[truncated]"
    return value


@dataclass
class BusEvent:
    ts: float
    src: str
    type: str
    sid: str
    payload: dict = field(default_factory=dict)

    def header(self) -> dict:
        return {"ts": self.ts, "src": self.src, "type": self.type, "sid": self.sid}

    def to_json_line(self) -> str:
        """One JSON object plus newline; long strings, then the whole payload, are dropped to fit."""
        line = _dump({**self.header(), **self.payload})
        if len(line.encode()) <= MAX_LINE_BYTES:
            return line
        line = _dump({**self.header(), **{k: _shorten(v) for k, v in self.payload.items()}})
        if len(line.encode()) <= MAX_LINE_BYTES:
            return line
        return _dump({**self.header(), "_truncated": True})

    @classmethod
    def from_json_line(cls, line: str) -> "BusEvent":
        """Parse one log line; raises ValueError for anything that is not an event."""
        record = json.loads(line)
        if not isinstance(record, dict):
            raise ValueError("event line is not a JSON object")
        missing = [k for k in HEADER_KEYS if k not in record]
        if missing:
            raise ValueError(f"event line missing {', '.join(missing)}")
        header = {k: record.pop(k) for k in HEADER_KEYS}
        return cls(payload=record, **header)


class EventBus:
    """Event log file plus in-process listeners for one voice session.

    Usage:
        bus = EventBus(session_dir, "voice_session", session_id)
        bus.open()
        bus.on("*", print)                               # every event
        bus.emit(EventType.STATE, state="active")        # file + listeners
        bus.emit_ephemeral(EventType.VOLUME, level=0.3)  # listeners only
        bus.close()
    """

    FILENAME = "events.jsonl"

    def __init__(self, session_dir, src: str, sid: str):
        self.session_dir = Path(session_dir)
        self.src = src
        self.sid = sid
        self._fh = None
        self._listeners = defaultdict(list)

    @property
    def bus_path(self) -> Path:
        return self.session_dir / self.FILENAME

    @property
    def is_open(self) -> bool:
        return self._fh is not None

    def open(self):
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self._fh = self.bus_path.open("a", encoding="utf-8")

    def close(self):
        fh, self._fh = self._fh, None
        if fh is not None:
            fh.close()

    def on(self, event_type, callback):
        """Listen for one event type, or for every event with "*"."""
        self._listeners[type_name(event_type)].append(callback)

    def emit(self, event_type, **payload) -> BusEvent:
        event = self._event(event_type, payload)
        if self._fh is not None:
            try:
                self._fh.write(event.to_json_line())
                self._fh.flush()
            except OSError as e:
                logger.error("Event log: write to %s failed: %s", self.bus_path, e)
        self._notify(event)
        return event

    def emit_ephemeral(self, event_type, **payload) -> BusEvent:
        event = self._event(event_type, payload)
        self._notify(event)
        return event

    def _event(self, event_type, payload) -> BusEvent:
        return BusEvent(ts=time.time(), src=self.src, type=type_name(event_type),
                        sid=self.sid, payload=payload)

    def _notify(self, event: BusEvent):
        for callback in self._listeners.get(event.type, []) + self._listeners.get("*", []):
            try:
                callback(event)
            except Exception as e:
                logger.error("Event log: listener for %s raised: %s", event.type, e)

    def read_recent(self, last_n: int = 50, event_type=None) -> list[BusEvent]:
        """Events from the log file, oldest first; last_n=0 returns all of them."""
        wanted = type_name(event_type) if event_type is not None else None
        try:
            text = self.bus_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Event log: cannot read %s: %s", self.bus_path, e)
            return []

        events = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                event = BusEvent.from_json_line(line)
            except ValueError:
                continue
            if wanted is None or event.type == wanted:
                events.append(event)
        return events[-last_n:] if last_n else events
