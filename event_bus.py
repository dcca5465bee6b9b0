"""
Session journal for the realtime session engine.

Each session gets a directory holding ``events.jsonl``. The engine appends one
JSON object per line for every state change, transcript, tool call and retry,
and the same event is handed to any in-process listeners. Microphone volume
is far too chatty for disk and only reaches listeners.

Lines are kept under PIPE_BUF (4096 bytes) so an O_APPEND write lands whole
even if another process appends to the same file.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 4096
_STRING_CAP = 200


class EventType(str, Enum):
    """Journal event catalog."""
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    STATE = "state"
    VOLUME = "volume"
    USER_TRANSCRIPT = "user_transcript"
    MODEL_TRANSCRIPT = "model_transcript"
    MODEL_TEXT = "model_text"
    UI_MESSAGE = "ui_message"
    INTERRUPTED = "interrupted"
    TOOL_CALL = "tool_call"
    TOOL_RESPONSE = "tool_response"
    TOOL_ABANDONED = "tool_abandoned"
    TOOL_FAILED = "tool_failed"
    IMAGE_READY = "image_ready"
    GROUNDING = "grounding"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_EXHAUSTED = "retry_exhausted"
    DEVICE_ERROR = "device_error"
    ERROR = "error"


def _type_name(event_type) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type


# Envelope keys; everything else on a line is payload
ENVELOPE = ("ts", "src", "type", "attempt", "sid")


@dataclass
class BusEvent:
    """One journal line.

    ``attempt`` is the connection attempt the event belongs to (0 before the
    first connect), so a reader can group events per reconnect.
    """
    ts: float
    src: str
    type: str
    attempt: int
    sid: str
    payload: dict = field(default_factory=dict)

    def envelope(self) -> dict:
        return {"ts": self.ts, "src": self.src, "type": self.type,
                "attempt": self.attempt, "sid": self.sid}

    def to_json_line(self) -> str:
        """Encode as a newline-terminated JSON line of at most MAX_LINE_BYTES.

        Oversized lines first have long payload strings clipped (image data
        URLs, long transcripts); if that is not enough only the envelope is
        kept, flagged with ``_truncated``.
        """
        line = _dump({**self.envelope(), **self.payload})
        if len(line.encode()) <= MAX_LINE_BYTES:
            return line

        clipped = {
            key: (val[:_STRING_CAP] + "...[truncated]"
                  if isinstance(val, str) and len(val) > _STRING_CAP else val)
            for key, val in self.payload.items()
        }
        line = _dump({**self.envelope(), **clipped})
        if len(line.encode()) <= MAX_LINE_BYTES:
            return line
        return _dump({**self.envelope(), "_truncated": True})

    @classmethod
    def from_json_line(cls, line: str) -> "BusEvent":
        data = json.loads(line)
        head = {key: data.pop(key) for key in ENVELOPE}
        return cls(**head, payload=data)


def _dump(data: dict) -> str:
    return json.dumps(data, separators=(',', ':'), default=str) + "\n"


def read_events(path: Path, event_type=None, since_ts: Optional[float] = None) -> Iterator[BusEvent]:
    """Yield journal events in file order, skipping lines that don't parse."""
    path = Path(path)
    if not path.exists():
        return
    wanted = _type_name(event_type) if event_type else None
    try:
        with open(path) as f:
            for raw in f:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    evt = BusEvent.from_json_line(raw)
                except (json.JSONDecodeError, KeyError, TypeError):
                    continue
                if wanted and evt.type != wanted:
                    continue
                if since_ts and evt.ts < since_ts:
                    continue
                yield evt
    except OSError as e:
        logger.warning("Could not read journal %s: %s", path, e)


class EventBus:
    """Append-only journal plus in-process listeners.

    Usage:
        bus = EventBus(session_dir, "realtime_session", session_id)
        bus.open()
        bus.on("state", on_state)                 # one type, or "*" for all
        bus.emit("state", state="CONNECTED")      # journal + listeners
        bus.emit_ephemeral("volume", level=4.2)   # listeners only
        bus.read_recent(last_n=10)
        bus.close()

    Without open() events still reach listeners but nothing is written.
    """

    def __init__(self, session_dir, src: str, sid: str):
        self.session_dir = Path(session_dir)
        self.src = src
        self.sid = sid
        self.attempt = 0  # bumped by the session on every connect
        self._file = None
        self._listeners: dict[str, list[Callable]] = {}

    @property
    def bus_path(self) -> Path:
        return self.session_dir / "events.jsonl"

    def open(self):
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self._file = open(self.bus_path, "a")

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def on(self, event_type, callback: Callable):
        """Register ``callback(BusEvent)`` for one event type or "*"."""
        self._listeners.setdefault(_type_name(event_type), []).append(callback)

    def _event(self, event_type, attempt, payload) -> BusEvent:
        return BusEvent(
            ts=time.time(),
            src=self.src,
            type=_type_name(event_type),
            attempt=self.attempt if attempt is None else attempt,
            sid=self.sid,
            payload=payload,
        )

    def _notify(self, evt: BusEvent):
        for key in (evt.type, "*"):
            for callback in self._listeners.get(key, ()):
                try:
                    callback(evt)
                except Exception as e:
                    logger.error("Journal listener failed on %s: %s", evt.type, e)

    def emit(self, event_type, attempt: Optional[int] = None, **payload) -> BusEvent:
        evt = self._event(event_type, attempt, payload)
        if self._file is not None:
            try:
                self._file.write(evt.to_json_line())
                self._file.flush()
            except OSError as e:
                logger.error("Journal write failed: %s", e)
        self._notify(evt)
        return evt

    def emit_ephemeral(self, event_type, attempt: Optional[int] = None, **payload) -> BusEvent:
        evt = self._event(event_type, attempt, payload)
        self._notify(evt)
        return evt

    def read_recent(self, last_n: int = 50, event_type=None,
                    since_ts: Optional[float] = None) -> list[BusEvent]:
        """Most recent events from this session's journal (all when last_n is 0)."""
        events = list(read_events(self.bus_path, event_type, since_ts))
        return events[-last_n:] if last_n else events
