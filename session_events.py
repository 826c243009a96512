"""Typed events delivered by the live transport to the session controller via asyncio.Queue."""

from dataclasses import dataclass
from enum import Enum, auto


class Speaker(str, Enum):
    USER = "user"
    AGENT = "agent"


class EventType(Enum):
    OPENED = auto()              # Setup acknowledged, audio may flow
    PARTIAL_TRANSCRIPT = auto()  # Transcription delta for one speaker
    AUDIO_FRAME = auto()         # PCM16 audio from the model
    TURN_COMPLETE = auto()       # Model finished its turn
    INTERRUPTED = auto()         # Server detected the user talking over the model
    CLOSED = auto()              # Stream ended (terminal)
    ERROR = auto()               # Connection failure (terminal)


TERMINAL_EVENTS = frozenset({EventType.CLOSED, EventType.ERROR})


@dataclass(frozen=True)
class SessionEvent:
    type: EventType
    speaker: Speaker | None = None
    text: str = ""
    audio: bytes = b""
    sample_rate: int = 0
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    @classmethod
    def opened(cls) -> "SessionEvent":
        return cls(EventType.OPENED)

    @classmethod
    def partial(cls, speaker: Speaker, text: str) -> "SessionEvent":
        return cls(EventType.PARTIAL_TRANSCRIPT, speaker=speaker, text=text)

    @classmethod
    def audio_frame(cls, audio: bytes, sample_rate: int) -> "SessionEvent":
        return cls(EventType.AUDIO_FRAME, audio=audio, sample_rate=sample_rate)

    @classmethod
    def turn_complete(cls) -> "SessionEvent":
        return cls(EventType.TURN_COMPLETE)

    @classmethod
    def interrupted(cls) -> "SessionEvent":
        return cls(EventType.INTERRUPTED)

    @classmethod
    def closed(cls, reason: str = "") -> "SessionEvent":
        return cls(EventType.CLOSED, reason=reason)

    @classmethod
    def error(cls, reason: str) -> "SessionEvent":
        return cls(EventType.ERROR, reason=reason)
