"""Turn tracking and transcript log for live voice sessions.

Provides:
- TranscriptTurn: frozen dataclass for one sealed speaker turn
- TranscriptLog: append-only, ordered log of sealed turns
- TurnTracker: per-speaker pending buffers fed by transcription deltas

Sealing rules:
- turn complete: every non-empty pending buffer is sealed (user first, then agent)
- interrupted: the agent's pending text is discarded (it was cut off), the user's kept
- session end: flush() seals whatever is still pending

No external dependencies beyond stdlib. Importable independently of voice_session.py.
"""

from dataclasses import dataclass

from session_events import Speaker

# Roles as stored by the persistence layer and written into the transcript
STORED_ROLES = {Speaker.USER: "user", Speaker.AGENT: "model"}


@dataclass(frozen=True)
class TranscriptTurn:
    """One sealed, uninterrupted span of speech from a single speaker."""
    speaker: Speaker
    text: str

    def to_line(self) -> str:
        return f"{STORED_ROLES[self.speaker]}: {self.text}"

    def to_message(self) -> dict:
        return {"role": STORED_ROLES[self.speaker], "content": self.text}


class TranscriptLog:
    """Ordered, append-only sequence of sealed turns for one session."""

    def __init__(self):
        self._turns: list[TranscriptTurn] = []

    def append(self, turn: TranscriptTurn):
        self._turns.append(turn)

    @property
    def turns(self) -> tuple:
        return tuple(self._turns)

    def format(self) -> str:
        """Serialize as `role: text` lines (user/model), in order."""
        return "\n".join(turn.to_line() for turn in self._turns)

    def to_messages(self) -> list[dict]:
        return [turn.to_message() for turn in self._turns]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(self._turns)


class TurnTracker:
    """Accumulates transcription deltas per speaker and seals them into a TranscriptLog."""

    def __init__(self, log: TranscriptLog | None = None):
        self.log = log if log is not None else TranscriptLog()
        self._pending: dict[Speaker, str] = {Speaker.USER: "", Speaker.AGENT: ""}

    def pending(self, speaker: Speaker) -> str:
        return self._pending[speaker]

    def add_partial(self, speaker: Speaker, text: str):
        """Append a fragment in arrival order."""
        if text:
            self._pending[speaker] += text

    def _seal(self, speaker: Speaker) -> TranscriptTurn | None:
        text = self._pending[speaker]
        self._pending[speaker] = ""
        if not text:
            return None
        turn = TranscriptTurn(speaker, text)
        self.log.append(turn)
        return turn

    def on_turn_complete(self) -> list[TranscriptTurn]:
        """Seal both channels; returns the turns that were sealed."""
        sealed = [self._seal(Speaker.USER), self._seal(Speaker.AGENT)]
        return [t for t in sealed if t is not None]

    def on_interrupted(self):
        """Drop the agent's truncated partial; the user's pending text is untouched."""
        self._pending[Speaker.AGENT] = ""

    def flush(self) -> list[TranscriptTurn]:
        """Seal any open partials at session end."""
        return self.on_turn_complete()

    def transcript(self) -> str:
        return self.log.format()
