"""Tunable settings and credential lookup for live coaching sessions.

Every constant the session engine relies on (rates, barge-in threshold,
response delay, analysis gate, model names) lives in SessionConfig so it
can be tuned per deployment without touching the pipeline code.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

# Gemini Live / generateContent models
LIVE_MODEL = "gemini-2.5-flash-native-audio-preview-09-2025"
SCORING_MODEL = "gemini-2.5-flash"

# Prebuilt voices keyed by the user's voice preference
VOICE_NAMES = {"Male": "Fenrir", "Female": "Zephyr"}

DEFAULT_SESSION_DIR = Path("~/.local/share/pitch-coach/sessions")

# env var -> SessionConfig field
_ENV_OVERRIDES = {
    "PITCH_COACH_BARGE_IN_THRESHOLD": "barge_in_threshold",
    "PITCH_COACH_RESPONSE_DELAY": "response_delay",
    "PITCH_COACH_MIN_TRANSCRIPT": "min_transcript_chars",
    "PITCH_COACH_LIVE_MODEL": "live_model",
    "PITCH_COACH_SCORING_MODEL": "scoring_model",
    "PITCH_COACH_SESSION_DIR": "session_dir",
}


class SetupError(RuntimeError):
    """Terminal session setup failure (credentials, microphone, connection)."""


@dataclass(frozen=True)
class SessionConfig:
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000
    frame_size: int = 4096               # samples per capture callback (~256ms @ 16kHz)
    barge_in_threshold: float = 0.2      # volume proxy, [0, 1] scale
    response_delay: float = 0.6          # seconds before the first buffer of an AI turn; 0 disables
    min_transcript_chars: int = 50       # below this, no analysis is attempted
    history_limit: int = 10              # persisted messages used to seed context
    live_model: str = LIVE_MODEL
    scoring_model: str = SCORING_MODEL
    voice_names: dict = field(default_factory=lambda: dict(VOICE_NAMES))
    request_timeout: float = 60.0
    session_dir: Path = DEFAULT_SESSION_DIR

    def voice_for(self, preference: str) -> str:
        """Map a Male/Female preference onto a prebuilt voice name (Female is the fallback)."""
        return self.voice_names.get(preference, self.voice_names.get("Female", "Zephyr"))

    @classmethod
    def from_env(cls, environ=None) -> "SessionConfig":
        """Defaults overlaid with PITCH_COACH_* environment variables."""
        environ = os.environ if environ is None else environ
        config = cls()
        types = {f.name: f.type for f in fields(cls)}
        overrides = {}
        for var, name in _ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            overrides[name] = _coerce(var, raw, types[name])
        return replace(config, **overrides) if overrides else config


def _coerce(var, raw, annotation):
    kind = annotation if isinstance(annotation, str) else getattr(annotation, "__name__", "")
    try:
        if kind == "int":
            return int(raw)
        if kind == "float":
            return float(raw)
    except ValueError:
        raise ValueError(f"{var} must be a number, got {raw!r}") from None
    if kind == "Path":
        return Path(raw)
    return raw


def get_api_key(environ=None):
    """Get the Gemini API key from the environment or ~/.config."""
    environ = os.environ if environ is None else environ
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY"):
        key = environ.get(var)
        if key:
            return key
    for path in [
        Path.home() / ".config" / "gemini" / "api_key",
    ]:
        if path.exists():
            key = path.read_text().strip()
            if key:
                return key
    return None


def get_supabase_credentials(environ=None):
    """Return (url, anon_key), or None when persistence should stay local."""
    environ = os.environ if environ is None else environ
    url = environ.get("SUPABASE_URL")
    key = environ.get("SUPABASE_ANON_KEY")
    if not url or not key:
        return None
    return url.rstrip("/"), key
