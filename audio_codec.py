"""PCM16 codec for the live voice session.

Capture side: float32 mic samples in [-1, 1] -> little-endian PCM16 ->
base64 frame tagged with its MIME descriptor.
Playback side: PCM16 bytes from the model -> normalized float32 samples
tagged with both the declared rate and the output context rate.

Pure functions only; no audio device access. Importable independently of
the rest of the session code.
"""

import base64
import binascii
from dataclasses import dataclass

import numpy as np

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000

PCM16_SCALE = 32768.0

# Volume proxy: every Nth sample is averaged, then scaled into a rough
# perceptual [0, 1] range (normal speech lands around 0.1-0.5).
VOLUME_STRIDE = 100
VOLUME_GAIN = 5.0


class DecodeError(ValueError):
    """Raised when inbound audio cannot be interpreted as PCM16."""


@dataclass(frozen=True)
class EncodedAudioFrame:
    """Transport-safe capture frame (base64 PCM16)."""
    data: str
    mime_type: str

    @property
    def sample_rate(self) -> int:
        return parse_rate(self.mime_type, INPUT_SAMPLE_RATE)


@dataclass(frozen=True)
class DecodedAudio:
    """Normalized float32 samples ready to become a PlaybackBuffer.

    `sample_rate` is the rate the server declared for the bytes;
    `context_rate` is the rate of the output device. When they differ the
    output layer is responsible for resampling.
    """
    samples: np.ndarray
    sample_rate: int
    context_rate: int

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / self.sample_rate

    @property
    def needs_resample(self) -> bool:
        return self.sample_rate != self.context_rate


def pcm_mime_type(sample_rate: int) -> str:
    return f"audio/pcm;rate={sample_rate}"


def parse_rate(mime_type: str, default: int) -> int:
    """Extract the `rate=` parameter from a MIME descriptor like audio/pcm;rate=24000."""
    for part in (mime_type or "").split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key == "rate":
            try:
                return int(value)
            except ValueError:
                return default
    return default


def float_to_pcm16(samples) -> bytes:
    """Convert float samples to clamped little-endian signed 16-bit PCM."""
    arr = np.asarray(samples, dtype=np.float32)
    scaled = np.clip(np.round(arr * PCM16_SCALE), -32768, 32767)
    return scaled.astype("<i2").tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    """Interpret bytes as little-endian PCM16 and normalize to float32."""
    if len(data) % 2 != 0:
        raise DecodeError(f"PCM16 payload has odd byte length ({len(data)})")
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / PCM16_SCALE


def encode(samples, sample_rate: int = INPUT_SAMPLE_RATE) -> EncodedAudioFrame:
    """Encode a block of float mic samples for the wire."""
    pcm = float_to_pcm16(samples)
    return EncodedAudioFrame(
        data=base64.b64encode(pcm).decode("ascii"),
        mime_type=pcm_mime_type(sample_rate),
    )


def decode(data: bytes, context_rate: int = OUTPUT_SAMPLE_RATE,
           declared_rate: int = OUTPUT_SAMPLE_RATE) -> DecodedAudio:
    """Decode raw PCM16 bytes from the model into playable samples."""
    return DecodedAudio(
        samples=pcm16_to_float(data),
        sample_rate=declared_rate,
        context_rate=context_rate,
    )


def decode_base64(payload: str) -> bytes:
    """Base64 -> bytes, mapping malformed input onto DecodeError."""
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Malformed base64 audio: {e}") from e


def volume_proxy(samples, stride: int = VOLUME_STRIDE, gain: float = VOLUME_GAIN) -> float:
    """Cheap loudness estimate: mean |x| over a strided subsample, scaled and capped at 1."""
    arr = np.asarray(samples, dtype=np.float32)
    if arr.size == 0:
        return 0.0
    picked = arr[::max(1, stride)]
    return float(min(1.0, float(np.mean(np.abs(picked))) * gain))
