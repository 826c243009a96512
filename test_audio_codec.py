#!/usr/bin/env python3
"""Tests for the PCM16 codec and capture volume proxy.

Run: python3 test_audio_codec.py
"""

import base64
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

from audio_codec import (
    DecodeError, EncodedAudioFrame, decode, decode_base64, encode,
    float_to_pcm16, parse_rate, pcm16_to_float, volume_proxy,
)

PASSED = 0
FAILED = 0
ERRORS = []


def named(name):
    """Decorator to register a test."""
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name}: {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name}: {type(e).__name__}: {e}")


def pcm_values(frame: EncodedAudioFrame):
    return np.frombuffer(base64.b64decode(frame.data), dtype="<i2").tolist()


# ══════════════════════════════════════════════════════════════════
# Test Group 1: Encoding
# ══════════════════════════════════════════════════════════════════

@named("Encode scales floats to PCM16 and tags the rate")
def test_encode_scales():
    frame = encode(np.array([0.0, 0.5, -0.5], dtype=np.float32), 16000)
    assert frame.mime_type == "audio/pcm;rate=16000", frame.mime_type
    assert pcm_values(frame) == [0, 16384, -16384], pcm_values(frame)
    assert frame.sample_rate == 16000


@named("Encode clamps out-of-range samples instead of wrapping")
def test_encode_clamps():
    frame = encode(np.array([2.0, -2.0, 1.0, -1.0], dtype=np.float32))
    assert pcm_values(frame) == [32767, -32768, 32767, -32768], pcm_values(frame)


@named("PCM16 output is little-endian, two bytes per sample")
def test_little_endian():
    pcm = float_to_pcm16([1 / 32768])
    assert pcm == b"\x01\x00", pcm


@named("Encode of an empty block is an empty payload")
def test_encode_empty():
    frame = encode(np.zeros(0, dtype=np.float32))
    assert frame.data == ""


# ══════════════════════════════════════════════════════════════════
# Test Group 2: Decoding
# ══════════════════════════════════════════════════════════════════

@named("Decode normalizes PCM16 into [-1, 1)")
def test_decode_normalizes():
    audio = decode(b"\x00\x80\xff\x7f\x00\x00")
    assert audio.samples.dtype == np.float32
    assert audio.samples[0] == -1.0
    assert abs(audio.samples[1] - 32767 / 32768) < 1e-6
    assert audio.samples[2] == 0.0


@named("Decode reports duration from the declared rate")
def test_decode_duration():
    audio = decode(b"\x00\x00" * 24000, context_rate=24000, declared_rate=24000)
    assert audio.duration == 1.0, audio.duration
    assert not audio.needs_resample


@named("Declared rate differing from the context is flagged for resampling")
def test_decode_rate_mismatch():
    audio = decode(b"\x00\x00" * 16000, context_rate=24000, declared_rate=16000)
    assert audio.duration == 1.0
    assert audio.needs_resample


@named("Odd byte length raises DecodeError")
def test_decode_odd_length():
    try:
        decode(b"\x00\x00\x01")
    except DecodeError as e:
        assert "odd" in str(e)
    else:
        raise AssertionError("expected DecodeError")


@named("DecodeError is a ValueError")
def test_decode_error_type():
    try:
        pcm16_to_float(b"\x01")
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError subclass")


@named("Malformed base64 raises DecodeError")
def test_decode_base64_malformed():
    try:
        decode_base64("not*base64!")
    except DecodeError:
        pass
    else:
        raise AssertionError("expected DecodeError")
    assert decode_base64(base64.b64encode(b"\x01\x02").decode()) == b"\x01\x02"


@named("Encoded capture frames decode back to the same samples")
def test_encode_decode_identity():
    samples = np.array([0.25, -0.75, 0.0, 0.5], dtype=np.float32)
    frame = encode(samples)
    audio = decode(decode_base64(frame.data), declared_rate=frame.sample_rate)
    assert np.allclose(audio.samples, samples, atol=1 / 32768)


# ══════════════════════════════════════════════════════════════════
# Test Group 3: MIME rate and volume proxy
# ══════════════════════════════════════════════════════════════════

@named("parse_rate reads rate= and falls back on junk")
def test_parse_rate():
    assert parse_rate("audio/pcm;rate=24000", 16000) == 24000
    assert parse_rate("audio/pcm; rate=16000", 24000) == 16000
    assert parse_rate("audio/pcm", 24000) == 24000
    assert parse_rate("audio/pcm;rate=fast", 24000) == 24000
    assert parse_rate("", 16000) == 16000


@named("Silence has zero volume")
def test_volume_silence():
    assert volume_proxy(np.zeros(4096, dtype=np.float32)) == 0.0
    assert volume_proxy(np.zeros(0, dtype=np.float32)) == 0.0


@named("Volume is mean |x| times five")
def test_volume_scale():
    vol = volume_proxy(np.full(4096, -0.05, dtype=np.float32))
    assert abs(vol - 0.25) < 1e-6, vol


@named("Volume is capped at 1.0")
def test_volume_cap():
    assert volume_proxy(np.full(4096, 0.9, dtype=np.float32)) == 1.0


@named("Volume only looks at every 100th sample")
def test_volume_stride():
    samples = np.zeros(4096, dtype=np.float32)
    samples[1::100] = 1.0  # never sampled
    assert volume_proxy(samples) == 0.0
    samples[::100] = 0.1
    assert abs(volume_proxy(samples) - 0.5) < 1e-6


if __name__ == "__main__":
    print("=" * 60)
    print("Audio Codec Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print("\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
