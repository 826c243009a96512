"""Gapless scheduled playback of model audio with atomic flush for barge-in.

The pipeline keeps a scheduling cursor (`next_start_time`) on an audio
clock. Each decoded buffer starts at max(cursor, clock.now()) and pushes the
cursor forward by its duration, so audio arriving at irregular network
intervals still plays back-to-back. Every scheduled buffer sits in a live
set until its end-of-buffer callback fires; `flush_all()` stops and clears
the whole set in one synchronous step.

Clocks:
- PyAudioOutput: device-backed clock + renderer (frames written / rate)
- ManualClock: deterministic clock advanced by hand (tests, simulations)

Everything here runs on the session's event loop. PyAudioOutput's
PortAudio callback runs on its own thread and only touches state under
its own lock.
"""

import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from audio_codec import DecodedAudio, OUTPUT_SAMPLE_RATE

logger = logging.getLogger(__name__)

FRAMES_PER_BUFFER = 1024


@dataclass(eq=False)
class PlaybackBuffer:
    """One decoded chunk scheduled on the audio clock."""
    id: int
    samples: np.ndarray = field(repr=False)
    sample_rate: int
    start_time: float
    duration: float
    stopped: bool = False
    _end_handle: object = field(default=None, repr=False)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class PlaybackPipeline:
    """Schedules buffers onto the clock and tracks which are still sounding.

    Args:
        clock: object with now() -> float and call_later(delay, cb) -> handle
        output: renderer with start(buffer) / stop(buffer); None = silent
        response_delay: seconds to hold the first buffer of a new AI turn
        on_speaking_change: callback(bool) when the live set goes empty/non-empty
    """

    def __init__(self, clock, output=None, response_delay: float = 0.0,
                 on_speaking_change: Callable[[bool], None] | None = None):
        self._clock = clock
        self._output = output
        self.response_delay = max(0.0, response_delay)
        self._on_speaking_change = on_speaking_change or (lambda speaking: None)

        self.next_start_time = 0.0
        self._live: set[PlaybackBuffer] = set()
        self._ids = itertools.count(1)
        self._turn_open = False  # first buffer of the current AI turn already scheduled

    # ── State ──────────────────────────────────────────────────────

    @property
    def is_speaking(self) -> bool:
        return bool(self._live)

    @property
    def live_count(self) -> int:
        return len(self._live)

    def live_buffers(self) -> list[PlaybackBuffer]:
        return sorted(self._live, key=lambda b: b.start_time)

    # ── Scheduling ─────────────────────────────────────────────────

    def schedule(self, audio: DecodedAudio) -> PlaybackBuffer | None:
        """Schedule one decoded buffer at the cursor and advance it."""
        duration = audio.duration
        if duration <= 0:
            return None

        now = self._clock.now()
        start = max(self.next_start_time, now)
        if not self._turn_open:
            self._turn_open = True
            if self.response_delay > 0 and not self._live:
                start = max(start, now + self.response_delay)

        buf = PlaybackBuffer(
            id=next(self._ids),
            samples=audio.samples,
            sample_rate=audio.sample_rate,
            start_time=start,
            duration=duration,
        )
        self.next_start_time = start + duration

        was_speaking = self.is_speaking
        self._live.add(buf)
        if self._output is not None:
            try:
                self._output.start(buf)
            except Exception as e:
                logger.warning("Playback start failed for buffer %d: %s", buf.id, e)
        buf._end_handle = self._clock.call_later(buf.end_time - now, lambda: self._on_ended(buf))
        if not was_speaking:
            self._on_speaking_change(True)
        return buf

    def mark_turn_complete(self):
        """Next scheduled buffer belongs to a new AI turn (eligible for the response delay)."""
        self._turn_open = False

    def _on_ended(self, buf: PlaybackBuffer):
        if buf not in self._live:
            return  # already flushed
        self._live.discard(buf)
        if not self._live:
            self._on_speaking_change(False)

    # ── Interruption ──────────────────────────────────────────────

    def flush_all(self) -> int:
        """Stop every live buffer, clear the set and reset the cursor.

        Synchronous and idempotent: the set is swapped out before any
        buffer is stopped, so a late end callback finds nothing to remove.
        Returns the number of buffers stopped.
        """
        live, self._live = self._live, set()
        self.next_start_time = 0.0
        self._turn_open = False

        for buf in live:
            buf.stopped = True
            if buf._end_handle is not None:
                buf._end_handle.cancel()
            if self._output is not None:
                try:
                    self._output.stop(buf)
                except Exception as e:
                    logger.debug("Playback stop failed for buffer %d: %s", buf.id, e)

        if live:
            self._on_speaking_change(False)
        return len(live)


# ── Clocks ─────────────────────────────────────────────────────────

class _Timer:
    __slots__ = ("when", "callback", "cancelled")

    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualClock:
    """Hand-advanced audio clock. Timers fire in due order during advance()."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._timers: list = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _Timer:
        timer = _Timer(self._now + max(0.0, delay), callback)
        heapq.heappush(self._timers, (timer.when, next(self._seq), timer))
        return timer

    def advance(self, seconds: float):
        target = self._now + seconds
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            self._now = when
            if not timer.cancelled:
                timer.callback()
        self._now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, t in self._timers if not t.cancelled)


class PyAudioOutput:
    """PortAudio output stream acting as both audio clock and renderer.

    The clock is the number of frames handed to the device divided by the
    sample rate. Scheduled buffers are mixed into each device callback at
    their start frame; end-of-buffer timers run on the asyncio loop.
    """

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE,
                 frames_per_buffer: int = FRAMES_PER_BUFFER, loop=None):
        self.sample_rate = sample_rate
        self.frames_per_buffer = frames_per_buffer
        self._loop = loop
        self._lock = threading.Lock()
        self._frames_rendered = 0
        self._active: dict[int, tuple[int, np.ndarray]] = {}
        self._pa = None
        self._stream = None

    def open(self):
        import asyncio
        import pyaudio

        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._pa = pyaudio.PyAudio()
        self._stream = self._pa.open(
            format=pyaudio.paFloat32,
            channels=1,
            rate=self.sample_rate,
            output=True,
            frames_per_buffer=self.frames_per_buffer,
            stream_callback=self._callback,
        )
        self._stream.start_stream()
        logger.info("Playback started (%d Hz)", self.sample_rate)

    def close(self):
        with self._lock:
            self._active.clear()
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except Exception as e:
                logger.debug("Output stream close error: %s", e)
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None
            logger.info("Playback stopped")

    # Clock interface

    def now(self) -> float:
        with self._lock:
            return self._frames_rendered / self.sample_rate

    def call_later(self, delay: float, callback):
        return self._loop.call_later(max(0.0, delay), callback)

    # Renderer interface

    def start(self, buf: PlaybackBuffer):
        samples = buf.samples
        if buf.sample_rate != self.sample_rate and len(samples):
            samples = resample(samples, buf.sample_rate, self.sample_rate)
        start_frame = int(round(buf.start_time * self.sample_rate))
        with self._lock:
            self._active[buf.id] = (start_frame, samples.astype(np.float32, copy=False))

    def stop(self, buf: PlaybackBuffer):
        with self._lock:
            self._active.pop(buf.id, None)

    def _callback(self, in_data, frame_count, time_info, status):
        import pyaudio

        out = np.zeros(frame_count, dtype=np.float32)
        with self._lock:
            t0 = self._frames_rendered
            for key, (start, samples) in list(self._active.items()):
                offset = t0 - start
                if offset >= len(samples):
                    del self._active[key]
                    continue
                lo = max(0, -offset)
                if lo >= frame_count:
                    continue
                src = offset + lo
                n = min(frame_count - lo, len(samples) - src)
                out[lo:lo + n] += samples[src:src + n]
            self._frames_rendered += frame_count
        return np.clip(out, -1.0, 1.0).tobytes(), pyaudio.paContinue


def resample(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Linear-interpolation resample (used only when the declared rate differs from the device)."""
    if src_rate == dst_rate or len(samples) == 0:
        return samples
    n_out = max(1, int(round(len(samples) * dst_rate / src_rate)))
    x_old = np.arange(len(samples), dtype=np.float64)
    x_new = np.linspace(0, len(samples) - 1, n_out)
    return np.interp(x_new, x_old, samples).astype(np.float32)
