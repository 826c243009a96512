"""Microphone capture: fixed-size PCM frames -> volume proxy -> encode -> send.

PortAudio delivers 4096-sample float32 blocks at 16 kHz (~256 ms each) on
its own thread; each block is handed back to the asyncio loop with
call_soon_threadsafe and processed there, so barge-in and the transport
only ever see frames on the session's event loop.

A failed send drops that frame and capture continues.
"""

import logging
from typing import Callable

import numpy as np

from audio_codec import EncodedAudioFrame, INPUT_SAMPLE_RATE, encode, volume_proxy
from session_config import SetupError

logger = logging.getLogger(__name__)

FRAME_SIZE = 4096


class MicrophoneUnavailable(SetupError):
    """Microphone permission denied or no input device."""


class CapturePipeline:
    """Callback-driven mic capture feeding the codec and transport.

    Args:
        send: transport send(frame); return value ignored, exceptions swallowed
        on_volume: callback(volume) per frame, before the frame is sent (barge-in hook)
        sample_rate: capture rate (16 kHz for the live model)
        frame_size: samples per frame
    """

    def __init__(self, send: Callable[[EncodedAudioFrame], object],
                 on_volume: Callable[[float], None] | None = None,
                 sample_rate: int = INPUT_SAMPLE_RATE, frame_size: int = FRAME_SIZE,
                 device_index=None):
        self._send = send
        self._on_volume = on_volume or (lambda v: None)
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.device_index = device_index

        self.running = False
        self.muted = False
        self.last_volume = 0.0
        self.frames_captured = 0
        self.send_failures = 0

        self._loop = None
        self._pa = None
        self._stream = None

    @property
    def frame_period(self) -> float:
        return self.frame_size / self.sample_rate

    # ── Device ─────────────────────────────────────────────────────

    def open(self, loop):
        """Acquire the microphone; raises MicrophoneUnavailable."""
        try:
            import pyaudio
        except ImportError as e:
            raise MicrophoneUnavailable("PyAudio is not installed; no microphone access") from e

        self._loop = loop
        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self.frame_size,
                input_device_index=self.device_index,
                stream_callback=self._device_callback,
            )
        except (OSError, ValueError) as e:
            self._release()
            raise MicrophoneUnavailable(f"Microphone access denied or unavailable: {e}") from e

        self.running = True
        self._stream.start_stream()
        logger.info("Audio capture started (%d Hz, %d samples/frame)", self.sample_rate, self.frame_size)

    def close(self):
        """Stop capture immediately; frames already posted to the loop are ignored."""
        was_running = self.running
        self.running = False
        self._release()
        if was_running:
            logger.info("Audio capture stopped (%d frames)", self.frames_captured)

    def _release(self):
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except Exception as e:
                logger.debug("Input stream close error: %s", e)
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None

    def _device_callback(self, in_data, frame_count, time_info, status):
        import pyaudio

        samples = np.frombuffer(in_data, dtype=np.float32).copy()
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._deliver, samples)
        return None, pyaudio.paContinue

    def _deliver(self, samples):
        if self.running:
            self.process_frame(samples)

    # ── Per-frame processing ──────────────────────────────────────

    def process_frame(self, samples) -> float:
        """Volume proxy, barge-in hook, encode, send. Returns the frame's volume."""
        self.frames_captured += 1
        if self.muted:
            self.last_volume = 0.0
            self._on_volume(0.0)
            return 0.0

        volume = volume_proxy(samples)
        self.last_volume = volume
        self._on_volume(volume)

        try:
            self._send(encode(samples, self.sample_rate))
        except Exception as e:
            self.send_failures += 1
            logger.debug("Capture: frame dropped (send failed: %s)", e)
        return volume
