"""Local barge-in: cut AI playback as soon as the user talks over it.

Runs on every capture frame. The check is purely local; the captured
frame is still sent to the model, which decides on its own how to react
to being talked over. The server's `interrupted` signal and this
heuristic converge on the same idempotent flush.
"""

import logging
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.2


class BargeInController:
    """Volume-threshold barge-in detector.

    Args:
        is_speaking: returns True while AI audio is scheduled/playing
        flush: stops all AI playback (PlaybackPipeline.flush_all or a wrapper)
        threshold: volume proxy level, on the capture pipeline's [0, 1] scale
        on_trigger: optional callback(volume) after each flush
    """

    def __init__(self, is_speaking: Callable[[], bool], flush: Callable[[], object],
                 threshold: float = DEFAULT_THRESHOLD,
                 on_trigger: Callable[[float], None] | None = None):
        self._is_speaking = is_speaking
        self._flush = flush
        self.threshold = threshold
        self._on_trigger = on_trigger
        self.enabled = True
        self.trigger_count = 0

    def observe(self, volume: float) -> bool:
        """Check one frame's volume; flush playback if the user is talking over the AI."""
        if not self.enabled or volume <= self.threshold:
            return False
        if not self._is_speaking():
            return False

        logger.info("Barge-in: user speech over AI audio (volume=%.2f)", volume)
        self._flush()
        self.trigger_count += 1
        if self._on_trigger:
            self._on_trigger(volume)
        return True
