#!/usr/bin/env python3
"""
Live voice coaching session: one controller object per voice session.

  mic -> CapturePipeline -> (volume -> BargeInController) -> LiveClient.send
  LiveClient.events -> dispatch -> TurnTracker / PlaybackPipeline
  end_session -> stop audio -> flush transcript -> SessionScorer -> store -> summary

The controller owns every session resource (capture, playback, transport,
transcript, event log) from start() until teardown. All handlers run on a
single asyncio loop and return promptly; only the transport and scoring
requests are awaited.
"""

import asyncio
import logging
import random
import time
from enum import Enum

from audio_capture import CapturePipeline, MicrophoneUnavailable
from audio_codec import DecodeError, decode
from audio_playback import PlaybackPipeline, PyAudioOutput
from barge_in import BargeInController
from event_bus import EventBus, EventType as BusEventType
from live_client import ConnectionFailed, LiveClient
from persona import KNOWLEDGE_BASE_EXCERPT, SalesSettings, build_system_instruction, generate_hidden_state
from session_config import SessionConfig, SetupError
from session_events import EventType, SessionEvent
from session_scorer import AnalysisError, PerformanceMetrics, SessionScorer
from session_store import LocalSessionStore, PersistenceWriter
from transcript_buffer import TurnTracker

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    ANALYZING = "analyzing"
    SUMMARY = "summary"
    CLOSED = "closed"     # view exited without a summary
    ERROR = "error"


_TRANSITIONS = {
    SessionState.CONNECTING: {SessionState.ACTIVE, SessionState.ANALYZING,
                              SessionState.ERROR, SessionState.CLOSED},
    SessionState.ACTIVE: {SessionState.ANALYZING, SessionState.ERROR, SessionState.CLOSED},
    SessionState.ANALYZING: {SessionState.SUMMARY, SessionState.CLOSED},
    SessionState.ERROR: {SessionState.CONNECTING, SessionState.CLOSED},
    SessionState.SUMMARY: set(),
    SessionState.CLOSED: set(),
}

FINAL_STATES = frozenset({SessionState.SUMMARY, SessionState.CLOSED, SessionState.ERROR})


class VoiceSession:
    """Real-time voice roleplay/coaching session with post-session scoring.

    Collaborators are injectable so the state machine can run against a
    scripted transport, a ManualClock and an in-memory store.
    """

    def __init__(self, settings: SalesSettings, api_key=None, config: SessionConfig | None = None,
                 voice_preference="Female", session_id=None, documents=(),
                 store=None, scorer=None, rng=None, on_status=None, on_volume=None,
                 client_factory=None, clock=None, output=None, microphone=True,
                 event_bus=None):
        self.settings = settings
        self.api_key = api_key
        self.config = config or SessionConfig()
        self.voice = self.config.voice_for(voice_preference)
        self.session_id = session_id
        self.documents = list(documents)
        self.on_status = on_status or (lambda s: None)
        self.on_volume = on_volume or (lambda v: None)
        self._rng = rng or random.Random()
        self._client_factory = client_factory or LiveClient
        self._use_microphone = microphone

        self.state = SessionState.CONNECTING
        self.error: str | None = None
        self.metrics: PerformanceMetrics | None = None
        self.hidden_state = None
        self.system_instruction = ""
        self.transcript_text = ""

        # Audio output: device clock unless a clock is injected
        if clock is None:
            output = output or PyAudioOutput(sample_rate=self.config.output_sample_rate)
            clock = output
        self._output = output
        self.playback = PlaybackPipeline(
            clock, output=output,
            response_delay=self.config.response_delay,
            on_speaking_change=self._on_speaking_change,
        )
        self.turns = TurnTracker()
        self.barge_in = BargeInController(
            is_speaking=lambda: self.playback.is_speaking,
            flush=lambda: self._interrupt_playback("barge_in"),
            threshold=self.config.barge_in_threshold,
        )
        self.capture = CapturePipeline(
            send=self._send_frame,
            on_volume=self._on_capture_volume,
            sample_rate=self.config.input_sample_rate,
            frame_size=self.config.frame_size,
        )

        self.scorer = scorer or SessionScorer(api_key, model=self.config.scoring_model,
                                              timeout=self.config.request_timeout)
        self.persistence = PersistenceWriter(store or LocalSessionStore())

        self._log_id = time.strftime("%Y%m%d_%H%M%S")
        self.bus = event_bus or EventBus(
            self.config.session_dir.expanduser() / self._log_id, "voice_session",
            session_id or self._log_id,
        )

        self.client = None
        self._dispatch_task: asyncio.Task | None = None
        self._finalize_task: asyncio.Task | None = None
        self._done: asyncio.Event | None = None
        self._audio_stopped = False

    # ── State ──────────────────────────────────────────────────────

    def _set_state(self, new_state: SessionState) -> bool:
        if new_state == self.state:
            return True
        if new_state not in _TRANSITIONS[self.state]:
            logger.warning("Voice session: ignoring transition %s -> %s",
                           self.state.value, new_state.value)
            return False
        logger.info("Voice session: %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.bus.emit(BusEventType.STATE, state=new_state.value)
        self.on_status(new_state.value)
        if new_state in FINAL_STATES and self._done is not None:
            self._done.set()
        return True

    def _fail(self, message: str):
        self.error = message
        self.bus.emit(BusEventType.ERROR, message=message)
        self._stop_audio()
        self._set_state(SessionState.ERROR)

    @property
    def is_ai_speaking(self) -> bool:
        return self.playback.is_speaking

    # ── Setup ──────────────────────────────────────────────────────

    async def start(self) -> bool:
        """Acquire the mic, connect, and start dispatching server events.

        Setup failures move the session to ERROR with a user-facing message
        and return False; nothing is retried.
        """
        self._done = asyncio.Event()
        if self.state == SessionState.ERROR:
            self._set_state(SessionState.CONNECTING)
        self._audio_stopped = False
        try:
            self.bus.open()
        except OSError as e:
            logger.warning("Voice session: event log unavailable: %s", e)
        self.bus.emit(BusEventType.SESSION_START, mode=self.settings.mode,
                      persona=self.settings.persona, voice=self.voice)
        self.on_status(self.state.value)

        if not self.api_key:
            self._fail("GEMINI_API_KEY is missing from environment variables.")
            return False

        if not self.settings.is_coaching:
            self.hidden_state = generate_hidden_state(self._rng)
        history = await self.persistence.recent_messages(self.session_id, self.config.history_limit)
        self.system_instruction = build_system_instruction(
            self.settings, self.documents, self.hidden_state, history,
        )

        try:
            if self._use_microphone:
                self.capture.open(asyncio.get_running_loop())
            if self._output is not None and hasattr(self._output, "open"):
                self._output.open()
            self.client = self._client_factory(
                self.api_key, self.config.live_model, self.system_instruction, self.voice,
            )
            await self.client.connect()
        except MicrophoneUnavailable as e:
            logger.error("Voice session: %s", e)
            self._fail("Microphone access denied or connection failed.")
            return False
        except ConnectionFailed as e:
            self._fail(str(e) or "Connection Error")
            return False
        except SetupError as e:
            self._fail(str(e))
            return False
        except (OSError, ImportError) as e:  # output stream
            logger.error("Voice session: audio device error: %s", e)
            self._fail("Microphone access denied or connection failed.")
            return False

        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        return True

    async def run(self):
        """Start the session and wait until it reaches summary, closed or error."""
        if not await self.start():
            await self._teardown()
            return None
        await self.wait_done()
        await self._teardown()
        return self.metrics

    async def wait_done(self):
        if self._done is not None:
            await self._done.wait()
        if self._finalize_task is not None:
            # a cancelled finalizer (close() during analysis) is not an error here
            await asyncio.gather(self._finalize_task, return_exceptions=True)

    # ── Event dispatch ────────────────────────────────────────────

    async def _dispatch_loop(self):
        try:
            async for event in self.client.events():
                self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Voice session: dispatch error: %s", e)
            if self.state in (SessionState.CONNECTING, SessionState.ACTIVE):
                self._fail("Connection Error")

    def handle_event(self, event: SessionEvent):
        """Apply one transport event. Synchronous; never raises for audio problems."""
        if self.state not in (SessionState.CONNECTING, SessionState.ACTIVE):
            return  # transcript and audio are frozen once the session is ending

        if event.type == EventType.OPENED:
            logger.info("Voice session: live connection open")
            self._set_state(SessionState.ACTIVE)

        elif event.type == EventType.PARTIAL_TRANSCRIPT:
            self.turns.add_partial(event.speaker, event.text)

        elif event.type == EventType.AUDIO_FRAME:
            self._play(event)

        elif event.type == EventType.TURN_COMPLETE:
            for turn in self.turns.on_turn_complete():
                self.bus.emit(BusEventType.TURN, speaker=turn.speaker.value, text=turn.text)
            self.playback.mark_turn_complete()

        elif event.type == EventType.INTERRUPTED:
            self._interrupt_playback("server")

        elif event.type == EventType.ERROR:
            logger.error("Voice session: live connection error: %s", event.reason)
            self._fail("Connection Error")

        elif event.type == EventType.CLOSED:
            logger.info("Voice session: live connection closed %s", event.reason or "")
            if self.state == SessionState.CONNECTING:
                self._fail("Connection Error")

    def _play(self, event: SessionEvent):
        try:
            audio = decode(event.audio, context_rate=self.config.output_sample_rate,
                           declared_rate=event.sample_rate or self.config.output_sample_rate)
        except DecodeError as e:
            logger.warning("Voice session: dropping audio frame: %s", e)
            self.bus.emit(BusEventType.DECODE_ERROR, message=str(e), size=len(event.audio))
            return
        self.playback.schedule(audio)

    def _interrupt_playback(self, source: str) -> int:
        """Shared flush for server `interrupted` and local barge-in; idempotent."""
        stopped = self.playback.flush_all()
        self.turns.on_interrupted()
        self.bus.emit(BusEventType.BARGE_IN if source == "barge_in" else BusEventType.INTERRUPTED,
                      stopped=stopped)
        return stopped

    def _on_speaking_change(self, speaking: bool):
        logger.debug("Voice session: AI %s", "speaking" if speaking else "silent")

    # ── Capture hooks ─────────────────────────────────────────────

    def _on_capture_volume(self, volume: float):
        self.on_volume(volume)
        self.bus.emit_ephemeral(BusEventType.VOLUME, level=round(volume, 3))
        if self.state == SessionState.ACTIVE:
            self.barge_in.observe(volume)

    def _send_frame(self, frame):
        if self.state != SessionState.ACTIVE or self.client is None:
            return False
        return self.client.send(frame)

    def set_muted(self, muted: bool):
        self.capture.muted = muted
        logger.info("Voice session: %s", "muted" if muted else "unmuted")

    # ── Ending ────────────────────────────────────────────────────

    def _stop_audio(self):
        """Silence everything now, before any network close completes."""
        if self._audio_stopped:
            return
        self._audio_stopped = True
        self.capture.close()
        self.playback.flush_all()
        if self._output is not None and hasattr(self._output, "close"):
            try:
                self._output.close()
            except Exception as e:
                logger.debug("Voice session: output close error: %s", e)

    def end_session(self) -> asyncio.Task | None:
        """User pressed End Session: stop audio, go to analyzing, finalize in background."""
        if self.state not in (SessionState.CONNECTING, SessionState.ACTIVE):
            return self._finalize_task
        self._stop_audio()
        self.turns.flush()
        self._set_state(SessionState.ANALYZING)
        self._finalize_task = asyncio.create_task(self._finalize())
        return self._finalize_task

    def close(self):
        """Leave without analysis (the view was closed)."""
        self._stop_audio()
        if self._finalize_task is not None and not self._finalize_task.done():
            self._finalize_task.cancel()
        if self.state not in (SessionState.SUMMARY, SessionState.CLOSED):
            self._set_state(SessionState.CLOSED)
        self._finalize_task = asyncio.create_task(self._close_transport())

    async def _close_transport(self):
        if self._dispatch_task and not self._dispatch_task.done():
            self._dispatch_task.cancel()
        if self.client is not None:
            try:
                await self.client.close()
            except Exception as e:
                logger.debug("Voice session: transport close error: %s", e)

    async def _finalize(self):
        await self._close_transport()

        self.transcript_text = self.turns.transcript()
        logger.debug("Voice session: transcript for analysis:\n%s", self.transcript_text)
        if len(self.transcript_text) < self.config.min_transcript_chars:
            logger.info("Voice session: transcript too short for analysis (%d chars)",
                        len(self.transcript_text))
            self.bus.emit(BusEventType.ANALYSIS, skipped=True, chars=len(self.transcript_text))
            self._set_state(SessionState.CLOSED)
            return

        self.persistence.save_transcript(self.session_id, self.turns.log.to_messages())
        self.bus.emit(BusEventType.ANALYSIS, skipped=False, chars=len(self.transcript_text))

        try:
            metrics = await self.scorer.score(
                self.transcript_text, self.settings.analysis_mode, KNOWLEDGE_BASE_EXCERPT,
            )
        except AnalysisError as e:
            logger.error("Voice session: analysis failed: %s", e)
            self.bus.emit(BusEventType.ERROR, message=f"analysis failed: {e}")
            self._set_state(SessionState.CLOSED)
            return
        except Exception as e:
            logger.error("Voice session: analysis crashed: %s: %s", type(e).__name__, e)
            self.bus.emit(BusEventType.ERROR, message=f"analysis crashed: {type(e).__name__}: {e}")
            self._set_state(SessionState.CLOSED)
            return

        self.metrics = metrics
        self.persistence.save_metrics(self.session_id, metrics)
        self.bus.emit(BusEventType.METRICS, **metrics.to_dict())
        self._set_state(SessionState.SUMMARY)

    async def _teardown(self):
        self._stop_audio()
        await self._close_transport()
        await self.persistence.drain()
        self.bus.emit(BusEventType.SESSION_END, state=self.state.value,
                      turns=len(self.turns.log))
        self.bus.close()
