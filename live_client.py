#!/usr/bin/env python3
"""
Gemini Live (BidiGenerateContent) client for real-time voice roleplay.

One persistent WebSocket per voice session. Outbound mic audio is queued
and sent fire-and-forget; inbound server messages are parsed into a typed
stream of SessionEvents (transcription deltas, audio, turn complete,
interrupted, opened/closed/error) consumed by the session controller.
"""

import asyncio
import json
import logging

import websockets
import websockets.exceptions

from audio_codec import DecodeError, EncodedAudioFrame, OUTPUT_SAMPLE_RATE, decode_base64, parse_rate
from session_config import SetupError
from session_events import SessionEvent, Speaker

logger = logging.getLogger(__name__)

LIVE_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)

# Outbound queue depth: ~13s of 256ms frames; beyond that frames are dropped
SEND_QUEUE_SIZE = 50


class ConnectionFailed(SetupError):
    """The live endpoint could not be reached or refused the session."""


def build_setup_message(model: str, system_instruction: str, voice: str) -> dict:
    """First client message: model, persona, voice and transcription flags."""
    if not model.startswith("models/"):
        model = f"models/{model}"
    return {
        "setup": {
            "model": model,
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}}
                },
            },
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
    }


def build_audio_message(frame: EncodedAudioFrame) -> dict:
    return {"realtimeInput": {"audio": {"mimeType": frame.mime_type, "data": frame.data}}}


def parse_server_message(data: dict) -> list[SessionEvent]:
    """Translate one decoded server message into zero or more SessionEvents.

    Order within a message: opened, input transcription, output
    transcription, audio parts, interrupted, turn complete. Audio parts
    with malformed base64 are logged and dropped.
    """
    events: list[SessionEvent] = []

    if "setupComplete" in data:
        events.append(SessionEvent.opened())

    content = data.get("serverContent")
    if content:
        user_text = (content.get("inputTranscription") or {}).get("text")
        if user_text:
            events.append(SessionEvent.partial(Speaker.USER, user_text))
        agent_text = (content.get("outputTranscription") or {}).get("text")
        if agent_text:
            events.append(SessionEvent.partial(Speaker.AGENT, agent_text))

        for part in (content.get("modelTurn") or {}).get("parts") or []:
            inline = part.get("inlineData")
            if not inline or not inline.get("data"):
                continue
            try:
                audio = decode_base64(inline["data"])
            except DecodeError as e:
                logger.warning("Dropping malformed audio part: %s", e)
                continue
            rate = parse_rate(inline.get("mimeType", ""), OUTPUT_SAMPLE_RATE)
            events.append(SessionEvent.audio_frame(audio, rate))

        if content.get("interrupted"):
            events.append(SessionEvent.interrupted())
        if content.get("turnComplete"):
            events.append(SessionEvent.turn_complete())

    if "goAway" in data:
        logger.info("Live API: server going away (time left: %s)",
                    (data.get("goAway") or {}).get("timeLeft"))

    return events


class LiveClient:
    """Manages one bidirectional audio session with Gemini Live.

    Args:
        api_key: Gemini API key (sent as the `key` query parameter)
        model: live model name
        system_instruction: persona + knowledge base + hidden state + documents
        voice: prebuilt voice name
        url: endpoint override
        connector: coroutine factory compatible with websockets.connect (tests inject a fake)
    """

    def __init__(self, api_key, model, system_instruction, voice,
                 url=LIVE_URL, connector=None):
        self.api_key = api_key
        self.model = model
        self.system_instruction = system_instruction
        self.voice = voice
        self.url = url
        self._connector = connector or websockets.connect

        self.ws = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._outbound: asyncio.Queue = asyncio.Queue(maxsize=SEND_QUEUE_SIZE)
        self._reader_task = None
        self._sender_task = None
        self._terminal_sent = False
        self._closing = False
        self.frames_sent = 0
        self.frames_dropped = 0

    async def connect(self):
        """Open the WebSocket and send the setup message.

        Raises ConnectionFailed; the `opened` event arrives once the server
        acknowledges setup.
        """
        if not self.api_key:
            raise ConnectionFailed("GEMINI_API_KEY is missing from environment variables.")
        try:
            self.ws = await self._connector(
                f"{self.url}?key={self.api_key}",
                ping_interval=20,
                max_size=None,
            )
            await self.ws.send(json.dumps(
                build_setup_message(self.model, self.system_instruction, self.voice)
            ))
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.error("Live API: connect failed: %s", e)
            raise ConnectionFailed(f"Connection failed: {e}") from e

        logger.info("Live API: connected (model=%s, voice=%s)", self.model, self.voice)
        self._reader_task = asyncio.create_task(self._read_loop())
        self._sender_task = asyncio.create_task(self._send_loop())

    # ── Outbound ───────────────────────────────────────────────────

    def send(self, frame: EncodedAudioFrame) -> bool:
        """Queue one capture frame; never blocks, never raises. False if dropped."""
        if self.ws is None or self._closing:
            return False
        try:
            self._outbound.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            self.frames_dropped += 1
            return False

    async def _send_loop(self):
        while True:
            frame = await self._outbound.get()
            try:
                await self.ws.send(json.dumps(build_audio_message(frame)))
                self.frames_sent += 1
                if self.frames_sent % 200 == 0:
                    logger.debug("Live API: sent %d audio frames", self.frames_sent)
            except websockets.exceptions.ConnectionClosed:
                self.frames_dropped += 1
                return
            except Exception as e:
                # Dropped; capture keeps going
                self.frames_dropped += 1
                logger.debug("Live API: send failed, frame dropped: %s", e)

    # ── Inbound ────────────────────────────────────────────────────

    async def _read_loop(self):
        try:
            async for message in self.ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Live API: unparseable message dropped")
                    continue
                if "error" in data:
                    self._emit_terminal(SessionEvent.error(str(data["error"])))
                    return
                for event in parse_server_message(data):
                    self._events.put_nowait(event)
        except websockets.exceptions.ConnectionClosedOK:
            pass
        except websockets.exceptions.ConnectionClosedError as e:
            if not self._closing:
                logger.error("Live API: connection lost: %s", e)
                self._emit_terminal(SessionEvent.error(f"Connection Error: {e}"))
        except Exception as e:
            if not self._closing:
                logger.error("Live API: receive error: %s", e)
                self._emit_terminal(SessionEvent.error(f"Connection Error: {e}"))
        finally:
            self._emit_terminal(SessionEvent.closed())

    def _emit_terminal(self, event: SessionEvent):
        if self._terminal_sent:
            return
        self._terminal_sent = True
        self._events.put_nowait(event)

    async def events(self):
        """Async iterator over SessionEvents; ends after the first terminal event."""
        while True:
            event = await self._events.get()
            yield event
            if event.is_terminal:
                return

    # ── Teardown ───────────────────────────────────────────────────

    async def close(self):
        """Close the stream; safe to call more than once."""
        self._closing = True
        for task in (self._sender_task, self._reader_task):
            if task and not task.done():
                task.cancel()
        if self.ws is not None:
            try:
                await self.ws.close()
            except Exception as e:
                logger.debug("Live API: close error: %s", e)
            self.ws = None
        self._emit_terminal(SessionEvent.closed("closed by client"))
        logger.info("Live API: disconnected (sent %d frames, dropped %d)",
                    self.frames_sent, self.frames_dropped)
