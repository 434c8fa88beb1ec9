"""
Realtime Voice Session — connection lifecycle for the speech-to-speech agent.

    idle ──connect()──▶ connecting ──answer applied──▶ connected
      ▲                     │                              │
      └──── disconnect() ◀──┴──────── failure ─────────────┘
                               (→ disconnected)

While connected, is_listening / is_speaking are flags driven by server
events (or by the push-to-talk calls in manual turn mode).

One connect attempt at a time, no retry. Every failure tears down whatever
was acquired so far and surfaces as VoiceSessionError(stage=...). A
disconnect() that lands while connect() is suspended abandons the attempt;
the attempt counter is how the suspended connect() finds out.

Server events are a closed set:
    session.updated                                       → connected
    input_audio_buffer.speech_started / speech_stopped    → listening on/off
    conversation.item.input_audio_transcription.completed → user turn
    response.created                                      → speaking, avatar turn opens
    response.audio_transcript.delta                       → avatar fragment
    response.done                                         → avatar turn completes
    error                                                 → error callback, connection kept
"""
from __future__ import annotations

import asyncio
import json
import structlog
from enum import Enum
from typing import Any, Callable, Optional

from config.settings import RealtimeConfig, get_settings
from models.schemas import Sender, VoiceAgentState
from voice.credentials import CredentialClient, SdpNegotiator
from voice.transcript import TurnSink
from voice.webrtc import PeerTransport, aiortc_transport_factory

logger = structlog.get_logger()

CONTROL_CHANNEL_LABEL = "oai-events"


class SessionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class VoiceSessionError(Exception):
    """A connect attempt failed. Terminal for that attempt."""

    def __init__(self, message: str, stage: str, retryable: bool = False):
        self.stage = stage                # credential | microphone | channel | negotiation
        self.retryable = retryable
        super().__init__(message)


class _AttemptAbandoned(Exception):
    pass


def build_session_update(config: RealtimeConfig, instructions: str) -> dict[str, Any]:
    """The session.update event sent once the control channel opens."""
    if config.is_manual_turns:
        turn_detection = None
    else:
        turn_detection = {
            "type": "server_vad",
            "threshold": config.vad_threshold,
            "prefix_padding_ms": config.vad_prefix_padding_ms,
            "silence_duration_ms": config.vad_silence_ms,
            "create_response": True,
        }
    return {
        "type": "session.update",
        "session": {
            "modalities": ["text", "audio"],
            "instructions": instructions,
            "voice": config.voice,
            "input_audio_format": config.audio_format,
            "output_audio_format": config.audio_format,
            "input_audio_transcription": {"model": config.transcription_model},
            "turn_detection": turn_detection,
            "temperature": config.temperature,
            "max_response_output_tokens": config.max_response_output_tokens,
        },
    }


class RealtimeVoiceSession:
    """
    One realtime voice connection, feeding a TurnSink.

    Callbacks:
        on_state_change(VoiceAgentState) after every flag change
        on_error(str) for server error events and failed connects
    """

    def __init__(
        self,
        sink: TurnSink,
        config: Optional[RealtimeConfig] = None,
        transport_factory: Callable[[RealtimeConfig], PeerTransport] = aiortc_transport_factory,
        credentials: Optional[CredentialClient] = None,
        negotiator: Optional[SdpNegotiator] = None,
        on_state_change: Optional[Callable[[VoiceAgentState], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or get_settings().realtime
        self._sink = sink
        self._transport_factory = transport_factory
        self._credentials = credentials or CredentialClient(
            self.config.session_url, timeout=self.config.timeout_s,
        )
        self._negotiator = negotiator or SdpNegotiator(self.config)
        self._on_state_change = on_state_change
        self._on_error = on_error

        self.status = SessionStatus.IDLE
        self.state = VoiceAgentState()
        self._transport: Optional[PeerTransport] = None
        self._instructions = ""
        self._attempt = 0
        self._disconnecting = False
        self._closing: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def channel_open(self) -> bool:
        return self._transport is not None and self._transport.channel_open

    async def connect(self, instructions: str) -> bool:
        """
        Open the session. Returns False when ignored (already connecting or
        connected) or abandoned by a concurrent disconnect().
        """
        if self.status not in (SessionStatus.IDLE, SessionStatus.DISCONNECTED):
            logger.info("voice_connect_ignored", status=self.status.value)
            return False

        self._attempt += 1
        attempt = self._attempt
        self._instructions = instructions
        self.status = SessionStatus.CONNECTING
        self._update_state(VoiceAgentState())
        logger.info("voice_connecting", attempt=attempt, model=self.config.model)

        stage = "credential"
        transport: Optional[PeerTransport] = None
        try:
            token = await self._credentials.fetch_token(instructions)
            self._ensure_current(attempt)

            stage = "microphone"
            transport = self._transport_factory(self.config)
            self._transport = transport
            await transport.open_media()
            self._ensure_current(attempt)

            stage = "channel"
            transport.open_channel(
                CONTROL_CHANNEL_LABEL,
                on_open=self._on_channel_open,
                on_message=self.handle_event,
                on_close=lambda: self._on_channel_close(transport),
            )

            stage = "negotiation"
            offer = await transport.create_offer()
            self._ensure_current(attempt)
            answer = await self._negotiator.exchange(offer, token)
            self._ensure_current(attempt)
            await transport.apply_answer(answer)
            self._ensure_current(attempt)
        except _AttemptAbandoned:
            logger.info("voice_connect_abandoned", attempt=attempt, stage=stage)
            if transport is not None:
                await transport.close()
            return False
        except Exception as e:
            logger.error("voice_connect_failed", attempt=attempt, stage=stage, error=str(e))
            await self._teardown()
            self.status = SessionStatus.DISCONNECTED
            message = f"{stage}: {e}"
            self._update_state(VoiceAgentState(error=message))
            if self._on_error:
                self._on_error(message)
            raise VoiceSessionError(str(e), stage=stage) from e

        self.status = SessionStatus.CONNECTED
        logger.info("voice_connected", attempt=attempt)
        return True

    async def disconnect(self) -> None:
        """Release the session. Idempotent; never raises."""
        if self._disconnecting:
            return
        if self.status == SessionStatus.IDLE and self._transport is None:
            return

        self._disconnecting = True
        try:
            self._attempt += 1
            await self._teardown()
            self.status = SessionStatus.DISCONNECTED
            self._update_state(VoiceAgentState())
            logger.info("voice_disconnected")
        finally:
            self._disconnecting = False

    # ── Push-to-talk ──────────────────────────────────────────

    def start_listening(self) -> bool:
        if not self.channel_open:
            logger.debug("start_listening_ignored", status=self.status.value)
            return False
        self.state.is_listening = True
        self._notify_state()
        return True

    def stop_listening(self) -> bool:
        """
        Manual turns: commit the captured audio and ask for a response.
        With server VAD the server decides turns, so this only drops the flag.
        """
        if not self.channel_open:
            logger.debug("stop_listening_ignored", status=self.status.value)
            return False
        if self.config.is_manual_turns:
            self._send({"type": "input_audio_buffer.commit"})
            self._send({
                "type": "response.create",
                "response": {
                    "modalities": ["text", "audio"],
                    "instructions": self.config.response_instructions,
                },
            })
        self.state.is_listening = False
        self._notify_state()
        return True

    # ── Server events ─────────────────────────────────────────

    def handle_event(self, raw: str) -> None:
        try:
            event = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("realtime_event_malformed", error=str(e))
            return
        if not isinstance(event, dict):
            logger.warning("realtime_event_malformed", error="not an object")
            return

        event_type = event.get("type", "")

        if event_type == "session.updated":
            self.state.is_connected = True
            self._notify_state()

        elif event_type == "input_audio_buffer.speech_started":
            self.state.is_listening = True
            self._notify_state()

        elif event_type == "input_audio_buffer.speech_stopped":
            self.state.is_listening = False
            self._notify_state()

        elif event_type == "conversation.item.input_audio_transcription.completed":
            transcript = event.get("transcript") or ""
            if transcript.strip():
                self._sink.on_fragment(Sender.USER, transcript)

        elif event_type == "response.created":
            self.state.is_speaking = True
            self._notify_state()
            self._sink.begin_turn(Sender.AVATAR)

        elif event_type == "response.audio_transcript.delta":
            self._sink.on_fragment(Sender.AVATAR, event.get("delta") or "")

        elif event_type == "response.done":
            self.state.is_speaking = False
            self._notify_state()
            self._sink.on_turn_complete(Sender.AVATAR)

        elif event_type == "error":
            error = event.get("error") or {}
            message = error.get("message", "Unknown realtime error") if isinstance(error, dict) else str(error)
            logger.error("realtime_server_error", error=message)
            self.state.error = message
            self._notify_state()
            if self._on_error:
                self._on_error(message)

        else:
            logger.debug("realtime_event_ignored", type=event_type)

    # ── Internals ─────────────────────────────────────────────

    def _ensure_current(self, attempt: int) -> None:
        if attempt != self._attempt:
            raise _AttemptAbandoned()

    def _on_channel_open(self) -> None:
        logger.info("control_channel_open")
        self._send(build_session_update(self.config, self._instructions))

    def _on_channel_close(self, transport: Optional[PeerTransport] = None) -> None:
        logger.info("control_channel_closed", status=self.status.value)
        if transport is not None and transport is not self._transport:
            return                          # a transport we already let go of
        if self._disconnecting or self.status != SessionStatus.CONNECTED:
            if self.state.is_connected:
                self.state.is_connected = False
                self._notify_state()
            return

        # Remote close: release everything so a later connect() can run
        logger.warning("control_channel_lost")
        self._attempt += 1
        self.status = SessionStatus.DISCONNECTED
        message = "channel: control channel closed by the remote side"
        self._update_state(VoiceAgentState(error=message))
        transport, self._transport = self._transport, None
        if transport is not None:
            self._closing = asyncio.get_running_loop().create_task(self._close_transport(transport))
        if self._on_error:
            self._on_error(message)

    def _send(self, payload: dict[str, Any]) -> bool:
        if not self.channel_open:
            logger.warning("realtime_send_dropped", type=payload.get("type"))
            return False
        self._transport.send(json.dumps(payload))
        return True

    async def _teardown(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_transport(transport)
        closing, self._closing = self._closing, None
        if closing is not None:
            await closing

    @staticmethod
    async def _close_transport(transport: PeerTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.warning("voice_teardown_failed", error=str(e))

    def _update_state(self, state: VoiceAgentState) -> None:
        self.state = state
        self._notify_state()

    def _notify_state(self) -> None:
        if self._on_state_change:
            self._on_state_change(self.state.model_copy())
