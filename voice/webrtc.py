"""
Peer transport — the WebRTC leg of a realtime voice session.

Owns the three native handles a session needs:
- the peer connection (one outbound microphone track, one inbound agent track)
- the control channel for JSON events
- the playback sink the inbound track is routed to

The session state machine only sees the PeerTransport protocol, so tests can
swap in an in-memory fake. AiortcPeerTransport is the real implementation;
aiortc is imported on first use.
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Optional, Protocol

from config.settings import RealtimeConfig

logger = structlog.get_logger()


class PeerTransport(Protocol):
    """What the voice session needs from a media transport."""

    @property
    def channel_open(self) -> bool: ...

    async def open_media(self) -> None:
        """Acquire the microphone, add it as the outbound track, prepare playback."""

    def open_channel(
        self,
        label: str,
        on_open: Callable[[], None],
        on_message: Callable[[str], None],
        on_close: Callable[[], None],
    ) -> None: ...

    async def create_offer(self) -> str: ...

    async def apply_answer(self, sdp: str) -> None: ...

    def send(self, payload: str) -> None: ...

    async def close(self) -> None:
        """Release everything. Safe to call more than once; never raises."""


class AiortcPeerTransport:
    """PeerTransport backed by aiortc and ffmpeg devices (via PyAV)."""

    def __init__(self, config: RealtimeConfig):
        self.config = config
        self._pc: Any = None
        self._channel: Any = None
        self._player: Any = None
        self._sink: Any = None
        self._closed = False

    @property
    def channel_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    async def open_media(self) -> None:
        from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
        from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

        ice = [RTCIceServer(urls=url) for url in self.config.ice_servers]
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice))

        if self.config.playback_device:
            self._sink = MediaRecorder(self.config.playback_device, format=self.config.microphone_format)
        else:
            self._sink = MediaBlackhole()

        @self._pc.on("track")
        def on_track(track):
            if track.kind == "audio":
                logger.info("agent_audio_track_received")
                self._sink.addTrack(track)

        @self._pc.on("connectionstatechange")
        async def on_connection_state():
            logger.info("peer_connection_state", state=self._pc.connectionState)

        self._player = MediaPlayer(self.config.microphone_device, format=self.config.microphone_format)
        if self._player.audio is None:
            raise RuntimeError(f"No audio on microphone device {self.config.microphone_device!r}")
        self._pc.addTrack(self._player.audio)
        logger.info("microphone_acquired", device=self.config.microphone_device)

    def open_channel(
        self,
        label: str,
        on_open: Callable[[], None],
        on_message: Callable[[str], None],
        on_close: Callable[[], None],
    ) -> None:
        self._channel = self._pc.createDataChannel(label)
        self._channel.on("open", on_open)
        self._channel.on("close", on_close)

        @self._channel.on("message")
        def on_channel_message(message):
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            on_message(message)

    async def create_offer(self) -> str:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._pc.localDescription.sdp

    async def apply_answer(self, sdp: str) -> None:
        from aiortc import RTCSessionDescription

        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        await self._sink.start()

    def send(self, payload: str) -> None:
        if not self.channel_open:
            raise RuntimeError("Control channel is not open")
        self._channel.send(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        # Microphone first
        if self._pc is not None:
            for sender in self._pc.getSenders():
                if sender.track is not None:
                    sender.track.stop()
        if self._player is not None and self._player.audio is not None:
            self._player.audio.stop()

        if self._channel is not None:
            try:
                self._channel.close()
            except Exception as e:
                logger.warning("control_channel_close_failed", error=str(e))
        if self._pc is not None:
            try:
                await self._pc.close()
            except Exception as e:
                logger.warning("peer_connection_close_failed", error=str(e))
        if self._sink is not None:
            try:
                await self._sink.stop()
            except Exception as e:
                logger.warning("playback_sink_close_failed", error=str(e))

        self._channel = None
        self._pc = None
        self._player = None
        self._sink = None
        logger.info("peer_transport_closed")


def aiortc_transport_factory(config: RealtimeConfig) -> PeerTransport:
    return AiortcPeerTransport(config)
