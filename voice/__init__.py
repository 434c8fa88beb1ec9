"""
Voice Subsystem — realtime speech-to-speech practice sessions.

Modules:
- transcript: turn accumulator shared by the voice and text paths
- credentials: short-lived realtime tokens and SDP offer/answer exchange
- webrtc: peer transport (microphone, agent audio, control channel)
- realtime: connection state machine and server event handling
- console: terminal practice client
"""
from voice.transcript import TranscriptReconciler, TextStreamAdapter, TurnSink
from voice.credentials import (
    CredentialClient, CredentialError, SdpNegotiator, mint_ephemeral_token,
)
from voice.webrtc import AiortcPeerTransport, PeerTransport, aiortc_transport_factory
from voice.realtime import (
    RealtimeVoiceSession, SessionStatus, VoiceSessionError, build_session_update,
)

__all__ = [
    "TranscriptReconciler", "TextStreamAdapter", "TurnSink",
    "CredentialClient", "CredentialError", "SdpNegotiator", "mint_ephemeral_token",
    "AiortcPeerTransport", "PeerTransport", "aiortc_transport_factory",
    "RealtimeVoiceSession", "SessionStatus", "VoiceSessionError", "build_session_update",
]
