"""
Configuration loader for the Pitch Coach system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "openai"                           # openai | anthropic
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""


@dataclass
class RealtimeConfig:
    api_key: str = ""                                  # long-lived key, server side only
    api_base: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-realtime-preview-2024-12-17"
    voice: str = "verse"
    audio_format: str = "pcm16"
    transcription_model: str = "whisper-1"
    turn_detection: str = "manual"                     # manual | server_vad
    vad_threshold: float = 0.5
    vad_silence_ms: int = 1200
    vad_prefix_padding_ms: int = 300
    temperature: float = 0.8
    max_response_output_tokens: int = 4096
    session_url: str = "http://localhost:8000/api/realtime/session"   # credential intermediary
    ice_servers: list[str] = field(default_factory=lambda: ["stun:stun.l.google.com:19302"])
    microphone_device: str = "default"
    microphone_format: str = "pulse"                   # ffmpeg input format for the local mic
    playback_device: str = ""                          # empty = discard agent audio
    response_instructions: str = (
        "Responde al vendedor como cliente de Aviva, siguiendo tu personalidad y tono establecidos."
    )
    timeout_s: float = 20.0

    @property
    def realtime_url(self) -> str:
        return f"{self.api_base.rstrip('/')}/realtime"

    @property
    def is_manual_turns(self) -> bool:
        return self.turn_detection == "manual"


@dataclass
class PracticeConfig:
    pitch_duration: int = 120
    qna_duration: int = 60
    tick_interval_s: float = 1.0
    opening_line: str = "Hola, ¡gracias por tu tiempo! Cuéntame qué me ofreces."
    transition_line: str = "Interesante. Pero tengo algunas dudas..."
    history_window: int = 10                           # turns sent to the avatar prompt
    # Good turns the simulated customer needs before it may accept, per tier.
    closing_thresholds: dict[str, int] = field(default_factory=lambda: {
        "Fácil": 2,
        "Intermedio": 4,
        "Difícil": 6,
        "Avanzado": 8,
        "Súper Embajador": 12,
        "Leyenda": 15,
    })


@dataclass
class CompetitionConfig:
    groups: list[int] = field(default_factory=lambda: list(range(1, 9)))
    top_words: int = 5
    word_cloud_limit: int = 300


@dataclass
class Settings:
    app_name: str = "PitchCoach"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    practice: PracticeConfig = field(default_factory=PracticeConfig)
    competition: CompetitionConfig = field(default_factory=CompetitionConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _merge(section: Any, raw: dict[str, Any]) -> Any:
    """Overlay known keys from a YAML mapping onto a config dataclass."""
    for key, value in raw.items():
        if hasattr(section, key):
            setattr(section, key, value)
    return section


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "PITCHCOACH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "llm" in raw:
            _merge(settings.llm, raw["llm"])
        if "realtime" in raw:
            _merge(settings.realtime, raw["realtime"])
        if "practice" in raw:
            thresholds = raw["practice"].pop("closing_thresholds", None)
            _merge(settings.practice, raw["practice"])
            if thresholds:
                settings.practice.closing_thresholds.update(
                    {k: int(v) for k, v in thresholds.items()}
                )
        if "competition" in raw:
            _merge(settings.competition, raw["competition"])

    # The realtime key falls back to the LLM key when both use OpenAI
    if not settings.realtime.api_key and settings.llm.provider == "openai":
        settings.realtime.api_key = settings.llm.api_key

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
