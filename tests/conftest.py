"""Shared test fixtures for PitchCoach."""
import asyncio
import pytest
from typing import Any, AsyncIterator, Optional

from config.settings import Settings
from models.schemas import (
    CustomerMode, CustomerProfile, DifficultyLevel, InteractionMode,
    PitchEvaluation, PracticeSettings, Product,
)


# ══════════════════════════════════════════════════════════════
#  Settings & domain objects
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def app_settings() -> Settings:
    """Settings with a fast tick and no real keys."""
    settings = Settings()
    settings.llm.api_key = "sk-test"
    settings.realtime.api_key = "sk-test"
    settings.practice.tick_interval_s = 0.01
    return settings


@pytest.fixture
def scenario_settings() -> PracticeSettings:
    return PracticeSettings(
        product=Product.TU_NEGOCIO,
        mode=CustomerMode.RUSHED,
        difficulty_level=DifficultyLevel.HARD,
        pitch_duration=90,
        qna_duration=45,
    )


@pytest.fixture
def voice_settings(scenario_settings) -> PracticeSettings:
    return scenario_settings.model_copy(update={"interaction": InteractionMode.VOICE})


@pytest.fixture
def profile() -> CustomerProfile:
    return CustomerProfile(
        name="Sandra López",
        age=38,
        occupation="Dueña de una estética",
        context="Tiene un local pequeño en Iztapalapa y quiere comprar otra silla.",
        objections=[
            "Las tasas son muy altas",
            "No tengo tiempo para trámites",
            "Ya me rechazaron en un banco",
            "No confío en las financieras",
            "Prefiero pedirle a mi familia",
        ],
        common_questions=["¿Cuánto pagaría cada semana?", "¿Qué papeles necesito?"],
        attitude_trait="Apurada y directa",
        difficulty_level=DifficultyLevel.HARD,
    )


@pytest.fixture
def evaluation() -> PitchEvaluation:
    return PitchEvaluation(
        greeting=8, need_identification=7, product_presentation=6,
        benefits_communication=7, objection_handling=5, closing=6,
        empathy=8, clarity=7, overall_score=7,
        feedback="Buen saludo; trabaja el cierre.",
    )


# ══════════════════════════════════════════════════════════════
#  Fakes
# ══════════════════════════════════════════════════════════════

class FakeEngine:
    """Stands in for PitchCoachEngine; records calls, never hits the network."""

    def __init__(self, profile: CustomerProfile, evaluation: PitchEvaluation):
        self.profile = profile
        self.evaluation = evaluation
        self.profile_error: Optional[Exception] = None
        self.evaluation_error: Optional[Exception] = None
        self.stream_error: Optional[Exception] = None
        self.chunks = ["Mmm, ", "¿y cuánto ", "pagaría?"]
        self.profile_gate: Optional[asyncio.Event] = None
        self.stream_gate: Optional[asyncio.Event] = None
        self.profile_calls = 0
        self.evaluation_calls: list[list[dict]] = []
        self.stream_calls: list[dict[str, Any]] = []

    async def generate_customer_profile(self, settings):
        self.profile_calls += 1
        if self.profile_gate is not None:
            await self.profile_gate.wait()
        if self.profile_error:
            raise self.profile_error
        return self.profile.model_copy(update={"difficulty_level": settings.difficulty_level})

    async def stream_avatar_response(self, settings, profile, history, turn_number) -> AsyncIterator[str]:
        self.stream_calls.append({"history": list(history), "turn_number": turn_number})
        for chunk in self.chunks:
            if self.stream_gate is not None:
                await self.stream_gate.wait()
            yield chunk
        if self.stream_error:
            raise self.stream_error

    async def evaluate_pitch(self, product, profile, conversation):
        self.evaluation_calls.append(list(conversation))
        if self.evaluation_error:
            raise self.evaluation_error
        return self.evaluation


@pytest.fixture
def fake_engine(profile, evaluation) -> FakeEngine:
    return FakeEngine(profile, evaluation)


class FakeTransport:
    """In-memory PeerTransport. Tests fire channel events by hand."""

    def __init__(self, config=None):
        self.config = config
        self.sent: list[str] = []
        self.closed = 0
        self.media_opened = False
        self.channel_label = ""
        self.offer_created = False
        self.answer = ""
        self.fail_at: Optional[str] = None          # media | offer | answer
        self.media_gate: Optional[asyncio.Event] = None
        self.events: list[str] = []
        self._open = False
        self._on_open = self._on_message = self._on_close = None

    @property
    def channel_open(self) -> bool:
        return self._open

    async def open_media(self) -> None:
        self.events.append("media")
        if self.media_gate is not None:
            await self.media_gate.wait()
        if self.fail_at == "media":
            raise RuntimeError("Permission denied: microphone")
        self.media_opened = True

    def open_channel(self, label, on_open, on_message, on_close) -> None:
        self.events.append("channel")
        self.channel_label = label
        self._on_open, self._on_message, self._on_close = on_open, on_message, on_close

    async def create_offer(self) -> str:
        self.events.append("offer")
        if self.fail_at == "offer":
            raise RuntimeError("offer failed")
        self.offer_created = True
        return "v=0 offer"

    async def apply_answer(self, sdp: str) -> None:
        self.events.append("answer")
        if self.fail_at == "answer":
            raise RuntimeError("bad answer")
        self.answer = sdp

    def send(self, payload: str) -> None:
        self.sent.append(payload)

    async def close(self) -> None:
        self.events.append("close")
        self.closed += 1
        self._open = False

    # test helpers
    def fire_open(self) -> None:
        self._open = True
        self._on_open()

    def fire_message(self, raw: str) -> None:
        self._on_message(raw)

    def fire_close(self) -> None:
        self._open = False
        self._on_close()


class FakeCredentials:
    def __init__(self, token: str = "ek_test", error: Optional[Exception] = None):
        self.token = token
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[str] = []

    async def fetch_token(self, instructions: str) -> str:
        self.calls.append(instructions)
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        return self.token


class FakeNegotiator:
    def __init__(self, answer: str = "v=0 answer", error: Optional[Exception] = None):
        self.answer = answer
        self.error = error
        self.offers: list[tuple[str, str]] = []

    async def exchange(self, offer_sdp: str, token: str) -> str:
        self.offers.append((offer_sdp, token))
        if self.error:
            raise self.error
        return self.answer


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def fake_negotiator() -> FakeNegotiator:
    return FakeNegotiator()
