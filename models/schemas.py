"""
Core data models for the Pitch Coach system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Product(str, Enum):
    CONTIGO = "Aviva Contigo"
    TU_NEGOCIO = "Aviva Tu Negocio"
    TU_CASA = "Aviva Tu Casa"
    TU_COMPRA = "Aviva Tu Compra"


class CustomerMode(str, Enum):
    CURIOUS = "Curioso"
    DISTRUSTFUL = "Desconfiado"
    RUSHED = "Apurado"


class DifficultyLevel(str, Enum):
    EASY = "Fácil"
    INTERMEDIATE = "Intermedio"
    HARD = "Difícil"
    ADVANCED = "Avanzado"
    SUPER_AMBASSADOR = "Súper Embajador"
    LEGEND = "Leyenda"

    @property
    def rank(self) -> int:
        """Position in the ordered tiers, 0 = easiest."""
        return list(DifficultyLevel).index(self)


class InteractionMode(str, Enum):
    TEXT = "text"
    VOICE = "voice"


class Sender(str, Enum):
    USER = "user"
    AVATAR = "avatar"


# ──────────────────────────────────────────────────────────────
#  Practice configuration — what the trainee picks before starting
# ──────────────────────────────────────────────────────────────

class PracticeSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product: Product
    mode: CustomerMode
    difficulty_level: DifficultyLevel = Field(DifficultyLevel.INTERMEDIATE, alias="difficultyLevel")
    pitch_duration: int = Field(120, gt=0, alias="pitchDuration")    # seconds
    qna_duration: int = Field(60, gt=0, alias="qnaDuration")         # seconds
    interaction: InteractionMode = InteractionMode.TEXT


# ──────────────────────────────────────────────────────────────
#  Conversation — one practice session's turns
# ──────────────────────────────────────────────────────────────

class ConversationMessage(BaseModel):
    """
    A single turn. Mutated in place while is_loading is True (streamed
    text accumulating); treated as immutable once completed.
    """
    id: int = 0
    sender: Sender
    text: str = ""
    is_loading: bool = False
    timestamp: datetime = Field(default_factory=_utcnow)


class VoiceAgentState(BaseModel):
    """Connection flags for the realtime voice agent, reset on disconnect."""
    is_connected: bool = False
    is_listening: bool = False
    is_speaking: bool = False
    error: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  External call results — created once, never mutated
# ──────────────────────────────────────────────────────────────

class CustomerProfile(BaseModel):
    """Simulated customer, generated once per session."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    age: int = Field(ge=18, le=99)
    occupation: str
    context: str
    objections: list[str] = Field(min_length=1)
    common_questions: list[str] = Field(default_factory=list, alias="commonQuestions")
    attitude_trait: str = Field(alias="attitudeTrait")
    difficulty_level: DifficultyLevel = Field(DifficultyLevel.INTERMEDIATE, alias="difficultyLevel")


class PitchEvaluation(BaseModel):
    """Rubric scores (1-10) plus written feedback."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    greeting: int = Field(ge=1, le=10)
    need_identification: int = Field(ge=1, le=10, alias="needIdentification")
    product_presentation: int = Field(ge=1, le=10, alias="productPresentation")
    benefits_communication: int = Field(ge=1, le=10, alias="benefitsCommunication")
    objection_handling: int = Field(ge=1, le=10, alias="objectionHandling")
    closing: int = Field(ge=1, le=10)
    empathy: int = Field(ge=1, le=10)
    clarity: int = Field(ge=1, le=10)
    overall_score: int = Field(ge=1, le=10, alias="overallScore")
    feedback: str = Field(min_length=1)

    SUB_SCORES: ClassVar[tuple[str, ...]] = (
        "greeting", "need_identification", "product_presentation",
        "benefits_communication", "objection_handling", "closing",
        "empathy", "clarity",
    )

    def sub_scores(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in self.SUB_SCORES}


# ──────────────────────────────────────────────────────────────
#  Competition — audience votes scoped to (user, group)
# ──────────────────────────────────────────────────────────────

def composite_id(user_id: str, group_number: int) -> str:
    """Deterministic record id: one record per (user, group)."""
    return f"{user_id}_{group_number}"


class StarRating(BaseModel):
    id: str = ""
    user_id: str = Field(min_length=1)
    group_number: int = Field(ge=1)
    stars: int = Field(ge=1, le=5)
    created_at: datetime = Field(default_factory=_utcnow)

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = composite_id(self.user_id, self.group_number)


class WordCloudEntry(BaseModel):
    id: str = ""
    user_id: str = Field(min_length=1)
    group_number: int = Field(ge=1)
    word: str = Field(min_length=1, max_length=30)
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("word", mode="before")
    @classmethod
    def _strip_word(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = composite_id(self.user_id, self.group_number)


class VotingConfig(BaseModel):
    """The single voting switch document."""
    is_open: bool = True
    open_time: Optional[datetime] = None
    close_time: Optional[datetime] = None     # scheduled close, if any

    def accepts_votes(self, now: Optional[datetime] = None) -> bool:
        if not self.is_open:
            return False
        if self.close_time is None:
            return True
        return (now or _utcnow()) < self.close_time


class WordCount(BaseModel):
    word: str
    count: int


class GroupStats(BaseModel):
    group_number: int
    average_stars: float = 0.0
    total_ratings: int = 0
    unique_voters: int = 0
    total_words: int = 0
    top_words: list[WordCount] = []


class CompetitionSummary(BaseModel):
    groups: list[GroupStats] = []
    total_ratings: int = 0
    average_stars: float = 0.0
    total_words: int = 0
    unique_voters: int = 0
    top_words: list[WordCount] = []

    def group(self, group_number: int) -> Optional[GroupStats]:
        return next((g for g in self.groups if g.group_number == group_number), None)


# ──────────────────────────────────────────────────────────────
#  Events — notices pushed to whoever is displaying the session
# ──────────────────────────────────────────────────────────────

class Notice(BaseModel):
    """A dismissable user-facing message (toast)."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    title: str
    description: str = ""
    level: str = "info"                       # info | error
    timestamp: datetime = Field(default_factory=_utcnow)
