"""Tests for data models: aliases, validation ranges, composite ids, voting switch."""
import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError

from models.schemas import (
    CustomerProfile, DifficultyLevel, InteractionMode, PitchEvaluation,
    PracticeSettings, StarRating, VotingConfig, WordCloudEntry, composite_id,
)


class TestPracticeSettings:
    def test_accepts_aliases_and_names(self):
        by_alias = PracticeSettings.model_validate({
            "product": "Aviva Contigo", "mode": "Curioso",
            "difficultyLevel": "Leyenda", "pitchDuration": 30, "qnaDuration": 15,
        })
        by_name = PracticeSettings(
            product="Aviva Contigo", mode="Curioso",
            difficulty_level=DifficultyLevel.LEGEND, pitch_duration=30, qna_duration=15,
        )
        assert by_alias == by_name
        assert by_alias.interaction == InteractionMode.TEXT

    def test_dump_uses_aliases(self):
        settings = PracticeSettings(product="Aviva Tu Casa", mode="Desconfiado")
        dumped = settings.model_dump(mode="json", by_alias=True)
        assert dumped["difficultyLevel"] == "Intermedio"
        assert dumped["pitchDuration"] == 120

    @pytest.mark.parametrize("field", ["pitch_duration", "qna_duration"])
    def test_durations_positive(self, field):
        with pytest.raises(ValidationError):
            PracticeSettings(product="Aviva Contigo", mode="Curioso", **{field: 0})

    def test_unknown_product_rejected(self):
        with pytest.raises(ValidationError):
            PracticeSettings(product="Aviva Otro", mode="Curioso")


class TestDifficulty:
    def test_rank_order(self):
        assert DifficultyLevel.EASY.rank == 0
        assert DifficultyLevel.LEGEND.rank == 5
        assert DifficultyLevel.HARD.rank < DifficultyLevel.ADVANCED.rank


class TestProfile:
    def test_frozen(self, profile):
        with pytest.raises(ValidationError):
            profile.name = "Otra"

    def test_requires_objections(self, profile):
        data = profile.model_dump(by_alias=True)
        data["objections"] = []
        with pytest.raises(ValidationError):
            CustomerProfile.model_validate(data)


class TestEvaluation:
    def test_sub_scores(self, evaluation):
        scores = evaluation.sub_scores()
        assert len(scores) == 8
        assert "overall_score" not in scores
        assert scores["need_identification"] == 7

    @pytest.mark.parametrize("value", [0, 11])
    def test_score_range(self, evaluation, value):
        data = evaluation.model_dump(by_alias=True)
        data["clarity"] = value
        with pytest.raises(ValidationError):
            PitchEvaluation.model_validate(data)


class TestCompetitionRecords:
    def test_composite_id(self):
        assert composite_id("u1", 3) == "u1_3"
        assert StarRating(user_id="u1", group_number=3, stars=4).id == "u1_3"
        assert WordCloudEntry(user_id="u1", group_number=3, word="hola").id == "u1_3"

    @pytest.mark.parametrize("stars", [0, 6])
    def test_star_range(self, stars):
        with pytest.raises(ValidationError):
            StarRating(user_id="u1", group_number=1, stars=stars)

    def test_word_trimmed_and_bounded(self):
        assert WordCloudEntry(user_id="u1", group_number=1, word="  claro ").word == "claro"
        with pytest.raises(ValidationError):
            WordCloudEntry(user_id="u1", group_number=1, word="   ")
        with pytest.raises(ValidationError):
            WordCloudEntry(user_id="u1", group_number=1, word="x" * 31)


class TestVotingConfig:
    def test_default_open(self):
        assert VotingConfig().accepts_votes()

    def test_closed(self):
        assert not VotingConfig(is_open=False).accepts_votes()

    def test_close_time(self):
        now = datetime.now(timezone.utc)
        config = VotingConfig(is_open=True, close_time=now + timedelta(minutes=1))
        assert config.accepts_votes(now=now)
        assert not config.accepts_votes(now=now + timedelta(minutes=2))
