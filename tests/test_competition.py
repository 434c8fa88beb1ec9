"""
Tests for the competition store and aggregator.

Coverage:
- Composite ids: one rating and one word per (user, group), overwrite on rewrite
- Voting switch and scheduled close
- Aggregation: averages, unique voters, word ranking, empty input, unknown groups
- Word-cloud frequency data
"""
import math
import pytest
from datetime import datetime, timedelta, timezone

from competition import (
    CompetitionStore,
    UnknownGroupError,
    VotingClosedError,
    aggregate,
    word_cloud_data,
)
from config.settings import CompetitionConfig
from models.schemas import StarRating, WordCloudEntry


@pytest.fixture
def store():
    return CompetitionStore(CompetitionConfig())


def _rating(user, group, stars):
    return StarRating(user_id=user, group_number=group, stars=stars)


def _word(user, group, word):
    return WordCloudEntry(user_id=user, group_number=group, word=word)


class TestStore:

    @pytest.mark.asyncio
    async def test_two_writes_one_record(self, store):
        await store.upsert_rating("u1", 3, 2)
        await store.upsert_rating("u1", 3, 5)

        ratings = await store.list_ratings()
        assert len(ratings) == 1
        assert ratings[0].id == "u1_3"
        assert ratings[0].stars == 5
        assert (await store.get_rating_for("u1", 3)).stars == 5

    @pytest.mark.asyncio
    async def test_separate_groups_separate_records(self, store):
        await store.upsert_rating("u1", 1, 4)
        await store.upsert_rating("u1", 2, 3)
        assert len(await store.list_ratings()) == 2
        assert len(await store.list_ratings(group_number=2)) == 1

    @pytest.mark.asyncio
    async def test_word_overwrite_and_trim(self, store):
        await store.submit_word("u1", 4, "  Claro ")
        await store.submit_word("u1", 4, "Convincente")
        words = await store.list_words()
        assert [w.word for w in words] == ["Convincente"]
        assert (await store.get_word_for("u1", 4)).id == "u1_4"

    @pytest.mark.asyncio
    async def test_unknown_group_rejected(self, store):
        with pytest.raises(UnknownGroupError):
            await store.upsert_rating("u1", 9, 3)

    @pytest.mark.asyncio
    async def test_closed_voting_rejects_writes(self, store):
        await store.set_voting_open(False)
        with pytest.raises(VotingClosedError):
            await store.upsert_rating("u1", 1, 3)
        with pytest.raises(VotingClosedError):
            await store.submit_word("u1", 1, "hola")

        config = await store.set_voting_open(True)
        assert config.is_open and config.close_time is None
        await store.upsert_rating("u1", 1, 3)

    @pytest.mark.asyncio
    async def test_scheduled_close(self, store):
        config = await store.schedule_close(minutes=10)
        assert config.accepts_votes()
        later = datetime.now(timezone.utc) + timedelta(minutes=11)
        assert not config.accepts_votes(now=later)

    @pytest.mark.asyncio
    async def test_close_time_in_past_rejects(self, store):
        await store.schedule_close(close_time=datetime.now(timezone.utc) - timedelta(seconds=1))
        with pytest.raises(VotingClosedError):
            await store.upsert_rating("u1", 1, 3)

    @pytest.mark.asyncio
    async def test_schedule_requires_time(self, store):
        with pytest.raises(ValueError):
            await store.schedule_close()


class TestAggregate:

    def test_empty_input_is_zero_not_nan(self):
        summary = aggregate([], [])
        assert summary.total_ratings == 0
        assert summary.average_stars == 0
        assert not math.isnan(summary.average_stars)
        assert len(summary.groups) == 8
        for group in summary.groups:
            assert group.average_stars == 0
            assert group.total_ratings == 0
            assert group.top_words == []

    def test_per_group_stats(self):
        ratings = [_rating("a", 1, 5), _rating("b", 1, 3), _rating("a", 2, 4)]
        words = [_word("c", 1, "Claro"), _word("a", 1, "claro "), _word("b", 1, "rápido")]
        summary = aggregate(ratings, words)

        group = summary.group(1)
        assert group.average_stars == 4.0
        assert group.total_ratings == 2
        assert group.total_words == 3
        assert group.unique_voters == 3
        assert [(w.word, w.count) for w in group.top_words] == [("claro", 2), ("rápido", 1)]

        assert summary.total_ratings == 3
        assert summary.average_stars == 4.0
        assert summary.unique_voters == 3

    def test_ties_sorted_alphabetically(self):
        words = [_word("u1", 1, "zeta"), _word("u2", 1, "alfa"), _word("u3", 1, "beta")]
        top = aggregate([], words).group(1).top_words
        assert [w.word for w in top] == ["alfa", "beta", "zeta"]

    def test_top_n_limit(self):
        words = [_word(f"u{i}", 1, f"palabra{i}") for i in range(8)]
        assert len(aggregate([], words, top_n=5).group(1).top_words) == 5

    def test_unknown_groups_skipped(self):
        ratings = [_rating("a", 1, 5), _rating("b", 12, 1)]
        summary = aggregate(ratings, [], groups=range(1, 9))
        assert summary.total_ratings == 1
        assert summary.group(12) is None

    def test_global_top_words(self):
        words = [_word("a", 1, "claro"), _word("b", 2, "Claro"), _word("c", 3, "seguro")]
        assert summary_words(aggregate([], words)) == [("claro", 2), ("seguro", 1)]


def summary_words(summary):
    return [(w.word, w.count) for w in summary.top_words]


class TestWordCloud:

    def test_frequencies(self):
        words = [_word("a", 1, "Claro"), _word("b", 1, "claro"), _word("c", 2, "Seguro")]
        assert word_cloud_data(words) == [{"text": "claro", "freq": 2}, {"text": "seguro", "freq": 1}]

    def test_filtered_by_group(self):
        words = [_word("a", 1, "claro"), _word("c", 2, "seguro")]
        assert word_cloud_data(words, group_number=2) == [{"text": "seguro", "freq": 1}]

    def test_empty(self):
        assert word_cloud_data([]) == []
