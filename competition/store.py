"""
CompetitionStore — in-memory home of audience votes.

Two collections keyed by the composite id "{user_id}_{group_number}", so a
voter holds at most one star rating and one word per group; a second write
overwrites the first. A single VotingConfig document gates all writes.

All data is lost on process restart.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from config.settings import CompetitionConfig, get_settings
from models.schemas import StarRating, VotingConfig, WordCloudEntry, composite_id

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VotingClosedError(Exception):
    """A vote arrived while voting is closed."""

    def __init__(self, close_time: Optional[datetime] = None):
        self.close_time = close_time
        super().__init__("Voting is closed")


class UnknownGroupError(ValueError):
    def __init__(self, group_number: int):
        self.group_number = group_number
        super().__init__(f"Unknown group {group_number}")


class CompetitionStore:

    def __init__(self, config: Optional[CompetitionConfig] = None):
        self.config = config or get_settings().competition
        self._ratings: dict[str, StarRating] = {}        # composite id → rating
        self._words: dict[str, WordCloudEntry] = {}      # composite id → word
        self._voting = VotingConfig()
        logger.info("competition_store_initialized", groups=len(self.config.groups))

    # ── Votes ─────────────────────────────────────────────

    async def upsert_rating(self, user_id: str, group_number: int, stars: int) -> StarRating:
        self._check_writable(group_number)
        rating = StarRating(user_id=user_id, group_number=group_number, stars=stars)
        replaced = rating.id in self._ratings
        self._ratings[rating.id] = rating
        logger.info("rating_saved", id=rating.id, stars=stars, replaced=replaced)
        return rating

    async def submit_word(self, user_id: str, group_number: int, word: str) -> WordCloudEntry:
        self._check_writable(group_number)
        entry = WordCloudEntry(user_id=user_id, group_number=group_number, word=word)
        replaced = entry.id in self._words
        self._words[entry.id] = entry
        logger.info("word_saved", id=entry.id, replaced=replaced)
        return entry

    async def list_ratings(self, group_number: Optional[int] = None) -> list[StarRating]:
        ratings = list(self._ratings.values())
        if group_number is not None:
            ratings = [r for r in ratings if r.group_number == group_number]
        return ratings

    async def list_words(self, group_number: Optional[int] = None) -> list[WordCloudEntry]:
        words = list(self._words.values())
        if group_number is not None:
            words = [w for w in words if w.group_number == group_number]
        return words

    async def get_rating_for(self, user_id: str, group_number: int) -> Optional[StarRating]:
        return self._ratings.get(composite_id(user_id, group_number))

    async def get_word_for(self, user_id: str, group_number: int) -> Optional[WordCloudEntry]:
        return self._words.get(composite_id(user_id, group_number))

    # ── Voting switch ─────────────────────────────────────

    async def get_voting_config(self) -> VotingConfig:
        return self._voting.model_copy()

    async def set_voting_open(self, is_open: bool) -> VotingConfig:
        now = _utcnow()
        if is_open:
            self._voting = VotingConfig(is_open=True, open_time=now)
        else:
            self._voting = VotingConfig(is_open=False, open_time=self._voting.open_time, close_time=now)
        logger.info("voting_toggled", is_open=is_open)
        return self._voting.model_copy()

    async def schedule_close(self, minutes: Optional[int] = None,
                             close_time: Optional[datetime] = None) -> VotingConfig:
        """Open voting now and close it automatically at close_time (or in `minutes`)."""
        if close_time is None:
            if not minutes or minutes <= 0:
                raise ValueError("Provide a positive number of minutes or a close time")
            close_time = _utcnow() + timedelta(minutes=minutes)
        if close_time.tzinfo is None:
            close_time = close_time.replace(tzinfo=timezone.utc)
        self._voting = VotingConfig(is_open=True, open_time=_utcnow(), close_time=close_time)
        logger.info("voting_close_scheduled", close_time=close_time.isoformat())
        return self._voting.model_copy()

    # ── Internals ─────────────────────────────────────────

    def _check_writable(self, group_number: int) -> None:
        if group_number not in self.config.groups:
            raise UnknownGroupError(group_number)
        if not self._voting.accepts_votes():
            logger.info("vote_rejected", reason="voting_closed", group=group_number)
            raise VotingClosedError(self._voting.close_time)
