"""
Competition Aggregator — pure reduction of votes into per-group statistics.

Words are lowercased and trimmed before counting and ranked by count
(descending), then alphabetically. A voter counts once per group whether
they rated, added a word, or both. Empty input yields zeros, never NaN.
"""
from __future__ import annotations

import structlog
from collections import Counter
from typing import Iterable, Optional

from models.schemas import CompetitionSummary, GroupStats, StarRating, WordCloudEntry, WordCount

logger = structlog.get_logger()

DEFAULT_GROUPS = tuple(range(1, 9))


def normalize_word(word: str) -> str:
    return word.strip().lower()


def rank_words(counter: Counter, limit: Optional[int] = None) -> list[WordCount]:
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        ranked = ranked[:limit]
    return [WordCount(word=word, count=count) for word, count in ranked]


def _average(values: list[int]) -> float:
    return sum(values) / len(values) if values else 0.0


def aggregate(
    ratings: Iterable[StarRating],
    words: Iterable[WordCloudEntry],
    groups: Iterable[int] = DEFAULT_GROUPS,
    top_n: int = 5,
) -> CompetitionSummary:
    groups = list(groups)
    stars: dict[int, list[int]] = {g: [] for g in groups}
    counters: dict[int, Counter] = {g: Counter() for g in groups}
    voters: dict[int, set[str]] = {g: set() for g in groups}
    skipped = 0

    for rating in ratings:
        if rating.group_number not in stars:
            skipped += 1
            continue
        stars[rating.group_number].append(rating.stars)
        voters[rating.group_number].add(rating.user_id)

    for entry in words:
        if entry.group_number not in counters:
            skipped += 1
            continue
        word = normalize_word(entry.word)
        if not word:
            continue
        counters[entry.group_number][word] += 1
        voters[entry.group_number].add(entry.user_id)

    if skipped:
        logger.warning("votes_for_unknown_groups_skipped", count=skipped)

    group_stats = [
        GroupStats(
            group_number=g,
            average_stars=_average(stars[g]),
            total_ratings=len(stars[g]),
            unique_voters=len(voters[g]),
            total_words=sum(counters[g].values()),
            top_words=rank_words(counters[g], top_n),
        )
        for g in groups
    ]

    all_stars = [s for g in groups for s in stars[g]]
    all_words = sum(counters.values(), Counter())
    all_voters = set().union(*voters.values()) if voters else set()

    return CompetitionSummary(
        groups=group_stats,
        total_ratings=len(all_stars),
        average_stars=_average(all_stars),
        total_words=sum(all_words.values()),
        unique_voters=len(all_voters),
        top_words=rank_words(all_words, top_n),
    )


def word_cloud_data(words: Iterable[WordCloudEntry], group_number: Optional[int] = None,
                    limit: int = 300) -> list[dict]:
    """{text, freq} pairs for the live word cloud, most frequent first."""
    counter: Counter = Counter()
    for entry in words:
        if group_number is not None and entry.group_number != group_number:
            continue
        word = normalize_word(entry.word)
        if word:
            counter[word] += 1
    return [{"text": wc.word, "freq": wc.count} for wc in rank_words(counter, limit)]
