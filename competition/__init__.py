"""
Competition — audience star ratings and word-cloud votes per pitch group.

Quick start:
  from competition import CompetitionStore, aggregate
  store = CompetitionStore()
  await store.upsert_rating("u1", 3, 5)
  summary = aggregate(await store.list_ratings(), await store.list_words())
"""
from competition.aggregator import aggregate, normalize_word, rank_words, word_cloud_data
from competition.store import CompetitionStore, UnknownGroupError, VotingClosedError

__all__ = [
    "CompetitionStore", "VotingClosedError", "UnknownGroupError",
    "aggregate", "normalize_word", "rank_words", "word_cloud_data",
]
