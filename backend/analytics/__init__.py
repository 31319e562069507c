"""
Analytics Engine for match posts.

Given an in-memory collection of posts:
- sentiment counts and ratios (VADER compound score, sign-classified)
- top keyword topics (case-insensitive substring match, configured casing kept)
- most recent sample quotes

Everything here is side-effect free; TickSummary is the immutable per-tick
snapshot the stream emits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field
from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer

from adapter.models import Post

logger = logging.getLogger(__name__)

MAX_TOPICS = 10
DEFAULT_SAMPLE_SIZE = 5


class SentimentScorer:
    """Lexicon sentiment scorer returning a signed score per text."""

    def __init__(self, analyzer: Optional[SentimentIntensityAnalyzer] = None):
        self._analyzer = analyzer or SentimentIntensityAnalyzer()

    def score(self, text: str) -> float:
        return self._analyzer.polarity_scores(text or "")["compound"]

    def classify(self, text: str) -> str:
        score = self.score(text)
        if score > 0:
            return "pos"
        if score < 0:
            return "neg"
        return "neu"


_default_scorer: Optional[SentimentScorer] = None


def get_default_scorer() -> SentimentScorer:
    """Lazily build the shared scorer (loading the VADER lexicon is not free)."""
    global _default_scorer
    if _default_scorer is None:
        _default_scorer = SentimentScorer()
    return _default_scorer


def summarize_sentiment(posts: Sequence[Post], scorer: Optional[SentimentScorer] = None) -> Dict[str, Dict[str, Any]]:
    """
    Classify each post and aggregate.

    Returns:
        {"ratios": {"pos", "neg", "neu"}, "counts": {"total", "pos", "neg", "neu"}}
        with every value 0 when there are no posts.
    """
    counts = {"total": len(posts), "pos": 0, "neg": 0, "neu": 0}
    if not posts:
        return {"ratios": {"pos": 0, "neg": 0, "neu": 0}, "counts": counts}

    scorer = scorer or get_default_scorer()
    for post in posts:
        counts[scorer.classify(post.text)] += 1

    total = counts["total"]
    ratios = {
        "pos": counts["pos"] / total,
        "neg": counts["neg"] / total,
        "neu": counts["neu"] / total,
    }
    return {"ratios": ratios, "counts": counts}


def extract_topics(
    posts: Sequence[Post],
    keywords: Sequence[str],
    limit: int = MAX_TOPICS,
) -> List[Dict[str, Any]]:
    """
    Count posts mentioning each keyword.

    A post counts once per keyword however often it repeats it. Keywords with
    no matches are omitted; ties keep the configured keyword order.
    """
    # lowercased keyword -> configured casing (later duplicates win the casing, not the position)
    casing: Dict[str, str] = {}
    for keyword in keywords:
        if keyword:
            casing[keyword.lower()] = keyword

    counts: Dict[str, int] = {}
    for post in posts:
        text = (post.text or "").lower()
        for lowered in casing:
            if lowered in text:
                counts[lowered] = counts.get(lowered, 0) + 1

    ordered = [lowered for lowered in casing if counts.get(lowered)]
    ordered.sort(key=lambda lowered: -counts[lowered])
    return [{"keyword": casing[lowered], "count": counts[lowered]} for lowered in ordered[:limit]]


def _created_at_key(post: Post) -> float:
    created_at = post.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at.timestamp()


def sort_recent_first(posts: Sequence[Post]) -> List[Post]:
    return sorted(posts, key=_created_at_key, reverse=True)


def isoformat_z(value: datetime) -> str:
    """UTC ISO 8601 with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def sample_quotes(posts: Sequence[Post], n: int = DEFAULT_SAMPLE_SIZE) -> List[Dict[str, str]]:
    """The n most recent posts as {authorHandle, text, createdAt}."""
    return [
        {
            "authorHandle": post.author.handle,
            "text": post.text,
            "createdAt": isoformat_z(post.created_at),
        }
        for post in sort_recent_first(posts)[:max(n, 0)]
    ]


class TickSummary(BaseModel):
    """One analytics snapshot in the stream. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    match_id: str
    platform: str
    window: str = Field(description="pre | live | post")
    generated_at: datetime
    tick: int = Field(description="Monotonic sequence number, doubles as the resume cursor")
    sentiment: Dict[str, Any]
    volume: int
    accounts_used: List[Dict[str, Any]] = Field(default_factory=list)
    topics: List[Dict[str, Any]] = Field(default_factory=list)
    samples: List[Dict[str, str]] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matchId": self.match_id,
            "platform": self.platform,
            "window": self.window,
            "generatedAt": isoformat_z(self.generated_at),
            "tick": self.tick,
            "sentiment": self.sentiment,
            "volume": self.volume,
            "accountsUsed": self.accounts_used,
            "topics": self.topics,
            "samples": self.samples,
        }


def build_tick_summary(
    match_id: str,
    platform: str,
    window: str,
    tick: int,
    posts: Sequence[Post],
    accounts_used: List[Dict[str, Any]],
    keywords: Sequence[str],
    scorer: Optional[SentimentScorer] = None,
    now: Optional[datetime] = None,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> TickSummary:
    """Run the three analytics over `posts` and package the result."""
    sentiment = summarize_sentiment(posts, scorer)
    return TickSummary(
        match_id=match_id,
        platform=platform,
        window=window,
        generated_at=now or datetime.now(timezone.utc),
        tick=tick,
        sentiment={
            "pos": sentiment["ratios"]["pos"],
            "neu": sentiment["ratios"]["neu"],
            "neg": sentiment["ratios"]["neg"],
            "counts": sentiment["counts"],
        },
        volume=len(posts),
        accounts_used=accounts_used,
        topics=extract_topics(posts, keywords),
        samples=sample_quotes(posts, sample_size),
    )


__all__ = [
    "SentimentScorer",
    "TickSummary",
    "MAX_TOPICS",
    "DEFAULT_SAMPLE_SIZE",
    "get_default_scorer",
    "summarize_sentiment",
    "extract_topics",
    "sample_quotes",
    "sort_recent_first",
    "isoformat_z",
    "build_tick_summary",
]
