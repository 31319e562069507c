"""
Bluesky AppView adapter.

Implements the FeedSource capability over the public AppView XRPC endpoints:
- app.bsky.actor.getProfiles / getProfile for profile resolution
- app.bsky.feed.getAuthorFeed (posts_no_replies) for recent posts

Feed items arrive in a few slightly different shapes; parse_feed_item
normalizes the known ones and skips anything else.
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
from pydantic import ValidationError

from monitoring import monitor

from ..models import Post, PostAuthor, Profile
from ..rate_limiter import RateLimiter, RateLimitConfig

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_APPVIEW_BASE = "https://public.api.bsky.app"
PER_AUTHOR_LIMIT = 25
PROFILES_BATCH_SIZE = 25  # getProfiles accepts at most 25 actors


class BskyAdapterError(Exception):
    """Raised when an AppView request fails."""
    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_int(value: Any) -> Optional[int]:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def parse_profile(data: Dict[str, Any]) -> Profile:
    """Convert an AppView profileViewDetailed into a Profile."""
    return Profile(
        id=data.get("did") or "",
        handle=data.get("handle") or "",
        display_name=data.get("displayName"),
        followers_count=_as_int(data.get("followersCount")),
        posts_count=_as_int(data.get("postsCount")),
        # Not every profile view exposes createdAt
        created_at=_parse_datetime(data.get("createdAt")),
    )


def parse_feed_item(
    item: Any,
    since: Optional[datetime] = None,
    fallback_author: Optional[PostAuthor] = None,
) -> Optional[Post]:
    """
    Normalize one getAuthorFeed item; never raises.

    Accepts the record at item.post.record or directly at item.record, and
    takes the timestamp from record.createdAt or post.indexedAt. Returns None
    for items without text or timestamp, or older than `since`.
    """
    if not isinstance(item, dict):
        return None

    post = item.get("post") if isinstance(item.get("post"), dict) else {}
    record = post.get("record") if isinstance(post.get("record"), dict) else item.get("record")
    if not isinstance(record, dict):
        return None

    created_at = _parse_datetime(record.get("createdAt")) or _parse_datetime(post.get("indexedAt"))
    if created_at is None:
        return None
    if since is not None and created_at < since:
        return None

    text = record.get("text")
    if not isinstance(text, str) or not text:
        return None

    author_data = post.get("author") if isinstance(post.get("author"), dict) else {}
    fallback_author = fallback_author or PostAuthor(handle="")
    try:
        author = PostAuthor(
            id=author_data.get("did") or fallback_author.id,
            handle=author_data.get("handle") or fallback_author.handle,
            display_name=author_data.get("displayName") or fallback_author.display_name,
        )
        return Post(
            id=post.get("uri") or item.get("uri") or f"{author.id or author.handle}/{created_at.isoformat()}",
            author=author,
            text=text,
            created_at=created_at,
        )
    except ValidationError as e:
        logger.debug(f"Skipping malformed feed item: {e.error_count()} field error(s)")
        return None


class BskyAdapter:
    """
    Feed source for Bluesky.

    Usage:
        adapter = BskyAdapter()  # Uses BSKY_APPVIEW_BASE or the public AppView
        profiles = adapter.resolve_profiles(["arseblog.bsky.social"])
        posts = adapter.fetch_recent_posts([p.id for p in profiles], lookback_minutes=15)
    """

    platform = "bsky"

    DEFAULT_RATE_LIMIT = RateLimitConfig(
        requests_per_window=3000,
        window_seconds=300,
        strategy="sliding_window"
    )

    def __init__(
        self,
        base_url: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10,
    ):
        base = (base_url or os.environ.get("BSKY_APPVIEW_BASE") or DEFAULT_APPVIEW_BASE).rstrip("/")
        if base.endswith("/xrpc"):
            base = base[: -len("/xrpc")]
        self.base_url = base
        self.timeout = timeout
        self.session = session or requests.Session()

        self.rate_limiter = rate_limiter or RateLimiter()
        if "bsky_appview" not in self.rate_limiter.configs:
            self.rate_limiter.configure_limit("bsky_appview", self.DEFAULT_RATE_LIMIT)

    def _get(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET an XRPC method and return the decoded JSON body."""
        self.rate_limiter.wait_if_needed("bsky_appview")

        url = f"{self.base_url}/xrpc/{method}"
        start_ms = time.time() * 1000
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            monitor.metrics.record_feed_call("bsky", (time.time() * 1000) - start_ms, error=True)
            raise BskyAdapterError(f"{method} timed out")
        except requests.exceptions.RequestException as e:
            monitor.metrics.record_feed_call("bsky", (time.time() * 1000) - start_ms, error=True)
            raise BskyAdapterError(f"{method} request to {self.base_url} failed: {e}")

        latency_ms = (time.time() * 1000) - start_ms
        monitor.metrics.record_feed_call("bsky", latency_ms, error=response.status_code >= 400)

        if response.status_code >= 400:
            raise BskyAdapterError(f"{method} failed: {response.status_code}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise BskyAdapterError(f"{method} returned invalid JSON")
        if not isinstance(data, dict):
            raise BskyAdapterError(f"{method} returned {type(data).__name__}, expected an object")
        return data

    def get_profile(self, actor: str) -> Profile:
        """Resolve a single handle or DID."""
        data = self._get("app.bsky.actor.getProfile", {"actor": actor})
        try:
            return parse_profile(data)
        except ValidationError as e:
            raise BskyAdapterError(f"Malformed profile for {actor}: {e.error_count()} field error(s)")

    def resolve_profiles(self, identifiers: List[str]) -> List[Profile]:
        """
        Resolve handles/DIDs to profiles.

        Uses the batch endpoint; when a batch call fails, falls back to one
        getProfile call per actor. Identifiers that cannot be resolved are
        omitted from the result.
        """
        actors = [identifier for identifier in identifiers if identifier]
        profiles: List[Profile] = []

        for i in range(0, len(actors), PROFILES_BATCH_SIZE):
            batch = actors[i:i + PROFILES_BATCH_SIZE]
            try:
                data = self._get("app.bsky.actor.getProfiles", {"actors": batch})
                for entry in data.get("profiles") or []:
                    if not isinstance(entry, dict):
                        continue
                    try:
                        profiles.append(parse_profile(entry))
                    except ValidationError:
                        logger.warning(f"Skipping malformed Bluesky profile {entry.get('handle')!r}")
                continue
            except BskyAdapterError as e:
                logger.warning(f"Batch getProfiles failed ({e}), falling back to per-actor lookup")

            for actor in batch:
                try:
                    profiles.append(self.get_profile(actor))
                except BskyAdapterError as e:
                    logger.warning(f"Could not resolve Bluesky actor {actor}: {e}")

        return profiles

    def get_author_feed(self, actor: str, limit: int = PER_AUTHOR_LIMIT) -> List[Dict[str, Any]]:
        data = self._get(
            "app.bsky.feed.getAuthorFeed",
            {"actor": actor, "limit": limit, "filter": "posts_no_replies"},
        )
        feed = data.get("feed")
        return feed if isinstance(feed, list) else []

    def fetch_recent_posts(self, actors: List[str], lookback_minutes: float) -> List[Post]:
        """
        Fetch recent text posts for each actor (DID or handle).

        Each actor is fetched independently; one actor's failure is logged
        and skipped without affecting the others.
        """
        since = datetime.now(timezone.utc) - timedelta(minutes=lookback_minutes)
        posts: List[Post] = []

        for actor in actors:
            if not actor:
                continue
            fallback = PostAuthor(
                id=actor if actor.startswith("did:") else "",
                handle=actor,
            )
            try:
                feed = self.get_author_feed(actor)
            except BskyAdapterError as e:
                logger.warning(f"Skipping Bluesky actor {actor}: {e}")
                continue

            for item in feed:
                post = parse_feed_item(item, since=since, fallback_author=fallback)
                if post is not None:
                    posts.append(post)

        logger.info(f"Fetched {len(posts)} Bluesky posts from {len(actors)} actors (last {lookback_minutes} min)")
        return posts


__all__ = ["BskyAdapter", "BskyAdapterError", "parse_feed_item", "parse_profile", "DEFAULT_APPVIEW_BASE"]
