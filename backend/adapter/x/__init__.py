"""
X (Twitter) API adapter.

Implements the FeedSource capability over the X API v2:
- GET /2/users/by (usernames) and /2/users (ids) for profile resolution
- GET /2/users/:id/tweets for recent posts, replies and retweets excluded
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from monitoring import monitor

from ..models import Post, PostAuthor, Profile
from ..rate_limiter import RateLimiter, RateLimitConfig

load_dotenv()

logger = logging.getLogger(__name__)

PER_AUTHOR_LIMIT = 25
USERS_BATCH_SIZE = 100
USER_FIELDS = "id,name,username,created_at,public_metrics"


class XAdapterError(Exception):
    """Any failure talking to the X API."""


class XAuthenticationError(XAdapterError):
    """Missing bearer token, or the API rejected it (401)."""


class XRateLimitError(XAdapterError):
    """429 from the API; carries the quota headers of the rejected call."""

    def __init__(self, message: str, reset_time: int = None, remaining: int = None, limit: int = None):
        super().__init__(message)
        self.reset_time = reset_time
        self.remaining = remaining
        self.limit = limit


class XAPIError(XAdapterError):
    """Transport failure or any other 4xx/5xx."""

    def __init__(self, message: str, status_code: int = None, response_text: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


def quota_from_headers(headers) -> Dict[str, Optional[int]]:
    """x-rate-limit-* headers as ints (None when absent or malformed)."""
    quota = {}
    for key in ("limit", "remaining", "reset"):
        raw = headers.get(f"x-rate-limit-{key}")
        try:
            quota[key] = int(raw) if raw not in (None, "") else None
        except (TypeError, ValueError):
            quota[key] = None
    return quota


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_user(user: Dict[str, Any]) -> Profile:
    """Convert an X v2 user object into a Profile."""
    metrics = user.get("public_metrics") or {}
    return Profile(
        id=str(user.get("id") or ""),
        handle=user.get("username") or "",
        display_name=user.get("name"),
        followers_count=metrics.get("followers_count"),
        posts_count=metrics.get("tweet_count"),
        created_at=_parse_time(user.get("created_at")),
    )


class XAdapter:
    """
    Feed source for X.

    Usage:
        adapter = XAdapter()  # Uses X_BEARER_TOKEN env var
        profiles = adapter.resolve_profiles(["arseblog"])
        posts = adapter.fetch_recent_posts([p.id for p in profiles], lookback_minutes=15)

    Actors passed to fetch_recent_posts may be numeric user ids or usernames;
    usernames are resolved to ids first.
    """

    platform = "twitter"
    BASE_URL = "https://api.x.com/2"

    def __init__(
        self,
        bearer_token: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
    ):
        self.bearer_token = bearer_token or os.environ.get("X_BEARER_TOKEN")

        if not self.bearer_token:
            logger.warning("No X_BEARER_TOKEN provided - adapter will fail on API calls")
            self._is_configured = False
        else:
            self._is_configured = True

        self.headers = {
            "Authorization": f"Bearer {self.bearer_token}" if self.bearer_token else "",
        }
        self.session = session or requests.Session()

        # X API v2 app-only limits per 15 minutes
        self.rate_limiter = rate_limiter or RateLimiter()
        if "x_user_lookup" not in self.rate_limiter.configs:
            self.rate_limiter.configure_limit("x_user_lookup", RateLimitConfig(300, 900, "sliding_window"))
        if "x_user_timeline" not in self.rate_limiter.configs:
            self.rate_limiter.configure_limit("x_user_timeline", RateLimitConfig(1500, 900, "sliding_window"))

        self._quota: Dict[str, Any] = {"limit": None, "remaining": None, "reset_time": None, "last_updated": None}

    @property
    def is_configured(self) -> bool:
        return self._is_configured

    def get_rate_limit_status(self) -> dict:
        """Quota reported by the most recent response, plus seconds until it resets."""
        status = dict(self._quota)
        reset_time = status["reset_time"]
        status["seconds_until_reset"] = max(0, int(reset_time - time.time())) if reset_time else None
        return status

    def _track_quota(self, headers) -> None:
        quota = quota_from_headers(headers)
        for key, target in (("limit", "limit"), ("remaining", "remaining"), ("reset", "reset_time")):
            if quota[key] is not None:
                self._quota[target] = quota[key]
        self._quota["last_updated"] = datetime.now(timezone.utc)

        remaining = self._quota["remaining"]
        if remaining is not None and remaining <= 5:
            logger.warning(f"X API quota nearly exhausted: {remaining} requests left in window")

    def _get(self, path: str, params: Dict[str, Any], category: str) -> Dict[str, Any]:
        """
        GET an API path and return the decoded JSON body.

        Raises:
            XAuthenticationError: Not configured, or 401
            XRateLimitError: 429
            XAPIError: Timeouts, connection failures and any other error status
        """
        if not self._is_configured:
            raise XAuthenticationError("X adapter not configured - set X_BEARER_TOKEN")

        self.rate_limiter.wait_if_needed(category)

        started = time.time()
        try:
            response = self.session.get(f"{self.BASE_URL}{path}", headers=self.headers, params=params, timeout=15)
        except requests.exceptions.Timeout:
            monitor.metrics.record_feed_call(self.platform, (time.time() - started) * 1000, error=True)
            raise XAPIError(f"X API request timed out ({path})")
        except requests.exceptions.RequestException as e:
            monitor.metrics.record_feed_call(self.platform, (time.time() - started) * 1000, error=True)
            raise XAPIError(f"Failed to connect to X API: {e}")

        status = response.status_code
        monitor.metrics.record_feed_call(self.platform, (time.time() - started) * 1000, error=status >= 400)
        self._track_quota(response.headers)

        if status == 401:
            raise XAuthenticationError("Invalid or expired bearer token")
        if status == 429:
            quota = quota_from_headers(response.headers)
            raise XRateLimitError(
                "X API rate limit exceeded",
                reset_time=quota["reset"],
                remaining=quota["remaining"],
                limit=quota["limit"],
            )
        if status >= 400:
            raise XAPIError(f"X API error: {status}", status_code=status, response_text=response.text)

        try:
            return response.json()
        except ValueError as e:
            raise XAPIError(f"Malformed JSON from X API ({path}): {e}", status_code=status)

    def _lookup_users(self, identifiers: List[str], by_id: bool) -> List[Profile]:
        profiles = []
        for i in range(0, len(identifiers), USERS_BATCH_SIZE):
            batch = identifiers[i:i + USERS_BATCH_SIZE]
            if by_id:
                data = self._get("/users", {"ids": ",".join(batch), "user.fields": USER_FIELDS}, "x_user_lookup")
            else:
                data = self._get("/users/by", {"usernames": ",".join(batch), "user.fields": USER_FIELDS}, "x_user_lookup")
            # Unknown or suspended users come back under "errors" and are omitted
            for error in data.get("errors", []):
                logger.info(f"X user lookup skipped {error.get('value')}: {error.get('title')}")
            profiles.extend(parse_user(user) for user in data.get("data", []) or [])
        return profiles

    def resolve_profiles(self, identifiers: List[str]) -> List[Profile]:
        """
        Resolve usernames (with or without @) and numeric user ids to profiles.

        A failed batch is logged and skipped so partial results are still returned.
        """
        ids = [i for i in identifiers if i and i.isdigit()]
        usernames = [i.lstrip("@") for i in identifiers if i and not i.isdigit()]

        profiles: List[Profile] = []
        for batch, by_id in ((ids, True), (usernames, False)):
            if not batch:
                continue
            try:
                profiles.extend(self._lookup_users(batch, by_id))
            except XAdapterError as e:
                logger.warning(f"X user lookup failed for {len(batch)} identifiers: {e}")
        return profiles

    def get_user_tweets(self, user_id: str, start_time: datetime, max_results: int = PER_AUTHOR_LIMIT) -> List[Dict[str, Any]]:
        """Recent original tweets for one user (replies and retweets excluded)."""
        params = {
            "max_results": max(5, min(100, max_results)),
            "exclude": "replies,retweets",
            "start_time": start_time.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "tweet.fields": "id,text,created_at,author_id",
        }
        data = self._get(f"/users/{user_id}/tweets", params, "x_user_timeline")
        return data.get("data", []) or []

    def fetch_recent_posts(self, actors: List[str], lookback_minutes: float) -> List[Post]:
        """
        Fetch recent tweets per actor. One actor's failure is logged and
        skipped without affecting the others.
        """
        since = datetime.now(timezone.utc) - timedelta(minutes=lookback_minutes)

        authors: Dict[str, PostAuthor] = {}
        usernames = [a for a in actors if a and not a.isdigit()]
        for actor in actors:
            if actor and actor.isdigit():
                authors[actor] = PostAuthor(id=actor, handle=actor)
        if usernames:
            for profile in self.resolve_profiles(usernames):
                authors[profile.id] = PostAuthor(id=profile.id, handle=profile.handle, display_name=profile.display_name)

        posts: List[Post] = []
        for user_id, author in authors.items():
            try:
                tweets = self.get_user_tweets(user_id, since)
            except XAdapterError as e:
                logger.warning(f"Skipping X user {author.handle}: {e}")
                continue

            for tweet in tweets:
                created_at = _parse_time(tweet.get("created_at"))
                text = tweet.get("text") or ""
                if created_at is None or not text or created_at < since:
                    continue
                posts.append(Post(id=str(tweet.get("id")), author=author, text=text, created_at=created_at))

        logger.info(f"Fetched {len(posts)} X posts from {len(authors)} users (last {lookback_minutes} min)")
        return posts


__all__ = [
    "XAdapter",
    "XAdapterError",
    "XAuthenticationError",
    "XRateLimitError",
    "XAPIError",
    "parse_user",
]
