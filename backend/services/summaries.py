"""
Summaries request path.

On-demand LLM summary of recent fan posts for a match:
1. Resolve the phase (explicit mode, else from kickoff, else live) and the
   lookback window for that phase
2. Check the process-wide rate limiter and the summarizer key
3. Collect posts, format them one per line (most recent first), apply the
   token budget
4. Call the summarizer with a timeout

Every outcome is written to the audit log and non-ok outcomes are sent to the
ops alert notifier. Neither audit nor alert failures affect the response.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from adapter.grok import GrokSummarizer, SummarizerUnavailableError, SummaryTimeoutError
from adapter.rate_limiter import RateLimiter
from analytics.budget import TokenBudget, build_post_lines, plan_budget
from config import SummarySettings
from core import TickBuilder, account_ref
from database import SUMMARY_STATUSES, Database
from monitoring import EventType, monitor
from services.alerts import AlertNotifier
from windowing import (
    DEFAULT_LIVE_DURATION_MIN,
    compute_window_minutes,
    get_live_bin,
    parse_timestamp,
    resolve_phase,
)

logger = logging.getLogger(__name__)

SUMMARY_CATEGORY = "summaries"
PLATFORMS = ("bsky", "twitter", "threads", "combined")
PLACEHOLDER_TEXT = "Platform ingestion not yet implemented for this platform in the summary API."
MAX_RECENT_LIMIT = 500


def normalize_platform(platform: Optional[str]) -> str:
    value = (platform or "combined").strip().lower()
    return value if value in PLATFORMS else "combined"


class SummaryRequest(BaseModel):
    """Query for the latest summary."""
    match_id: str = Field(default="latest-finished-test")
    platform: str = Field(default="combined")
    kickoff_iso: Optional[str] = None
    final_whistle_iso: Optional[str] = None
    live_duration_min: float = DEFAULT_LIVE_DURATION_MIN
    mode: Optional[str] = Field(default=None, description="Explicit phase: pre | live | post")


class SummaryOutcome(BaseModel):
    """Result of one request: audit status, HTTP status and JSON body."""
    status: str
    http_status: int
    body: Dict[str, Any]
    retry_after_seconds: Optional[int] = None


class SummaryService:
    """
    Usage:
        service = SummaryService(builders, summarizer, limiter, settings, database, notifier)
        outcome = await service.latest(SummaryRequest(match_id="ARS-CHE", platform="bsky"))
    """

    def __init__(
        self,
        builders: Dict[str, TickBuilder],
        summarizer: GrokSummarizer,
        rate_limiter: RateLimiter,
        settings: Optional[SummarySettings] = None,
        database: Optional[Database] = None,
        notifier: Optional[AlertNotifier] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.builders = builders
        self.summarizer = summarizer
        self.rate_limiter = rate_limiter
        self.settings = settings or SummarySettings()
        self.database = database
        self.notifier = notifier or AlertNotifier()
        self._now = now

    @property
    def budget(self) -> TokenBudget:
        return TokenBudget(
            model_max_tokens=self.settings.model_max_tokens,
            reserved_response_tokens=self.settings.reserved_response_tokens,
            chars_per_token=self.settings.chars_per_token,
            max_posts=self.settings.max_posts,
            max_chars=self.settings.max_chars,
        )

    async def _audit(self, status: str, **fields) -> None:
        monitor.metrics.record_summary_status(status)
        monitor.activity.add_event(EventType.SUMMARY_REQUEST, match_id=fields.get("match_id"), status=status)
        if self.database is None:
            return
        try:
            await asyncio.to_thread(
                self.database.record_summary_request, status=status, created_at=self._now(), **fields
            )
        except Exception as e:
            logger.warning(f"Failed to record summary audit row ({status}): {e}")

    async def _alert(self, text: str) -> None:
        try:
            await self.notifier.notify_async(text)
        except Exception as e:
            logger.warning(f"Alert notifier raised: {e}")

    async def latest(self, request: SummaryRequest) -> SummaryOutcome:
        started = time.monotonic()
        platform = normalize_platform(request.platform)
        audit_fields: Dict[str, Any] = {
            "match_id": request.match_id,
            "platform": platform,
            "phase": "live",
            "window_minutes": 0,
            "posts_count": 0,
            "chars_count": 0,
            "model": self.summarizer.model,
        }

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            now = self._now()
            kickoff_iso = request.kickoff_iso if parse_timestamp(request.kickoff_iso) else None
            phase = resolve_phase(
                request.mode, kickoff_iso, now, request.live_duration_min, request.final_whistle_iso
            )
            window_minutes = compute_window_minutes(
                phase, kickoff_iso, now, request.live_duration_min, request.final_whistle_iso
            )
            live_bin = None
            if phase == "live" and kickoff_iso:
                live_bin = get_live_bin(kickoff_iso, now, request.live_duration_min, request.final_whistle_iso)
            audit_fields.update(phase=phase, window_minutes=window_minutes)

            decision = self.rate_limiter.try_acquire(SUMMARY_CATEGORY)
            if not decision.allowed:
                retry_after_ms = int(math.ceil(decision.retry_after_seconds * 1000))
                retry_after_s = int(math.ceil(decision.retry_after_seconds))
                logger.warning(f"Summaries rate limited, retry in {retry_after_s}s")
                monitor.activity.add_event(EventType.RATE_LIMITED, match_id=request.match_id, retry_after_ms=retry_after_ms)
                await self._alert(f"[summaries/latest] rate_limited: retry in {retry_after_s}s")
                await self._audit("rate_limited", duration_ms=elapsed_ms(), **audit_fields)
                return SummaryOutcome(
                    status="rate_limited",
                    http_status=429,
                    body={"error": "rate_limited", "retryAfterMs": retry_after_ms},
                    retry_after_seconds=retry_after_s,
                )

            if not self.summarizer.is_configured:
                await self._alert("[summaries/latest] missing XAI_API_KEY")
                await self._audit("missing_key", duration_ms=elapsed_ms(), **audit_fields)
                return SummaryOutcome(
                    status="missing_key",
                    http_status=500,
                    body={"error": "missing_api_key", "message": "XAI_API_KEY is not set on the server."},
                )

            # "combined" reads from Bluesky until other platforms are merged in
            source = "bsky" if platform == "combined" else platform
            builder = self.builders.get(source)
            accounts_used: List[Dict[str, Any]] = []
            if builder is not None:
                accounts, posts = await builder.collect(request.match_id, window_minutes, broaden=False)
                accounts_used = [account_ref(a) for a in accounts]
                lines = build_post_lines(posts, self.settings.max_posts)
            else:
                lines = [PLACEHOLDER_TEXT]

            plan = plan_budget(lines, self.budget)
            audit_fields.update(posts_count=plan.posts_kept, chars_count=plan.chars_kept)

            try:
                result = await self.summarizer.summarize_async(
                    match_id=request.match_id,
                    platform=platform,
                    phase=phase,
                    window_minutes=window_minutes,
                    posts_text=plan.text,
                    timeout_seconds=self.settings.timeout_seconds,
                )
            except SummaryTimeoutError:
                timeout_ms = int(self.settings.timeout_seconds * 1000)
                await self._alert(f"[summaries/latest] summarizer_timeout after {timeout_ms}ms")
                await self._audit("timeout", duration_ms=elapsed_ms(), **audit_fields)
                return SummaryOutcome(
                    status="timeout",
                    http_status=504,
                    body={"error": "summarizer_timeout", "timeoutMs": timeout_ms},
                )
            except SummarizerUnavailableError:
                await self._alert("[summaries/latest] missing XAI_API_KEY")
                await self._audit("missing_key", duration_ms=elapsed_ms(), **audit_fields)
                return SummaryOutcome(
                    status="missing_key",
                    http_status=500,
                    body={"error": "missing_api_key", "message": "XAI_API_KEY is not set on the server."},
                )

            await self._audit(
                "ok",
                duration_ms=elapsed_ms(),
                prompt_tokens=result.usage.get("prompt_tokens"),
                completion_tokens=result.usage.get("completion_tokens"),
                total_tokens=result.usage.get("total_tokens"),
                **{**audit_fields, "model": result.model},
            )
            return SummaryOutcome(
                status="ok",
                http_status=200,
                body={
                    "matchId": request.match_id,
                    "platform": platform,
                    "phase": phase,
                    "windowMinutes": window_minutes,
                    "accountsUsed": accounts_used,
                    "liveBin": live_bin.to_dict(include_start=False) if live_bin else None,
                    "model": result.model,
                    "summary": result.summary,
                    "usage": result.usage,
                },
            )

        except Exception as e:
            logger.error(f"[summaries/latest] failed: {e}", exc_info=True)
            await self._alert(f"[summaries/latest] summary_failed: {e}")
            await self._audit("failed", error_message=str(e), duration_ms=elapsed_ms(), **audit_fields)
            return SummaryOutcome(
                status="failed",
                http_status=500,
                body={"error": "summary_failed", "message": str(e) or "Unknown error"},
            )

    def get_metrics(self, hours: float = 24) -> Dict[str, Any]:
        """Outcome counts and success rate over the last `hours`."""
        since = self._now() - timedelta(hours=hours)
        counts = self.database.get_summary_status_counts(since) if self.database else {s: 0 for s in SUMMARY_STATUSES}
        total = sum(counts.values())
        return {
            "since": since.isoformat(),
            "hours": hours,
            "total": total,
            "counts": counts,
            "success_rate": counts.get("ok", 0) / total if total else 0,
        }

    def get_recent(self, limit: int = 50, status: Optional[str] = None, hours: float = 24) -> List[Dict[str, Any]]:
        """Newest audit rows, optionally filtered by status."""
        if self.database is None:
            return []
        limit = max(1, min(MAX_RECENT_LIMIT, limit))
        since = self._now() - timedelta(hours=hours)
        return self.database.get_recent_summary_requests(since, limit=limit, status=status)


__all__ = [
    "SummaryService",
    "SummaryRequest",
    "SummaryOutcome",
    "normalize_platform",
    "PLACEHOLDER_TEXT",
    "SUMMARY_CATEGORY",
]
