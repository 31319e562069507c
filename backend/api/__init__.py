"""
FastAPI routes for the match analytics backend.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from config import StreamSettings
from core import StreamParams, TickBuilder, TickStream
from database import SUMMARY_STATUSES
from monitoring import EventType, get_rate_limit_status, monitor
from services import SummaryRequest, SummaryService
from windowing import DEFAULT_LIVE_DURATION_MIN

logger = logging.getLogger(__name__)

# Router for API endpoints
router = APIRouter(prefix="/api/v1", tags=["Match Analytics"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ============================================================================
# Response Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    platforms: List[str]


class AccountsPlanEntry(BaseModel):
    """Selection plan for one platform."""
    platform: str
    max_accounts: int
    selected: int
    overrides: Dict[str, int]
    accounts: List[Dict[str, Any]]


# ============================================================================
# Dependencies
# ============================================================================

_builders: Dict[str, TickBuilder] = {}
_summary_service: Optional[SummaryService] = None
_stream_settings: Optional[StreamSettings] = None
_rate_limiters: Dict[str, Any] = {}


def set_dependencies(
    builders: Dict[str, TickBuilder],
    summary_service: SummaryService,
    stream_settings: StreamSettings,
):
    """Set the service dependencies (called from main app)."""
    global _builders, _summary_service, _stream_settings
    _builders = builders
    _summary_service = summary_service
    _stream_settings = stream_settings


def set_rate_limiters(**rate_limiters):
    """Register rate limiters by name for monitoring."""
    _rate_limiters.clear()
    _rate_limiters.update(rate_limiters)


def get_builders() -> Dict[str, TickBuilder]:
    if not _builders:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _builders


def get_summary_service() -> SummaryService:
    if _summary_service is None:
        raise HTTPException(status_code=503, detail="Summary service not initialized")
    return _summary_service


def get_stream_settings() -> StreamSettings:
    return _stream_settings or StreamSettings()


def get_builder(platform: str, builders: Dict[str, TickBuilder] = Depends(get_builders)) -> TickBuilder:
    builder = builders.get(platform.lower())
    if builder is None:
        raise HTTPException(status_code=404, detail=f"Unknown platform '{platform}'. Valid options: {sorted(builders)}")
    return builder


def _positive_number(raw: Optional[str], default: float) -> float:
    """Lenient query parsing: anything missing, non-numeric or <= 0 falls back to default."""
    try:
        value = float(raw) if raw not in (None, "") else None
    except ValueError:
        value = None
    return value if value is not None and value > 0 else default


def _optional_int(raw: Optional[str]) -> Optional[int]:
    try:
        return int(float(raw)) if raw not in (None, "") else None
    except ValueError:
        return None


# ============================================================================
# Routes
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(builders: Dict[str, TickBuilder] = Depends(get_builders)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        platforms=sorted(builders),
    )


# ----------------------------------------------------------------------------
# Accounts
# ----------------------------------------------------------------------------

@router.get("/accounts/{platform}/snapshot", tags=["Accounts"])
async def get_accounts_snapshot(
    match_id: Optional[str] = Query(default=None, alias="matchId"),
    builder: TickBuilder = Depends(get_builder),
):
    """Selected accounts for one platform with profile fields and eligibility reasons."""
    accounts = await _snapshot(builder, match_id)
    return {"platform": builder.platform, "matchId": match_id, "accounts": accounts}


@router.get("/accounts/plan", response_model=List[AccountsPlanEntry], tags=["Accounts"])
async def get_accounts_plan(
    match_id: Optional[str] = Query(default=None, alias="matchId"),
    builders: Dict[str, TickBuilder] = Depends(get_builders),
):
    """Planner view across platforms: cap, active override counts and selected accounts."""
    plan = []
    for platform, builder in builders.items():
        selector = builder.selector
        overrides = selector.get_overrides(match_id=match_id)
        accounts = await _snapshot(builder, match_id)
        plan.append(AccountsPlanEntry(
            platform=platform,
            max_accounts=selector.config.max_accounts,
            selected=len(accounts),
            overrides={"include": len(overrides.include), "exclude": len(overrides.exclude)},
            accounts=accounts,
        ))
    return plan


async def _snapshot(builder: TickBuilder, match_id: Optional[str]) -> List[Dict[str, Any]]:
    return await asyncio.to_thread(builder.selector.snapshot, match_id)


# ----------------------------------------------------------------------------
# Live stream (SSE)
# ----------------------------------------------------------------------------

@router.get("/live/{platform}/stream", tags=["Live"])
async def live_stream(
    match_id: str = Query(default="demo", alias="matchId"),
    window: Optional[str] = Query(default=None, description="Force phase: pre | live | post"),
    kickoff: Optional[str] = Query(default=None, description="Kickoff time (ISO 8601)"),
    final_whistle: Optional[str] = Query(default=None, alias="finalWhistle"),
    live_min: Optional[str] = Query(default=None, alias="liveMin"),
    interval_sec: Optional[str] = Query(default=None, alias="intervalSec"),
    since_min: Optional[str] = Query(default=None, alias="sinceMin"),
    heartbeat_sec: Optional[str] = Query(default=None, alias="heartbeatSec"),
    last_event_id_param: Optional[str] = Query(default=None, alias="lastEventId"),
    last_event_id_header: Optional[str] = Header(default=None, alias="Last-Event-ID"),
    builder: TickBuilder = Depends(get_builder),
    settings: StreamSettings = Depends(get_stream_settings),
):
    """
    Server-sent events stream of per-tick analytics.

    Resume by passing the last seen tick id as `lastEventId` or the
    `Last-Event-ID` header; the next tick is numbered one past it.
    """
    last_event_id = _optional_int(last_event_id_param if last_event_id_param is not None else last_event_id_header)
    since = _positive_number(since_min, 0)

    params = StreamParams(
        match_id=match_id,
        force_window=window,
        kickoff_iso=kickoff or None,
        final_whistle_iso=final_whistle or None,
        live_duration_min=_positive_number(live_min, settings.live_duration_minutes or DEFAULT_LIVE_DURATION_MIN),
        interval_seconds=max(1.0, _positive_number(interval_sec, settings.interval_seconds)),
        since_minutes=since or None,
        default_since_minutes=builder.selector.config.default_recency_minutes,
        heartbeat_seconds=_positive_number(heartbeat_sec, settings.heartbeat_seconds),
        max_duration_seconds=settings.max_duration_seconds,
        last_event_id=last_event_id if last_event_id is not None and last_event_id >= 0 else None,
    )
    stream = TickStream(builder, params)

    async def event_source():
        async for frame in stream.frames():
            yield frame.to_sse()

    return StreamingResponse(event_source(), media_type="text/event-stream", headers=SSE_HEADERS)


# ----------------------------------------------------------------------------
# Summaries
# ----------------------------------------------------------------------------

@router.get("/summaries/latest", tags=["Summaries"])
async def get_latest_summary(
    match_id: str = Query(default="latest-finished-test", alias="matchId"),
    platform: Optional[str] = Query(default=None),
    kickoff: Optional[str] = Query(default=None),
    final_whistle: Optional[str] = Query(default=None, alias="finalWhistle"),
    live_min: Optional[str] = Query(default=None, alias="liveMin"),
    mode: Optional[str] = Query(default=None, description="Explicit phase: pre | live | post"),
    service: SummaryService = Depends(get_summary_service),
):
    """LLM summary of recent fan posts for the match phase."""
    outcome = await service.latest(SummaryRequest(
        match_id=match_id,
        platform=platform or "combined",
        kickoff_iso=kickoff or None,
        final_whistle_iso=final_whistle or None,
        live_duration_min=_positive_number(live_min, DEFAULT_LIVE_DURATION_MIN),
        mode=mode,
    ))

    headers = {}
    if outcome.status == "ok":
        headers["Cache-Control"] = "no-store"
    if outcome.retry_after_seconds is not None:
        headers["Retry-After"] = str(outcome.retry_after_seconds)
    return JSONResponse(content=outcome.body, status_code=outcome.http_status, headers=headers)


# ============================================================================
# Monitoring & Observability
# ============================================================================

@router.get("/monitor/dashboard", tags=["Monitoring"])
async def get_dashboard():
    """
    Full monitoring dashboard data.

    Returns all metrics, health status, and recent activity in one call.
    """
    return monitor.get_dashboard_data()


@router.get("/monitor/health", tags=["Monitoring"])
async def get_system_health():
    """System health check with per-component status."""
    return monitor.get_health_status()


@router.get("/monitor/metrics", tags=["Monitoring"])
async def get_metrics():
    """
    Detailed performance metrics.

    Includes:
    - Request counts
    - Feed-source and summarizer call statistics
    - Stream and tick counters
    - Summaries outcomes
    """
    return monitor.metrics.get_metrics()


@router.get("/monitor/rate-limits", tags=["Monitoring"])
async def get_rate_limits():
    """Current usage vs limits for every registered rate limiter category."""
    if not _rate_limiters:
        return {"error": "Rate limiter not configured", "categories": {}}

    status: Dict[str, Any] = {}
    for name, limiter in _rate_limiters.items():
        for category, info in get_rate_limit_status(limiter).items():
            status[category] = {**info, "limiter": name}

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "categories": status,
        "summary": {
            "total_categories": len(status),
            "critical": sum(1 for s in status.values() if s["status"] == "critical"),
            "warning": sum(1 for s in status.values() if s["status"] == "warning"),
            "ok": sum(1 for s in status.values() if s["status"] == "ok"),
        }
    }


@router.get("/monitor/activity", tags=["Monitoring"])
async def get_activity_feed(
    limit: int = Query(default=50, ge=1, le=200, description="Number of events"),
    event_type: Optional[str] = Query(default=None, description="Filter by event type"),
    match_id: Optional[str] = Query(default=None, alias="matchId", description="Filter by match"),
):
    """Recent system events: streams, ticks, summaries, alerts and errors."""
    filter_type = None
    if event_type:
        try:
            filter_type = EventType(event_type)
        except ValueError:
            valid_types = [e.value for e in EventType]
            raise HTTPException(
                status_code=400,
                detail=f"Invalid event_type. Valid options: {valid_types}"
            )

    return {
        "events": monitor.activity.get_recent(limit=limit, event_type=filter_type, match_id=match_id),
        "event_counts_5m": monitor.activity.get_event_counts(since_minutes=5),
        "available_types": [e.value for e in EventType],
    }


@router.get("/monitor/summaries/metrics", tags=["Monitoring"])
async def get_summaries_metrics(
    hours: float = Query(default=24, gt=0, le=24 * 30, description="Lookback in hours"),
    service: SummaryService = Depends(get_summary_service),
):
    """Summaries outcome counts and success rate from the audit log."""
    return service.get_metrics(hours=hours)


@router.get("/monitor/summaries/recent", tags=["Monitoring"])
async def get_summaries_recent(
    limit: int = Query(default=50, ge=1, le=500),
    status: Optional[str] = Query(default=None, description="Filter by status"),
    hours: float = Query(default=24, gt=0, le=24 * 30),
    service: SummaryService = Depends(get_summary_service),
):
    """Newest summaries audit rows."""
    if status and status not in SUMMARY_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status. Valid options: {list(SUMMARY_STATUSES)}")
    return {"rows": service.get_recent(limit=limit, status=status, hours=hours)}


__all__ = [
    "router",
    "set_dependencies",
    "set_rate_limiters",
    "get_builders",
    "get_summary_service",
]
