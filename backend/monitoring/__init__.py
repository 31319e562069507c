"""
Process-local observability for the match analytics backend.

One global `monitor` holds:
- metrics: request, upstream-call, stream/tick and summaries counters
- activity: a bounded feed of recent events, filterable by type and match
- component health as reported at startup

Everything lives in memory and resets on restart; the durable record of
summaries outcomes is the audit table in `database`.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

# Health severity, worst last
HEALTH_ORDER = ("healthy", "warning", "error")

# usage_percent thresholds for rate limiter categories
RATE_WARNING_PCT = 80
RATE_CRITICAL_PCT = 95


class EventType(str, Enum):
    """Activity feed event kinds."""
    STREAM_OPENED = "stream_opened"
    STREAM_CLOSED = "stream_closed"
    TICK_EMITTED = "tick_emitted"
    TICK_FAILED = "tick_failed"
    SUMMARY_REQUEST = "summary_request"
    RATE_LIMITED = "rate_limited"
    ALERT_SENT = "alert_sent"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SystemEvent:
    event_type: EventType
    match_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.at.isoformat(),
            "event_type": self.event_type.value,
            "match_id": self.match_id,
            "details": self.details,
            "age_seconds": round((_utcnow() - self.at).total_seconds(), 3),
        }


def latency_percentiles(samples: Iterable[float]) -> Dict[str, float]:
    """Nearest-rank p50/p95/p99 and mean of the samples (all 0 when empty)."""
    ordered = sorted(samples)
    if not ordered:
        return {"p50": 0, "p95": 0, "p99": 0, "avg": 0}

    last = len(ordered) - 1

    def rank(q: float) -> float:
        return ordered[min(last, int(len(ordered) * q))]

    return {
        "p50": rank(0.50),
        "p95": rank(0.95),
        "p99": rank(0.99),
        "avg": sum(ordered) / len(ordered),
    }


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class UpstreamStats:
    """Calls, failures and recent latencies for one upstream (a feed source or the summarizer)."""

    def __init__(self, window: int = 1000):
        self.calls = 0
        self.errors = 0
        self.latencies: Deque[float] = deque(maxlen=window)

    def record(self, latency_ms: float, error: bool) -> None:
        self.calls += 1
        self.errors += int(error)
        self.latencies.append(latency_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calls": self.calls,
            "errors": self.errors,
            "error_rate": f"{(self.errors / self.calls if self.calls else 0):.1%}",
            "latency_ms": latency_percentiles(self.latencies),
        }


class MetricsCollector:
    """
    In-memory counters.

    - requests per endpoint (and 5xx per endpoint)
    - upstream calls per feed source, plus the summarizer
    - stream lifecycle: opened, currently open, ticks emitted/failed, posts analysed
    - summaries outcomes by status
    """

    def __init__(self):
        self.started = time.time()
        self.requests: Counter = Counter()
        self.request_errors: Counter = Counter()
        self.feeds: Dict[str, UpstreamStats] = {}
        self.summarizer = UpstreamStats()
        self.streams: Counter = Counter()
        self.summary_statuses: Counter = Counter()

    def record_request(self, endpoint: str, error: bool = False) -> None:
        self.requests[endpoint] += 1
        if error:
            self.request_errors[endpoint] += 1

    def record_feed_call(self, platform: str, latency_ms: float, error: bool = False) -> None:
        self.feeds.setdefault(platform, UpstreamStats()).record(latency_ms, error)

    def record_summarizer_call(self, latency_ms: float, error: bool = False) -> None:
        self.summarizer.record(latency_ms, error)

    def record_stream_opened(self) -> None:
        self.streams.update(opened=1, active=1)

    def record_stream_closed(self) -> None:
        if self.streams["active"] > 0:
            self.streams["active"] -= 1

    def record_tick(self, volume: int) -> None:
        self.streams.update(ticks_emitted=1, posts_analyzed=volume)

    def record_tick_failure(self) -> None:
        self.streams["tick_failures"] += 1

    def record_summary_status(self, status: str) -> None:
        self.summary_statuses[status] += 1

    def get_metrics(self) -> Dict[str, Any]:
        uptime = time.time() - self.started
        return {
            "uptime_seconds": int(uptime),
            "uptime_human": format_uptime(uptime),
            "requests": {
                "total": sum(self.requests.values()),
                "by_endpoint": dict(self.requests),
                "errors": dict(self.request_errors),
            },
            "feed_sources": {platform: stats.to_dict() for platform, stats in self.feeds.items()},
            "summarizer": self.summarizer.to_dict(),
            "streams": {
                key: self.streams[key]
                for key in ("opened", "active", "ticks_emitted", "tick_failures", "posts_analyzed")
            },
            "summaries": dict(self.summary_statuses),
        }


class ActivityFeed:
    """Bounded, newest-first view of recent stream/summary/alert events."""

    def __init__(self, max_events: int = 500):
        self._events: Deque[SystemEvent] = deque(maxlen=max_events)

    def add_event(self, event_type: EventType, match_id: Optional[str] = None, **details) -> None:
        self._events.append(SystemEvent(event_type=event_type, match_id=match_id, details=details))

    def get_recent(
        self,
        limit: int = 50,
        event_type: Optional[EventType] = None,
        match_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        selected = []
        # deque is append-ordered, so walking it backwards is newest first
        for event in reversed(self._events):
            if event_type is not None and event.event_type != event_type:
                continue
            if match_id is not None and event.match_id != match_id:
                continue
            selected.append(event.to_dict())
            if len(selected) >= limit:
                break
        return selected

    def get_event_counts(self, since_minutes: int = 5) -> Dict[str, int]:
        cutoff = _utcnow() - timedelta(minutes=since_minutes)
        return dict(Counter(e.event_type.value for e in self._events if e.at >= cutoff))


class SystemMonitor:
    """Metrics, activity and component health behind one object."""

    def __init__(self):
        self.metrics = MetricsCollector()
        self.activity = ActivityFeed()
        self.components: Dict[str, Dict[str, Any]] = {}

    def set_component_status(self, component: str, status: str, details: Optional[Dict[str, Any]] = None) -> None:
        if status not in HEALTH_ORDER:
            logger.warning(f"Unknown health status '{status}' for {component}")
        self.components[component] = {
            "status": status,
            "last_updated": _utcnow().isoformat(),
            "details": details or {},
        }

    def get_health_status(self) -> Dict[str, Any]:
        """Overall status is the worst component status; `unknown` until something reports."""
        statuses = [c["status"] for c in self.components.values()]
        if not statuses or any(s not in HEALTH_ORDER for s in statuses):
            overall = "unknown"
        else:
            worst = max(statuses, key=HEALTH_ORDER.index)
            overall = "degraded" if worst == "error" else worst
        return {
            "status": overall,
            "timestamp": _utcnow().isoformat(),
            "components": self.components,
        }

    def get_dashboard_data(self) -> Dict[str, Any]:
        return {
            "health": self.get_health_status(),
            "metrics": self.metrics.get_metrics(),
            "recent_activity": self.activity.get_recent(limit=20),
            "event_counts_5m": self.activity.get_event_counts(since_minutes=5),
        }


monitor = SystemMonitor()


def get_rate_limit_status(rate_limiter) -> Dict[str, Any]:
    """
    Usage per configured category of a RateLimiter.

    Each entry carries limit, window, strategy, remaining/used counts and a
    coarse status: ok below 80% usage, warning below 95%, critical above.
    """
    status = {}
    for category, config in rate_limiter.configs.items():
        limit = config.requests_per_window
        remaining = rate_limiter.get_remaining_requests(category)
        used = limit - remaining
        pct = used / limit * 100 if limit > 0 else 0

        if pct >= RATE_CRITICAL_PCT:
            level = "critical"
        elif pct >= RATE_WARNING_PCT:
            level = "warning"
        else:
            level = "ok"

        status[category] = {
            "limit": limit,
            "window_seconds": config.window_seconds,
            "strategy": config.strategy,
            "remaining": remaining,
            "used": used,
            "usage_percent": f"{pct:.1f}%",
            "status": level,
        }
    return status


__all__ = [
    "SystemMonitor",
    "MetricsCollector",
    "ActivityFeed",
    "UpstreamStats",
    "EventType",
    "SystemEvent",
    "monitor",
    "get_rate_limit_status",
    "latency_percentiles",
]
