"""
Window Clock: match phase and live-bin arithmetic.

All functions are pure given `now`. Timestamps are ISO 8601 strings as they
arrive from query parameters; anything unparseable is treated as "no kickoff"
instead of raising.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel

LIVE_BIN_MINUTES = 15
PRE_WINDOW_MINUTES = 120
POST_WINDOW_MINUTES = 120
DEFAULT_LIVE_DURATION_MIN = 110
DEFAULT_RECENT_WINDOW_MINUTES = 15
BROADENED_WINDOW_MINUTES = 60


class WindowState(str, Enum):
    PRE = "pre"
    LIVE = "live"
    POST = "post"
    ENDED = "ended"


class LiveBin(BaseModel):
    """Fixed 15-minute slice of the live phase, indexed from kickoff."""
    index: int
    start_minute: int
    end_minute: int
    bin_start_ms: int

    def to_dict(self, include_start: bool = True) -> dict:
        data = {"index": self.index, "startMinute": self.start_minute, "endMinute": self.end_minute}
        if include_start:
            data["binStartMs"] = self.bin_start_ms
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp (a trailing 'Z' is accepted). Returns None when missing or invalid."""
    if not value:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def to_ms(value: datetime) -> int:
    return int(_as_utc(value).timestamp() * 1000)


def get_window_state(
    kickoff_iso: Optional[str],
    now: Optional[datetime] = None,
    live_duration_min: Optional[float] = None,
    final_whistle_iso: Optional[str] = None,
) -> WindowState:
    """
    Match phase at `now`.

    pre    before kickoff
    live   kickoff through kickoff + live duration (or the final whistle), inclusive
    post   up to POST_WINDOW_MINUTES after the live phase
    ended  afterwards

    Without a usable kickoff the match is treated as live so callers fall
    back to the default recent window.
    """
    kickoff = parse_timestamp(kickoff_iso)
    if kickoff is None:
        return WindowState.LIVE

    now = _as_utc(now or _utcnow())
    live_end = live_phase_end(kickoff, live_duration_min, final_whistle_iso)

    if now < kickoff:
        return WindowState.PRE
    if now <= live_end:
        return WindowState.LIVE
    if now <= live_end + timedelta(minutes=POST_WINDOW_MINUTES):
        return WindowState.POST
    return WindowState.ENDED


def live_phase_end(
    kickoff: datetime,
    live_duration_min: Optional[float] = None,
    final_whistle_iso: Optional[str] = None,
) -> datetime:
    final_whistle = parse_timestamp(final_whistle_iso)
    if final_whistle is not None and final_whistle >= kickoff:
        return final_whistle
    duration = live_duration_min if live_duration_min and live_duration_min > 0 else DEFAULT_LIVE_DURATION_MIN
    return kickoff + timedelta(minutes=duration)


def get_live_bin(
    kickoff_iso: str,
    now: Optional[datetime] = None,
    live_duration_min: Optional[float] = None,
    final_whistle_iso: Optional[str] = None,
) -> Optional[LiveBin]:
    """
    Current live bin. index = floor(elapsed minutes / 15); before kickoff the
    index clamps to 0. When a final whistle or a live duration is given the
    last bin is clipped to the end of the live phase (the whistle wins).
    Returns None when kickoff cannot be parsed.
    """
    kickoff = parse_timestamp(kickoff_iso)
    if kickoff is None:
        return None

    live_minutes = live_duration_min
    final_whistle = parse_timestamp(final_whistle_iso)
    if final_whistle is not None and final_whistle >= kickoff:
        live_minutes = (final_whistle - kickoff).total_seconds() / 60

    now = _as_utc(now or _utcnow())
    elapsed_minutes = max(0.0, (now - kickoff).total_seconds() / 60)
    index = int(elapsed_minutes // LIVE_BIN_MINUTES)

    if live_minutes and live_minutes > 0:
        last_index = max(0, math.ceil(live_minutes / LIVE_BIN_MINUTES) - 1)
        index = min(index, last_index)

    start_minute = index * LIVE_BIN_MINUTES
    end_minute = start_minute + LIVE_BIN_MINUTES
    if live_minutes and live_minutes > 0:
        end_minute = min(end_minute, max(int(math.ceil(live_minutes)), start_minute + 1))

    return LiveBin(
        index=index,
        start_minute=start_minute,
        end_minute=end_minute,
        bin_start_ms=to_ms(kickoff) + start_minute * 60_000,
    )


def pre_window_start_ms(kickoff_iso: str) -> Optional[int]:
    """Start of the pre-match capture window (2 hours before kickoff)."""
    kickoff = parse_timestamp(kickoff_iso)
    if kickoff is None:
        return None
    return to_ms(kickoff - timedelta(minutes=PRE_WINDOW_MINUTES))


def post_window_start_ms(
    kickoff_iso: str,
    final_whistle_iso: Optional[str] = None,
    live_duration_min: Optional[float] = None,
) -> Optional[int]:
    """
    Start of the post-match capture window: the final whistle when known,
    otherwise the end of the configured live phase as an approximation of
    full time (90 minutes plus half-time and stoppage).
    """
    kickoff = parse_timestamp(kickoff_iso)
    if kickoff is None:
        return None
    return to_ms(live_phase_end(kickoff, live_duration_min, final_whistle_iso))


def phase_for_state(state: WindowState) -> str:
    """Collapse a window state to a summary phase (ended reads as post)."""
    if state == WindowState.PRE:
        return "pre"
    if state in (WindowState.POST, WindowState.ENDED):
        return "post"
    return "live"


def normalize_phase(mode: Optional[str]) -> Optional[str]:
    value = (mode or "").strip().lower()
    return value if value in ("pre", "live", "post") else None


def resolve_phase(
    mode: Optional[str],
    kickoff_iso: Optional[str],
    now: Optional[datetime] = None,
    live_duration_min: Optional[float] = None,
    final_whistle_iso: Optional[str] = None,
) -> str:
    """Explicit mode wins, then the kickoff-derived state, then live."""
    explicit = normalize_phase(mode)
    if explicit:
        return explicit
    if parse_timestamp(kickoff_iso) is None:
        return "live"
    return phase_for_state(get_window_state(kickoff_iso, now, live_duration_min, final_whistle_iso))


def _clamp_minutes(span_ms: float, upper: int) -> int:
    return max(1, min(upper, math.ceil(max(0.0, span_ms) / 60_000)))


def compute_window_minutes(
    phase: str,
    kickoff_iso: Optional[str],
    now: Optional[datetime] = None,
    live_duration_min: Optional[float] = None,
    final_whistle_iso: Optional[str] = None,
    default_minutes: int = DEFAULT_RECENT_WINDOW_MINUTES,
) -> int:
    """
    Lookback window in minutes for a phase.

    live  minutes since the current live bin started, clamped to [1, 15]
    pre   minutes from the pre-window start up to min(now, kickoff), clamped to [1, 120]
    post  minutes since the post window started, clamped to [1, 120]

    Without a usable kickoff the default recent window is used.
    """
    kickoff = parse_timestamp(kickoff_iso)
    if kickoff is None:
        return default_minutes

    now = _as_utc(now or _utcnow())
    now_ms = to_ms(now)

    if phase == "live":
        live_bin = get_live_bin(kickoff_iso, now, live_duration_min, final_whistle_iso)
        return _clamp_minutes(now_ms - live_bin.bin_start_ms, LIVE_BIN_MINUTES)
    if phase == "pre":
        end_ms = min(now_ms, to_ms(kickoff))
        return _clamp_minutes(end_ms - pre_window_start_ms(kickoff_iso), PRE_WINDOW_MINUTES)
    if phase == "post":
        start_ms = post_window_start_ms(kickoff_iso, final_whistle_iso, live_duration_min)
        return _clamp_minutes(now_ms - start_ms, POST_WINDOW_MINUTES)
    return default_minutes


__all__ = [
    "WindowState",
    "LiveBin",
    "LIVE_BIN_MINUTES",
    "PRE_WINDOW_MINUTES",
    "POST_WINDOW_MINUTES",
    "DEFAULT_LIVE_DURATION_MIN",
    "DEFAULT_RECENT_WINDOW_MINUTES",
    "BROADENED_WINDOW_MINUTES",
    "parse_timestamp",
    "to_ms",
    "get_window_state",
    "live_phase_end",
    "get_live_bin",
    "pre_window_start_ms",
    "post_window_start_ms",
    "phase_for_state",
    "normalize_phase",
    "resolve_phase",
    "compute_window_minutes",
]
