"""
Runtime configuration for the match analytics backend.

Values come from environment variables (a local .env file is honoured) and
fall back to defaults on missing or malformed input rather than failing.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

logger = logging.getLogger(__name__)

PLATFORMS = ("bsky", "twitter")

DEFAULT_KEYWORDS = [
    "Arsenal",
    "COYG",
    "Gunners",
    "Arteta",
    "Saka",
    "Odegaard",
    "Rice",
    "Saliba",
    "Havertz",
    "Martinelli",
    "Raya",
    "referee",
    "VAR",
    "penalty",
    "goal",
    "red card",
]

DEFAULT_ALLOWLISTS: Dict[str, List[str]] = {
    "bsky": [
        "arseblog.bsky.social",
        "goonerholic.bsky.social",
        "arsenalvision.bsky.social",
        "tim-stillman.bsky.social",
    ],
    "twitter": [
        "Arsenal",
        "arseblog",
        "afcstuff",
        "ArsenalFanTV",
    ],
}


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment value, treating empty strings as unset."""
    value = os.environ.get(name)
    return value if value else default


def env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    """Parse an integer env var, falling back to default when missing, malformed or below minimum."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(float(raw))
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default
    if minimum is not None and value < minimum:
        logger.warning(f"Ignoring {name}={value} below minimum {minimum}, using {default}")
        return default
    return value


def env_float(name: str, default: float, minimum: Optional[float] = None) -> float:
    """Parse a float env var with the same fallback rules as env_int."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def env_list(name: str, default: List[str]) -> List[str]:
    """Parse a comma separated env var into a list of non-empty, stripped items."""
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class PlatformConfig(BaseModel):
    """Selection and analytics settings for one platform."""
    platform: str = Field(description="Platform key (bsky, twitter)")
    allowlist: List[str] = Field(default_factory=list, description="Base candidate account identifiers")
    min_followers: int = Field(default=500, description="Minimum follower count for eligibility")
    min_account_months: float = Field(default=6, description="Minimum account age in 30-day months")
    max_accounts: int = Field(default=25, description="Cap on selected accounts")
    keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_KEYWORDS))
    default_recency_minutes: int = Field(default=15, description="Default lookback window")


class StreamSettings(BaseModel):
    """Defaults for the tick stream."""
    interval_seconds: float = 30
    heartbeat_seconds: float = 15
    max_duration_seconds: float = 15 * 60
    live_duration_minutes: int = 110


class SummarySettings(BaseModel):
    """Defaults for the summaries request path."""
    rate_max: int = 4
    rate_window_seconds: float = 60
    timeout_seconds: float = 15
    max_posts: int = 150
    max_chars: int = 12000
    model_max_tokens: int = 8192
    reserved_response_tokens: int = 600
    chars_per_token: float = 4
    alerts_webhook_url: Optional[str] = None


def load_platform_config(platform: str) -> PlatformConfig:
    """Build the configuration for a platform from <PLATFORM>_* environment variables."""
    prefix = platform.upper()
    return PlatformConfig(
        platform=platform,
        allowlist=env_list(f"{prefix}_ALLOWLIST", DEFAULT_ALLOWLISTS.get(platform, [])),
        min_followers=env_int(f"{prefix}_MIN_FOLLOWERS", 500, minimum=0),
        min_account_months=env_float(f"{prefix}_MIN_ACCOUNT_MONTHS", 6, minimum=0),
        max_accounts=env_int(f"{prefix}_MAX_ACCOUNTS", 25, minimum=0),
        keywords=env_list(f"{prefix}_KEYWORDS", DEFAULT_KEYWORDS),
        default_recency_minutes=env_int(f"{prefix}_DEFAULT_RECENCY_MINUTES", 15, minimum=1),
    )


def load_platform_configs() -> Dict[str, PlatformConfig]:
    return {platform: load_platform_config(platform) for platform in PLATFORMS}


def load_stream_settings() -> StreamSettings:
    return StreamSettings(
        interval_seconds=env_float("STREAM_INTERVAL_SEC", 30, minimum=1),
        heartbeat_seconds=env_float("STREAM_HEARTBEAT_SEC", 15, minimum=1),
        max_duration_seconds=env_float("STREAM_MAX_DURATION_SEC", 15 * 60, minimum=1),
        live_duration_minutes=env_int("DEFAULT_LIVE_DURATION_MIN", 110, minimum=1),
    )


def load_summary_settings() -> SummarySettings:
    return SummarySettings(
        rate_max=env_int("SUMMARIES_RATE_MAX", 4, minimum=1),
        rate_window_seconds=env_int("SUMMARIES_RATE_WINDOW_MS", 60_000, minimum=1) / 1000,
        timeout_seconds=env_int("SUMMARIES_TIMEOUT_MS", 15_000, minimum=1) / 1000,
        max_posts=env_int("SUMMARIES_MAX_POSTS", 150, minimum=1),
        max_chars=env_int("SUMMARIES_MAX_CHARS", 12000, minimum=1),
        model_max_tokens=env_int("SUMMARIES_MODEL_MAX_TOKENS", 8192, minimum=1),
        reserved_response_tokens=env_int("SUMMARIES_RESPONSE_TOKENS", 600, minimum=0),
        chars_per_token=env_float("SUMMARIES_CHARS_PER_TOKEN", 4, minimum=0.1),
        alerts_webhook_url=env_str("SUMMARIES_ALERTS_WEBHOOK_URL"),
    )


__all__ = [
    "PLATFORMS",
    "DEFAULT_KEYWORDS",
    "DEFAULT_ALLOWLISTS",
    "PlatformConfig",
    "StreamSettings",
    "SummarySettings",
    "env_str",
    "env_int",
    "env_float",
    "env_list",
    "load_platform_config",
    "load_platform_configs",
    "load_stream_settings",
    "load_summary_settings",
]
