"""
Core services for the match analytics backend.
- TickBuilder: one analytics snapshot (select accounts, fetch posts, analyse)
- TickStream: cancellable, resumable sequence of stream frames for one client

Each TickStream runs one tick loop and one heartbeat timer as independent
asyncio tasks feeding a single FIFO queue. All tasks are cancelled on every
exit path: natural end, wall-clock cap or client disconnect.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from adapter.models import FeedSource, Post
from analytics import SentimentScorer, TickSummary, build_tick_summary, isoformat_z
from monitoring import EventType, monitor
from selection import AccountSelector, SelectedAccount
from windowing import (
    BROADENED_WINDOW_MINUTES,
    DEFAULT_LIVE_DURATION_MIN,
    DEFAULT_RECENT_WINDOW_MINUTES,
    WindowState,
    compute_window_minutes,
    get_window_state,
    normalize_phase,
    phase_for_state,
)


logger = logging.getLogger(__name__)

TICK_FAILED = "tick_failed"


class StreamFrame(BaseModel):
    """One frame of the tick stream, rendered to SSE text by `to_sse`."""
    kind: Literal["meta", "tick", "error", "ended", "heartbeat"]
    data: Optional[Dict[str, Any]] = None
    id: Optional[int] = Field(default=None, description="Resume cursor (tick frames only)")
    retry_ms: Optional[int] = None
    at_ms: Optional[int] = None

    def to_sse(self) -> str:
        if self.kind == "heartbeat":
            return f": keep-alive {self.at_ms}\n\n"

        payload = json.dumps(self.data)
        if self.kind == "meta":
            return f": stream start\nretry: {self.retry_ms}\nevent: meta\ndata: {payload}\n\n"
        if self.kind == "tick":
            return f"id: {self.id}\ndata: {payload}\n\n"
        return f"event: {self.kind}\ndata: {payload}\n\n"


def account_ref(account: SelectedAccount) -> Dict[str, Any]:
    profile = account.profile
    return {"id": profile.id, "handle": profile.handle, "displayName": profile.display_name}


def actor_of(account: SelectedAccount) -> str:
    return account.profile.id or account.profile.handle


class TickBuilder:
    """
    Builds one TickSummary for a platform.

    Usage:
        builder = TickBuilder(selector, bsky_adapter)
        summary = await builder.build("ARS-CHE", "live", tick=1, since_minutes=15)

    Selection and fetching are blocking network calls and run in a thread.
    """

    def __init__(
        self,
        selector: AccountSelector,
        feed_source: FeedSource,
        scorer: Optional[SentimentScorer] = None,
        keywords: Optional[List[str]] = None,
    ):
        self.selector = selector
        self.feed_source = feed_source
        self.scorer = scorer
        self.keywords = keywords if keywords is not None else selector.config.keywords

    @property
    def platform(self) -> str:
        return self.selector.platform

    async def fetch_posts(self, accounts: List[SelectedAccount], since_minutes: float) -> List[Post]:
        actors = [actor_of(a) for a in accounts if actor_of(a)]
        if not actors:
            return []
        return await asyncio.to_thread(self.feed_source.fetch_recent_posts, actors, since_minutes)

    async def collect(
        self,
        match_id: Optional[str],
        since_minutes: float,
        broaden: bool = True,
    ) -> tuple[List[SelectedAccount], List[Post]]:
        """Select accounts and fetch their posts, broadening the lookback once when nothing turns up."""
        accounts = await asyncio.to_thread(self.selector.select, match_id)
        posts = await self.fetch_posts(accounts, since_minutes)
        if broaden and not posts and accounts:
            broadened = max(since_minutes, BROADENED_WINDOW_MINUTES)
            logger.debug(f"No posts in last {since_minutes} min for {self.platform}, retrying with {broadened} min")
            posts = await self.fetch_posts(accounts, broadened)
        return accounts, posts

    async def build(
        self,
        match_id: str,
        window: str,
        tick: int,
        since_minutes: float = DEFAULT_RECENT_WINDOW_MINUTES,
        now: Optional[datetime] = None,
    ) -> TickSummary:
        accounts, posts = await self.collect(match_id, since_minutes)
        return build_tick_summary(
            match_id=match_id,
            platform=self.platform,
            window=window,
            tick=tick,
            posts=posts,
            accounts_used=[account_ref(a) for a in accounts],
            keywords=self.keywords,
            scorer=self.scorer,
            now=now,
        )


class StreamParams(BaseModel):
    """Per-connection stream parameters."""
    match_id: str = "demo"
    force_window: Optional[str] = Field(default=None, description="pre | live | post, disables phase detection")
    kickoff_iso: Optional[str] = None
    final_whistle_iso: Optional[str] = None
    live_duration_min: float = DEFAULT_LIVE_DURATION_MIN
    interval_seconds: float = 30
    since_minutes: Optional[float] = Field(default=None, description="Fixed lookback; phase-derived when unset")
    default_since_minutes: float = DEFAULT_RECENT_WINDOW_MINUTES
    heartbeat_seconds: float = 15
    max_duration_seconds: float = 15 * 60
    last_event_id: Optional[int] = None

    @property
    def start_tick(self) -> int:
        """First tick number: one past the resume cursor."""
        if self.last_event_id is None or self.last_event_id < 0:
            return 1
        return self.last_event_id + 1

    def meta(self) -> Dict[str, Any]:
        forced = normalize_phase(self.force_window)
        return {
            "matchId": self.match_id,
            "kickoffISO": self.kickoff_iso or "(none)",
            "liveDurationMin": self.live_duration_min,
            "intervalSec": self.interval_seconds,
            "sinceMin": self.since_minutes if self.since_minutes is not None else self.default_since_minutes,
            "mode": f"force:{forced}" if forced else "dynamic",
        }


class TickStream:
    """
    Tick Generator for one client connection.

    Usage:
        stream = TickStream(builder, StreamParams(match_id="ARS-CHE", kickoff_iso=...))
        async for frame in stream.frames():
            send(frame.to_sse())

    Frame order: meta, then tick / error frames on the tick interval with
    heartbeats interleaved, then `ended` once the match window closes. The
    stream also stops at the wall-clock cap or when `stop()` is called; the
    stop flag is checked between ticks so an in-flight tick still completes.
    """

    def __init__(
        self,
        builder: TickBuilder,
        params: StreamParams,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.builder = builder
        self.params = params
        self._now = now
        self._stopped = False
        self._tasks: List[asyncio.Task] = []
        self.next_tick = params.start_tick

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Ask the tick loop to finish after the current tick. Safe to call repeatedly."""
        self._stopped = True

    def _resolve_window(self, now: datetime) -> tuple[str, WindowState]:
        forced = normalize_phase(self.params.force_window)
        if forced:
            return forced, WindowState(forced)
        state = get_window_state(
            self.params.kickoff_iso,
            now,
            self.params.live_duration_min,
            self.params.final_whistle_iso,
        )
        return phase_for_state(state), state

    def _since_minutes(self, phase: str, now: datetime) -> float:
        if self.params.since_minutes is not None:
            return self.params.since_minutes
        return compute_window_minutes(
            phase,
            self.params.kickoff_iso,
            now,
            self.params.live_duration_min,
            self.params.final_whistle_iso,
            default_minutes=int(self.params.default_since_minutes),
        )

    async def _tick_loop(self, queue: asyncio.Queue) -> None:
        try:
            while not self._stopped:
                try:
                    now = self._now()
                    phase, state = self._resolve_window(now)
                    summary = await self.builder.build(
                        self.params.match_id,
                        phase,
                        self.next_tick,
                        since_minutes=self._since_minutes(phase, now),
                        now=now,
                    )
                    await queue.put(StreamFrame(kind="tick", id=summary.tick, data=summary.to_dict()))
                    self.next_tick += 1
                    monitor.metrics.record_tick(summary.volume)
                    monitor.activity.add_event(
                        EventType.TICK_EMITTED, match_id=self.params.match_id, tick=summary.tick, volume=summary.volume
                    )

                    if state == WindowState.ENDED and not normalize_phase(self.params.force_window):
                        await queue.put(StreamFrame(
                            kind="ended",
                            data={"matchId": self.params.match_id, "at": isoformat_z(self._now())},
                        ))
                        logger.info(f"Match window ended for {self.params.match_id}, closing stream")
                        return
                except Exception as e:
                    logger.error(f"Tick {self.next_tick} failed for {self.params.match_id}: {e}", exc_info=True)
                    monitor.metrics.record_tick_failure()
                    monitor.activity.add_event(
                        EventType.TICK_FAILED, match_id=self.params.match_id, error=str(e)[:200]
                    )
                    await queue.put(StreamFrame(kind="error", data={"message": TICK_FAILED}))

                if self._stopped:
                    break
                await asyncio.sleep(self.params.interval_seconds)
        finally:
            # Sentinel: no more ticks
            queue.put_nowait(None)

    async def _heartbeat_loop(self, queue: asyncio.Queue) -> None:
        while True:
            await asyncio.sleep(self.params.heartbeat_seconds)
            await queue.put(StreamFrame(kind="heartbeat", at_ms=int(time.time() * 1000)))

    async def _shutdown(self) -> None:
        self._stopped = True
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def frames(self) -> AsyncIterator[StreamFrame]:
        """Yield frames until the match ends, the cap is reached, or the consumer goes away."""
        monitor.metrics.record_stream_opened()
        monitor.activity.add_event(EventType.STREAM_OPENED, match_id=self.params.match_id, start_tick=self.next_tick)

        queue: asyncio.Queue = asyncio.Queue()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.params.max_duration_seconds
        reason = "ended"

        try:
            yield StreamFrame(
                kind="meta",
                retry_ms=int(max(1000, self.params.interval_seconds * 1000)),
                data=self.params.meta(),
            )

            self._tasks = [
                asyncio.create_task(self._tick_loop(queue)),
                asyncio.create_task(self._heartbeat_loop(queue)),
            ]

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    reason = "cap"
                    break
                try:
                    frame = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    reason = "cap"
                    break
                if frame is None:
                    break
                yield frame
        except (asyncio.CancelledError, GeneratorExit):
            reason = "cancelled"
            raise
        finally:
            await self._shutdown()
            monitor.metrics.record_stream_closed()
            monitor.activity.add_event(
                EventType.STREAM_CLOSED, match_id=self.params.match_id, reason=reason, last_tick=self.next_tick - 1
            )
            logger.info(f"Stream for {self.params.match_id} closed ({reason})")

    def __aiter__(self):
        return self.frames()


__all__ = [
    "TickBuilder",
    "TickStream",
    "StreamParams",
    "StreamFrame",
    "TICK_FAILED",
    "account_ref",
]
