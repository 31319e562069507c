"""
Typed helper wrapping Grok (xai-sdk) for match fan-sentiment summaries.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Dict, List, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field
from xai_sdk import Client
from xai_sdk.chat import system, user

from monitoring import monitor

load_dotenv(find_dotenv(usecwd=True))

logger = logging.getLogger(__name__)

DEFAULT_FAST_MODEL = "grok-4-1-fast"


class SummaryError(Exception):
    """Raised when the summarizer call fails."""
    pass


class SummaryTimeoutError(SummaryError):
    """Raised when the summarizer does not answer within the timeout."""
    def __init__(self, message: str, timeout_seconds: float = None):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class SummarizerUnavailableError(SummaryError):
    """Raised when no API key is configured."""
    pass


class MatchSummary(BaseModel):
    """Structured output requested from the model."""
    summary: str = Field(description="At most 3 concise paragraphs summarizing fan sentiment")
    overall_sentiment: str = Field(description="positive / negative / mixed")
    key_topics: List[str] = Field(description="Players, manager, refereeing or tactics fans discuss")


class SummaryResult(BaseModel):
    """What the summaries path returns to its caller."""
    summary: str
    model: str
    usage: Dict[str, Optional[int]] = Field(default_factory=dict)


SYSTEM_PROMPT = "\n".join([
    "You are an assistant summarizing Arsenal fan sentiment.",
    "This summary is for the {phase} phase (pre-match/live/post-match).",
    "Summarize the following social posts from the last {window} minutes into no more than 3 concise paragraphs.",
    "Focus on:",
    "- Overall sentiment (positive/negative/mixed) and intensity",
    "- Key topics (players, manager, refereeing, tactics)",
    "- Notable moments or trends fans are discussing",
    "Avoid quoting individual users; avoid personal data; keep it neutral and aggregate-focused.",
])


def build_prompts(match_id: str, platform: str, phase: str, window_minutes: int, posts_text: str) -> tuple[str, str]:
    system_prompt = SYSTEM_PROMPT.format(phase=phase.upper(), window=window_minutes)
    user_prompt = (
        f"Match: {match_id}\n"
        f"Platform: {platform}\n"
        f"Phase: {phase}\n"
        f"Time window: last {window_minutes} minutes\n"
        f"Posts:\n{posts_text}"
    )
    return system_prompt, user_prompt


def _usage_of(response) -> Dict[str, Optional[int]]:
    usage = getattr(response, "usage", None)
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", None),
        "completion_tokens": getattr(usage, "completion_tokens", None),
        "total_tokens": getattr(usage, "total_tokens", None),
    }


class GrokSummarizer:
    """
    Summarizer collaborator for the summaries request path.

    The client is created lazily from XAI_API_KEY; without a key every call
    raises SummarizerUnavailableError so callers can report `missing_key`.
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client: Optional[Client] = None) -> None:
        self.api_key = api_key or os.getenv("XAI_API_KEY")
        self.model = model or os.getenv("GROK_MODEL_FAST", DEFAULT_FAST_MODEL)
        self._client = client

        if self._client is None and self.api_key:
            self._client = Client(api_key=self.api_key)
            logger.info("GrokSummarizer initialized with live API client")
        elif self._client is None:
            logger.warning("GrokSummarizer initialized without XAI_API_KEY")

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    def summarize(
        self,
        match_id: str,
        platform: str,
        phase: str,
        window_minutes: int,
        posts_text: str,
    ) -> SummaryResult:
        """
        Blocking structured chat call.

        Raises:
            SummarizerUnavailableError: No API key configured
            SummaryError: The API call failed
        """
        if not self._client:
            raise SummarizerUnavailableError("XAI_API_KEY is not set on the server.")

        system_prompt, user_prompt = build_prompts(match_id, platform, phase, window_minutes, posts_text)
        start_time_ms = time.time() * 1000

        try:
            chat = self._client.chat.create(model=self.model, max_tokens=600, temperature=0.5)
            chat.append(system(system_prompt))
            chat.append(user(user_prompt))
            response, payload = chat.parse(MatchSummary)
        except Exception as e:
            latency_ms = (time.time() * 1000) - start_time_ms
            logger.error(f"Grok summary call failed: {e}", exc_info=True)
            monitor.metrics.record_summarizer_call(latency_ms, error=True)
            raise SummaryError(f"Grok API call failed: {e}") from e

        latency_ms = (time.time() * 1000) - start_time_ms
        logger.debug(f"Grok summary call successful ({latency_ms:.0f}ms)")
        monitor.metrics.record_summarizer_call(latency_ms, error=False)

        return SummaryResult(summary=payload.summary, model=self.model, usage=_usage_of(response))

    async def summarize_async(
        self,
        match_id: str,
        platform: str,
        phase: str,
        window_minutes: int,
        posts_text: str,
        timeout_seconds: Optional[float] = None,
    ) -> SummaryResult:
        """
        Async version of summarize with an optional timeout.
        Runs the blocking xai-sdk call in a thread pool to avoid blocking the event loop.

        Raises:
            SummaryTimeoutError: The call did not finish within timeout_seconds
        """
        call = asyncio.to_thread(
            self.summarize,
            match_id=match_id,
            platform=platform,
            phase=phase,
            window_minutes=window_minutes,
            posts_text=posts_text,
        )
        if timeout_seconds is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise SummaryTimeoutError(f"Grok did not answer within {timeout_seconds}s", timeout_seconds=timeout_seconds)


__all__ = [
    "GrokSummarizer",
    "MatchSummary",
    "SummaryResult",
    "SummaryError",
    "SummaryTimeoutError",
    "SummarizerUnavailableError",
    "build_prompts",
]
