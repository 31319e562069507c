"""
Unit tests for the summaries request path (SummaryService, AlertNotifier).
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, Mock

import requests

from adapter.grok import SummaryError, SummaryResult, SummaryTimeoutError
from adapter.models import Post, PostAuthor, Profile
from adapter.rate_limiter import create_summary_limiter
from config import SummarySettings
from database import Database, init_db
from selection import Eligibility, SelectedAccount
from services import AlertNotifier, SummaryRequest, SummaryService, normalize_platform
from services.summaries import PLACEHOLDER_TEXT


NOW = datetime(2025, 3, 1, 15, 37, tzinfo=timezone.utc)
KICKOFF_ISO = "2025-03-01T15:00:00Z"


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now


def make_account():
    return SelectedAccount(
        profile=Profile(id="did:plc:fan", handle="fan.bsky.social", display_name="Fan", followers_count=900),
        eligibility=Eligibility(eligible=True, reasons=[]),
    )


def make_posts(n):
    return [
        Post(
            id=f"at://p/{i}",
            author=PostAuthor(id="did:plc:fan", handle="fan.bsky.social"),
            text=f"post {i}",
            created_at=NOW - timedelta(minutes=i),
        )
        for i in range(n)
    ]


@pytest.fixture
def builder():
    builder = Mock()
    builder.collect = AsyncMock(return_value=([make_account()], make_posts(3)))
    return builder


@pytest.fixture
def summarizer():
    summarizer = Mock()
    summarizer.model = "grok-test"
    summarizer.is_configured = True
    summarizer.summarize_async = AsyncMock(return_value=SummaryResult(
        summary="Fans are nervous but upbeat.",
        model="grok-test",
        usage={"prompt_tokens": 100, "completion_tokens": 40, "total_tokens": 140},
    ))
    return summarizer


@pytest.fixture
def notifier():
    notifier = Mock()
    notifier.notify_async = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def database(tmp_path):
    path = tmp_path / "test.sqlite3"
    init_db(db_path=str(path))
    return Database(str(path))


@pytest.fixture
def service(builder, summarizer, notifier, database):
    return SummaryService(
        builders={"bsky": builder},
        summarizer=summarizer,
        rate_limiter=create_summary_limiter(4, 60, clock=FakeClock()),
        settings=SummarySettings(),
        database=database,
        notifier=notifier,
        now=lambda: NOW,
    )


class TestNormalizePlatform:
    """Test platform normalization."""

    def test_known_platforms(self):
        assert normalize_platform("BSKY") == "bsky"
        assert normalize_platform("threads") == "threads"

    def test_unknown_defaults_to_combined(self):
        assert normalize_platform(None) == "combined"
        assert normalize_platform("myspace") == "combined"


class TestSummaryServiceOk:
    """Test the successful path."""

    @pytest.mark.asyncio
    async def test_live_summary(self, service, builder, summarizer, database):
        outcome = await service.latest(SummaryRequest(match_id="ARS-CHE", platform="bsky", kickoff_iso=KICKOFF_ISO))

        assert outcome.http_status == 200
        body = outcome.body
        assert body["phase"] == "live"
        assert body["windowMinutes"] == 7
        assert body["liveBin"] == {"index": 2, "startMinute": 30, "endMinute": 45}
        assert body["summary"] == "Fans are nervous but upbeat."
        assert body["accountsUsed"] == [{"id": "did:plc:fan", "handle": "fan.bsky.social", "displayName": "Fan"}]
        assert body["usage"]["total_tokens"] == 140

        builder.collect.assert_awaited_once_with("ARS-CHE", 7, broaden=False)
        posts_text = summarizer.summarize_async.call_args[1]["posts_text"]
        assert posts_text.splitlines()[0].endswith("@fan.bsky.social: post 0")

        rows = database.get_recent_summary_requests(NOW - timedelta(hours=1), limit=10)
        assert rows[0]["status"] == "ok"
        assert rows[0]["posts_count"] == 3
        assert rows[0]["total_tokens"] == 140

    @pytest.mark.asyncio
    async def test_explicit_mode_wins(self, service):
        outcome = await service.latest(SummaryRequest(match_id="m", platform="bsky", kickoff_iso=KICKOFF_ISO, mode="pre"))

        assert outcome.body["phase"] == "pre"
        assert outcome.body["liveBin"] is None

    @pytest.mark.asyncio
    async def test_no_kickoff_defaults(self, service):
        outcome = await service.latest(SummaryRequest(match_id="m", platform="bsky", kickoff_iso="garbage"))

        assert outcome.body["phase"] == "live"
        assert outcome.body["windowMinutes"] == 15
        assert outcome.body["liveBin"] is None

    @pytest.mark.asyncio
    async def test_combined_reads_bluesky(self, service, builder):
        outcome = await service.latest(SummaryRequest(match_id="m"))

        assert outcome.body["platform"] == "combined"
        builder.collect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_platform_without_feed_uses_placeholder(self, service, summarizer, builder):
        outcome = await service.latest(SummaryRequest(match_id="m", platform="threads"))

        assert outcome.http_status == 200
        assert summarizer.summarize_async.call_args[1]["posts_text"] == PLACEHOLDER_TEXT
        builder.collect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_budget_applied(self, service, builder, summarizer):
        service.settings = SummarySettings(model_max_tokens=1000, reserved_response_tokens=600, chars_per_token=1)
        builder.collect.return_value = ([make_account()], make_posts(50))

        await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        assert len(summarizer.summarize_async.call_args[1]["posts_text"]) <= 400

    @pytest.mark.asyncio
    async def test_ok_is_not_alerted(self, service, notifier):
        await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        notifier.notify_async.assert_not_awaited()


class TestSummaryServiceFailures:
    """Test non-ok statuses, audit and alerts."""

    @pytest.mark.asyncio
    async def test_rate_limited(self, service, builder, notifier, database):
        service.rate_limiter = create_summary_limiter(1, 60, clock=FakeClock(start=15))
        await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        outcome = await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        assert outcome.http_status == 429
        assert outcome.body == {"error": "rate_limited", "retryAfterMs": 45000}
        assert outcome.retry_after_seconds == 45
        assert builder.collect.await_count == 1
        notifier.notify_async.assert_awaited_once()
        assert database.get_summary_status_counts(NOW - timedelta(hours=1))["rate_limited"] == 1

    @pytest.mark.asyncio
    async def test_missing_key(self, service, summarizer, builder):
        summarizer.is_configured = False

        outcome = await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        assert outcome.http_status == 500
        assert outcome.body["error"] == "missing_api_key"
        builder.collect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout(self, service, summarizer, notifier, database):
        summarizer.summarize_async.side_effect = SummaryTimeoutError("slow", timeout_seconds=15)

        outcome = await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        assert outcome.http_status == 504
        assert outcome.body == {"error": "summarizer_timeout", "timeoutMs": 15000}
        assert "summarizer_timeout" in notifier.notify_async.call_args[0][0]
        assert database.get_recent_summary_requests(NOW - timedelta(hours=1))[0]["status"] == "timeout"

    @pytest.mark.asyncio
    async def test_failed(self, service, summarizer, database):
        summarizer.summarize_async.side_effect = SummaryError("Grok API call failed: 500")

        outcome = await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        assert outcome.http_status == 500
        assert outcome.body["error"] == "summary_failed"
        row = database.get_recent_summary_requests(NOW - timedelta(hours=1))[0]
        assert row["status"] == "failed"
        assert "500" in row["error_message"]

    @pytest.mark.asyncio
    async def test_alert_failure_does_not_fail_request(self, service, summarizer, notifier):
        summarizer.is_configured = False
        notifier.notify_async.side_effect = RuntimeError("webhook down")

        outcome = await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        assert outcome.http_status == 500
        assert outcome.status == "missing_key"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_request(self, service):
        service.database = Mock()
        service.database.record_summary_request.side_effect = RuntimeError("disk full")

        outcome = await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        assert outcome.http_status == 200


class TestSummaryMetrics:
    """Test audit aggregation."""

    @pytest.mark.asyncio
    async def test_metrics_and_recent(self, service, summarizer):
        await service.latest(SummaryRequest(match_id="m", platform="bsky"))
        summarizer.summarize_async.side_effect = SummaryError("boom")
        await service.latest(SummaryRequest(match_id="m", platform="bsky"))

        metrics = service.get_metrics(hours=1)

        assert metrics["total"] == 2
        assert metrics["counts"]["ok"] == 1
        assert metrics["counts"]["failed"] == 1
        assert metrics["success_rate"] == 0.5
        assert len(service.get_recent(limit=10, hours=1)) == 2
        assert [r["status"] for r in service.get_recent(status="failed", hours=1)] == ["failed"]

    def test_no_database(self, builder, summarizer):
        service = SummaryService({"bsky": builder}, summarizer, create_summary_limiter(1, 60), now=lambda: NOW)

        assert service.get_recent() == []
        assert service.get_metrics()["total"] == 0


class TestAlertNotifier:
    """Test the webhook notifier."""

    def test_not_configured_is_noop(self):
        session = Mock()
        notifier = AlertNotifier(webhook_url=None, session=session)

        assert notifier.notify("hello") is False
        session.post.assert_not_called()

    def test_posts_text(self):
        session = Mock()
        session.post.return_value = Mock(status_code=200)
        notifier = AlertNotifier(webhook_url="https://hooks.test/x", session=session)

        assert notifier.notify("[summaries/latest] timeout") is True
        session.post.assert_called_once_with(
            "https://hooks.test/x", json={"text": "[summaries/latest] timeout"}, timeout=5
        )

    def test_delivery_failure_is_soft(self):
        session = Mock()
        session.post.side_effect = requests.exceptions.ConnectionError()
        notifier = AlertNotifier(webhook_url="https://hooks.test/x", session=session)

        assert notifier.notify("x") is False

    def test_http_error_is_soft(self):
        session = Mock()
        session.post.return_value = Mock(status_code=500)
        notifier = AlertNotifier(webhook_url="https://hooks.test/x", session=session)

        assert notifier.notify("x") is False
