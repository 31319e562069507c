"""
Match Pulse Backend - Main FastAPI Application

Run with:
    uvicorn main:app --reload --port 8000
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from adapter.bsky import BskyAdapter
from adapter.grok import GrokSummarizer
from adapter.rate_limiter import create_feed_limiter, create_summary_limiter
from adapter.x import XAdapter
from analytics import get_default_scorer
from api import router, set_dependencies, set_rate_limiters
from config import env_list, load_platform_configs, load_stream_settings, load_summary_settings
from core import TickBuilder
from database import Database, init_db
from monitoring import monitor
from selection import AccountSelector, SqliteOverrideStore
from services import AlertNotifier, SummaryService

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class RequestMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware to monitor FastAPI requests."""

    async def dispatch(self, request: Request, call_next) -> Response:
        # Skip monitoring for the root and docs
        if request.url.path in ["/", "/docs", "/redoc", "/openapi.json"]:
            return await call_next(request)

        # Normalize endpoint name (remove /api/v1 prefix)
        endpoint = request.url.path.replace("/api/v1", "") or "/"

        try:
            response = await call_next(request)
        except Exception:
            monitor.metrics.record_request(endpoint, error=True)
            raise

        # Mark as error for 5xx status codes
        monitor.metrics.record_request(endpoint, error=response.status_code >= 500)
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - setup and teardown.
    """
    db_path = init_db()
    database = Database(str(db_path))

    logger.info("Starting Match Pulse backend...")

    platform_configs = load_platform_configs()
    stream_settings = load_stream_settings()
    summary_settings = load_summary_settings()

    # Feed sources share one limiter (AppView and X API budgets)
    feed_limiter = create_feed_limiter()
    adapters = {
        "bsky": BskyAdapter(rate_limiter=feed_limiter),
        "twitter": XAdapter(bearer_token=os.environ.get("X_BEARER_TOKEN"), rate_limiter=feed_limiter),
    }

    override_store = SqliteOverrideStore(database)
    scorer = get_default_scorer()
    builders = {
        platform: TickBuilder(
            AccountSelector(platform_configs[platform], adapter, override_store),
            adapter,
            scorer=scorer,
        )
        for platform, adapter in adapters.items()
    }

    summarizer = GrokSummarizer()
    summary_limiter = create_summary_limiter(summary_settings.rate_max, summary_settings.rate_window_seconds)
    notifier = AlertNotifier(webhook_url=summary_settings.alerts_webhook_url)
    summary_service = SummaryService(
        builders=builders,
        summarizer=summarizer,
        rate_limiter=summary_limiter,
        settings=summary_settings,
        database=database,
        notifier=notifier,
    )

    # Log adapter status
    x_adapter = adapters["twitter"]
    if x_adapter.is_configured:
        logger.info("✓ X Adapter configured")
    else:
        logger.warning("⚠ X Adapter not configured - set X_BEARER_TOKEN")

    if summarizer.is_configured:
        logger.info(f"✓ Grok summarizer live ({summarizer.model})")
    else:
        logger.warning("⚠ Grok summarizer not configured - set XAI_API_KEY")

    if not notifier.is_configured:
        logger.info("ℹ Summaries alerts disabled (set SUMMARIES_ALERTS_WEBHOOK_URL to enable)")

    # Set dependencies for API routes
    set_dependencies(builders, summary_service, stream_settings)
    set_rate_limiters(feeds=feed_limiter, summaries=summary_limiter)

    # Configure monitoring
    monitor.set_component_status("bsky_adapter", "healthy", {"base_url": adapters["bsky"].base_url})
    monitor.set_component_status(
        "x_adapter",
        "healthy" if x_adapter.is_configured else "warning",
        {"configured": x_adapter.is_configured}
    )
    monitor.set_component_status(
        "summarizer",
        "healthy" if summarizer.is_configured else "warning",
        {"configured": summarizer.is_configured, "model": summarizer.model}
    )
    monitor.set_component_status("database", "healthy", {"path": str(db_path)})

    logger.info("📊 Monitoring available at /api/v1/monitor/*")
    logger.info(
        f"Streams: interval {stream_settings.interval_seconds}s, heartbeat {stream_settings.heartbeat_seconds}s, "
        f"cap {stream_settings.max_duration_seconds}s"
    )
    logger.info("Match Pulse backend ready!")

    yield

    logger.info("Shutting down Match Pulse backend...")
    for adapter in adapters.values():
        adapter.session.close()
    notifier.session.close()


# Create FastAPI app
app = FastAPI(
    title="Match Pulse API",
    description="Live football fan-sentiment analytics over Bluesky and X, with Grok summaries",
    version="1.0.0",
    lifespan=lifespan,
)

# Request monitoring middleware
app.add_middleware(RequestMonitoringMiddleware)

# The dashboard frontend reads the SSE stream cross-origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=env_list("CORS_ORIGINS", ["*"]),
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
    expose_headers=["Retry-After"],
)

# Include API routes
app.include_router(router)


# Root endpoint
@app.get("/")
async def root():
    return {"name": "Match Pulse API", "version": "1.0.0", "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=True,
    )
