"""
Ops alert notifier for the summaries path.

Posts a short text message to a Slack-compatible incoming webhook. Alerting
is fail-soft: a missing webhook is a no-op and delivery failures are logged,
never raised to the request being alerted about.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import requests

from monitoring import EventType, monitor

logger = logging.getLogger(__name__)


class AlertNotifier:
    """
    Usage:
        notifier = AlertNotifier(webhook_url=os.environ.get("SUMMARIES_ALERTS_WEBHOOK_URL"))
        await notifier.notify_async("[summaries/latest] rate_limited: retry in 12s")
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5, session: Optional[requests.Session] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    def notify(self, text: str) -> bool:
        """Send one alert. Returns True when the webhook accepted it."""
        if not self.webhook_url:
            logger.debug(f"Alert not sent (no webhook configured): {text}")
            return False

        try:
            response = self.session.post(self.webhook_url, json={"text": text}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Alert delivery failed: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(f"Alert webhook returned {response.status_code}")
            return False

        monitor.activity.add_event(EventType.ALERT_SENT, text=text[:200])
        return True

    async def notify_async(self, text: str) -> bool:
        """Async version of notify (runs the blocking POST in a thread)."""
        return await asyncio.to_thread(self.notify, text)


__all__ = ["AlertNotifier"]
