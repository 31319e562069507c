"""
Services module for the match analytics backend.
"""

from .alerts import AlertNotifier
from .summaries import SummaryOutcome, SummaryRequest, SummaryService, normalize_platform

__all__ = [
    "AlertNotifier",
    "SummaryService",
    "SummaryRequest",
    "SummaryOutcome",
    "normalize_platform",
]
