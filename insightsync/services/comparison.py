"""
Period Comparison Service

This module compares analytics snapshots period over period and classifies
the overall trend by majority vote across the tracked metrics.
"""

from typing import Dict, Optional

import structlog

from insightsync.integrations.storage import AnalyticsStorage
from insightsync.models.analytics import (
    AnalyticsSnapshot,
    ComparisonResult,
    MetricChange,
    MetricTrend,
    Platform,
    SnapshotKind,
    Trend,
)
from insightsync.services.cache import AnalyticsCache
from insightsync.services.normalizer import COUNTER_FIELDS

COMPARED_METRICS = COUNTER_FIELDS + ("engagement_rate",)
TREND_METRICS = ("engagement_rate", "reach", "impressions")
TREND_MAJORITY = 2
STABLE_TOLERANCE = 0.01


def percent_change(current: float, previous: float) -> float:
    """Percentage change rounded to two decimals; 100 when growing from zero."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100, 2)


def metric_trend(current: float, previous: float) -> MetricTrend:
    difference = current - previous
    if abs(difference) < STABLE_TOLERANCE:
        return MetricTrend.STABLE
    return MetricTrend.UP if difference > 0 else MetricTrend.DOWN


def compare(current: AnalyticsSnapshot, previous: AnalyticsSnapshot) -> ComparisonResult:
    """
    Compute per-metric changes between two snapshots.

    The overall trend is improving when at least two of engagement rate,
    reach and impressions went up, declining when at least two went down,
    and stable otherwise.
    """
    metrics: Dict[str, MetricChange] = {}
    for name in COMPARED_METRICS:
        current_value = getattr(current, name)
        previous_value = getattr(previous, name)
        metrics[name] = MetricChange(
            current=current_value,
            previous=previous_value,
            absolute_change=round(current_value - previous_value, 2),
            change_percent=percent_change(current_value, previous_value),
            trend=metric_trend(current_value, previous_value),
        )

    improving = [name for name in TREND_METRICS if metrics[name].trend == MetricTrend.UP]
    declining = [name for name in TREND_METRICS if metrics[name].trend == MetricTrend.DOWN]

    if len(improving) >= TREND_MAJORITY:
        trend = Trend.IMPROVING
    elif len(declining) >= TREND_MAJORITY:
        trend = Trend.DECLINING
    else:
        trend = Trend.STABLE

    return ComparisonResult(
        subject_id=current.subject_id,
        metrics=metrics,
        trend=trend,
        improving_metrics=improving,
        declining_metrics=declining,
        current_recorded_at=current.recorded_at,
        previous_recorded_at=previous.recorded_at,
    )


class ComparisonService:
    """Cached comparisons over stored account snapshots."""

    def __init__(self, storage: AnalyticsStorage, cache: AnalyticsCache):
        self.storage = storage
        self.cache = cache
        self.logger = structlog.get_logger(__name__)

    async def get_account_comparison(
        self,
        account_id: str,
        platform: Optional[Platform] = None,
    ) -> Optional[ComparisonResult]:
        """
        Compare the two most recent account snapshots.

        Returns:
            Comparison, or None when fewer than two snapshots exist
        """
        key = self.cache.make_key(account_id, platform, view="comparison")

        async def fetch() -> Optional[ComparisonResult]:
            current = await self.storage.find_latest_snapshot(account_id, SnapshotKind.ACCOUNT)
            previous = None
            if current is not None:
                previous = await self.storage.find_latest_snapshot(
                    account_id, SnapshotKind.ACCOUNT, before=current.recorded_at
                )
            if current is None or previous is None:
                self.logger.info("Not enough history to compare", account_id=account_id)
                return None
            return compare(current, previous)

        return await self.cache.get_or_fetch(key, fetch)
