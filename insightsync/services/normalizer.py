"""
Analytics Normalizer

This module converts platform-specific insight payloads into
``AnalyticsSnapshot`` objects and provides the pure helpers built on them:
- Per-platform metric extraction
- Fallback estimation when reach and impressions are unavailable
- Invariant validation, aggregation and anomaly detection
- Data quality scoring from fetch-success ratios
"""

from dataclasses import dataclass
from datetime import datetime
from statistics import mean
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from insightsync.integrations.base import parse_insights
from insightsync.models.analytics import (
    AnalyticsSnapshot,
    AnomalyFinding,
    AnomalyReport,
    AnomalySeverity,
    DataQuality,
    DataSource,
    Platform,
    SnapshotKind,
    as_utc,
    utc_now,
)
from insightsync.utils.error_handling import SnapshotValidationError

logger = structlog.get_logger(__name__)

# Empirical approximations used when a platform returns no reach or
# impressions for a post. Not a verified formula; recalibrate against real data.
FALLBACK_REACH_MULTIPLIER = 8
FALLBACK_IMPRESSIONS_MULTIPLIER = 1.5
FALLBACK_MIN_REACH = 50

COUNTER_FIELDS = ("views", "likes", "comments", "shares", "saves", "clicks", "reach", "impressions")

ENGAGEMENT_FIELDS: Dict[Platform, Sequence[str]] = {
    Platform.INSTAGRAM: ("likes", "comments", "shares", "saves"),
    Platform.FACEBOOK: ("likes", "comments", "shares", "clicks"),
}
DEFAULT_ENGAGEMENT_FIELDS = ("likes", "comments", "shares", "saves")

# Anomaly thresholds
MIN_HISTORY_POINTS = 3
SPIKE_RATIO = 3.0
DROP_RATIO = 0.5
ENGAGEMENT_SHIFT_POINTS = 5.0
ENGAGEMENT_SHIFT_MIN_AVERAGE = 1.0
ANOMALY_METRICS = (
    # (metric, minimum historical mean before a drop is reported)
    ("views", 100),
    ("likes", 10),
    ("comments", 5),
    ("reach", 100),
)


@dataclass
class ExtractedMetrics:
    """Counters pulled out of one platform payload."""
    views: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    saves: int = 0
    clicks: int = 0
    reach: Optional[int] = None
    impressions: Optional[int] = None


def start_of_day(moment: datetime) -> datetime:
    """Truncate to UTC midnight. Naive datetimes are taken as UTC."""
    return as_utc(moment).replace(hour=0, minute=0, second=0, microsecond=0)


def _payload_metrics(raw_payload: Dict[str, Any]) -> Dict[str, int]:
    metrics = raw_payload.get("metrics")
    if isinstance(metrics, dict):
        return {name: int(value or 0) for name, value in metrics.items()}
    return parse_insights(raw_payload.get("insights") or [])


def _summary_count(media: Dict[str, Any], edge: str) -> int:
    value = media.get(edge)
    if isinstance(value, dict):
        summary = value.get("summary") or {}
        return int(summary.get("total_count") or value.get("count") or 0)
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _extract_instagram(raw_payload: Dict[str, Any]) -> ExtractedMetrics:
    metrics = _payload_metrics(raw_payload)
    media = raw_payload.get("media") or {}

    views = metrics.get("views", metrics.get("impressions"))
    return ExtractedMetrics(
        views=views or 0,
        likes=metrics.get("likes", int(media.get("like_count") or 0)),
        comments=metrics.get("comments", int(media.get("comments_count") or 0)),
        shares=metrics.get("shares", 0),
        saves=metrics.get("saved", metrics.get("saves", 0)),
        reach=metrics.get("reach"),
        impressions=views,
    )


def _extract_facebook(raw_payload: Dict[str, Any]) -> ExtractedMetrics:
    metrics = _payload_metrics(raw_payload)
    media = raw_payload.get("media") or {}

    reaction_values = [
        value for name, value in metrics.items()
        if name.startswith("post_reactions_") and name.endswith("_total")
    ]
    likes = sum(reaction_values) if reaction_values else (
        _summary_count(media, "reactions") or _summary_count(media, "likes")
    )
    impressions = metrics.get("post_impressions")
    return ExtractedMetrics(
        views=impressions or 0,
        likes=likes,
        comments=_summary_count(media, "comments"),
        shares=_summary_count(media, "shares"),
        clicks=metrics.get("post_clicks", 0),
        reach=metrics.get("post_impressions_unique"),
        impressions=impressions,
    )


EXTRACTORS: Dict[Platform, Callable[[Dict[str, Any]], ExtractedMetrics]] = {
    Platform.INSTAGRAM: _extract_instagram,
    Platform.FACEBOOK: _extract_facebook,
}


def engagement_total(platform: Platform, counters: Any) -> int:
    """Sum the interactions a platform counts as engagement."""
    fields = ENGAGEMENT_FIELDS.get(platform, DEFAULT_ENGAGEMENT_FIELDS)
    return sum(getattr(counters, field) for field in fields)


def engagement_rate(engagement: int, reach: int) -> float:
    """Engagement as a percentage of reach, two decimals; zero without reach."""
    if reach <= 0:
        return 0.0
    return round(engagement / reach * 100, 2)


def assess_data_quality(successful: int, total: int) -> DataQuality:
    """Map a fetch-success ratio onto a quality tier."""
    if total <= 0:
        return DataQuality.BASIC
    ratio = successful / total
    if ratio >= 0.8:
        return DataQuality.EXCELLENT
    if ratio >= 0.6:
        return DataQuality.GOOD
    if ratio >= 0.3:
        return DataQuality.LIMITED
    return DataQuality.BASIC


def normalize(
    raw_payload: Dict[str, Any],
    platform: Platform,
    kind: SnapshotKind = SnapshotKind.POST,
    subject_id: Optional[str] = None,
    recorded_at: Optional[datetime] = None,
    data_quality: DataQuality = DataQuality.EXCELLENT,
) -> AnalyticsSnapshot:
    """
    Convert one platform payload into a snapshot.

    Args:
        raw_payload: ``{"metrics": {...}}`` or ``{"insights": [...]}`` plus
            the listing entry under ``"media"``
        platform: Source platform, selecting the extractor
        kind: Measured subject type
        subject_id: Identifier; defaults to the media ``id``
        recorded_at: Measurement time, truncated to the start of its UTC day
        data_quality: Quality tier of the fetch

    Returns:
        Normalized snapshot; estimated reach is tagged ``data_source=fallback``
    """
    try:
        extractor = EXTRACTORS[platform]
    except KeyError:
        raise ValueError(f"No extractor registered for platform {platform.value}") from None

    extracted = extractor(raw_payload)
    engagement = engagement_total(platform, extracted)

    if extracted.reach is None and extracted.impressions is None:
        if engagement > 0:
            reach = max(engagement * FALLBACK_REACH_MULTIPLIER, engagement)
        else:
            reach = FALLBACK_MIN_REACH
        impressions = round(reach * FALLBACK_IMPRESSIONS_MULTIPLIER)
        data_source = DataSource.FALLBACK
        data_quality = DataQuality.BASIC
    else:
        reach = extracted.reach if extracted.reach is not None else extracted.impressions
        impressions = extracted.impressions if extracted.impressions is not None else reach
        data_source = DataSource.INSIGHTS

    media = raw_payload.get("media") or {}
    return AnalyticsSnapshot(
        subject_id=subject_id or str(media.get("id") or raw_payload.get("id") or ""),
        platform=platform,
        kind=kind,
        views=extracted.views or impressions,
        likes=extracted.likes,
        comments=extracted.comments,
        shares=extracted.shares,
        saves=extracted.saves,
        clicks=extracted.clicks,
        reach=reach,
        impressions=impressions,
        engagement_rate=engagement_rate(engagement, reach),
        recorded_at=start_of_day(recorded_at or utc_now()),
        raw_payload=raw_payload,
        data_quality=data_quality,
        data_source=data_source,
    )


def validate(snapshot: AnalyticsSnapshot) -> Optional[SnapshotValidationError]:
    """Check snapshot invariants, reporting every violated rule."""
    violations: List[str] = []

    if not snapshot.subject_id or not snapshot.subject_id.strip():
        violations.append("subject_id is required")

    for field in COUNTER_FIELDS:
        value = getattr(snapshot, field)
        if value < 0:
            violations.append(f"{field} must be non-negative (got {value})")

    if not 0 <= snapshot.engagement_rate <= 100:
        violations.append(
            f"engagement_rate must be between 0 and 100 (got {snapshot.engagement_rate})"
        )

    if snapshot.impressions > 0 and snapshot.reach > snapshot.impressions:
        violations.append(
            f"reach ({snapshot.reach}) exceeds impressions ({snapshot.impressions})"
        )

    engagement = engagement_total(snapshot.platform, snapshot)
    if snapshot.reach > 0 and engagement > snapshot.reach:
        logger.warning(
            "Engagement exceeds reach",
            subject_id=snapshot.subject_id,
            engagement=engagement,
            reach=snapshot.reach,
        )

    if violations:
        return SnapshotValidationError(
            snapshot.subject_id,
            violations,
            platform=snapshot.platform.value,
        )
    return None


def aggregate(snapshots: Sequence[AnalyticsSnapshot]) -> Optional[AnalyticsSnapshot]:
    """
    Roll several snapshots into one.

    Counters are summed except reach, which takes the maximum. The
    engagement rate is recomputed from the totals and capped at 100 since
    summed engagement over the widest single reach can exceed it.
    """
    if not snapshots:
        return None

    first = snapshots[0]
    latest = max(snapshots, key=lambda snapshot: snapshot.recorded_at)
    totals = {
        field: sum(getattr(snapshot, field) for snapshot in snapshots)
        for field in COUNTER_FIELDS
        if field != "reach"
    }
    reach = max(snapshot.reach for snapshot in snapshots)

    rollup = AnalyticsSnapshot(
        subject_id=first.subject_id,
        platform=first.platform,
        kind=first.kind,
        reach=reach,
        recorded_at=latest.recorded_at,
        raw_payload={"aggregated_from": len(snapshots)},
        data_quality=DataQuality.worst([snapshot.data_quality for snapshot in snapshots]),
        data_source=(
            DataSource.FALLBACK
            if any(snapshot.is_fallback for snapshot in snapshots)
            else DataSource.INSIGHTS
        ),
        **totals,
    )
    rollup.engagement_rate = min(
        engagement_rate(engagement_total(rollup.platform, rollup), reach), 100.0
    )
    return rollup


def detect_anomalies(
    current: AnalyticsSnapshot,
    historical: Sequence[AnalyticsSnapshot],
) -> AnomalyReport:
    """
    Compare a snapshot with the mean of its history.

    Requires at least three historical points. Each watched metric is
    checked independently for spikes (above 3x the mean) and drops (below
    half the mean once the mean clears a floor).
    """
    if len(historical) < MIN_HISTORY_POINTS:
        return AnomalyReport()

    findings: List[AnomalyFinding] = []

    for metric, drop_floor in ANOMALY_METRICS:
        baseline = mean(getattr(snapshot, metric) for snapshot in historical)
        value = getattr(current, metric)
        if baseline > 0 and value > baseline * SPIKE_RATIO:
            findings.append(AnomalyFinding(
                metric=metric,
                kind="spike",
                current=value,
                baseline=round(baseline, 2),
                message=f"{metric} spiked to {value} against an average of {baseline:.0f}",
            ))
        elif baseline > drop_floor and value < baseline * DROP_RATIO:
            findings.append(AnomalyFinding(
                metric=metric,
                kind="drop",
                current=value,
                baseline=round(baseline, 2),
                message=f"{metric} dropped to {value} against an average of {baseline:.0f}",
            ))

    baseline_rate = mean(snapshot.engagement_rate for snapshot in historical)
    if (
        baseline_rate > ENGAGEMENT_SHIFT_MIN_AVERAGE
        and abs(current.engagement_rate - baseline_rate) > ENGAGEMENT_SHIFT_POINTS
    ):
        findings.append(AnomalyFinding(
            metric="engagement_rate",
            kind="shift",
            current=current.engagement_rate,
            baseline=round(baseline_rate, 2),
            message=(
                f"engagement rate moved to {current.engagement_rate}% "
                f"from an average of {baseline_rate:.2f}%"
            ),
        ))

    if len(findings) > 2:
        severity = AnomalySeverity.HIGH
    elif findings:
        severity = AnomalySeverity.MEDIUM
    else:
        severity = AnomalySeverity.LOW

    return AnomalyReport(has_anomalies=bool(findings), findings=findings, severity=severity)
