"""
Analytics Data Models and Schemas

This module contains the platform-agnostic analytics models shared by the
fetchers, the normalizer and the sync orchestrator, together with the job
and result shapes exchanged with callers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Convert to UTC. Naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class Platform(str, Enum):
    """Supported social media platforms."""
    INSTAGRAM = "INSTAGRAM"
    FACEBOOK = "FACEBOOK"


class SnapshotKind(str, Enum):
    """What a snapshot measures."""
    ACCOUNT = "ACCOUNT"
    POST = "POST"
    STORY = "STORY"


class DataQuality(str, Enum):
    """Data quality tier derived from the fetch-success ratio."""
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    LIMITED = "LIMITED"
    BASIC = "BASIC"

    @property
    def rank(self) -> int:
        """Higher is better."""
        return _QUALITY_RANK[self]

    @classmethod
    def worst(cls, qualities: List["DataQuality"]) -> "DataQuality":
        """Lowest tier among the given qualities."""
        if not qualities:
            return cls.BASIC
        return min(qualities, key=lambda quality: quality.rank)


_QUALITY_RANK = {
    DataQuality.BASIC: 0,
    DataQuality.LIMITED: 1,
    DataQuality.GOOD: 2,
    DataQuality.EXCELLENT: 3,
}


class DataSource(str, Enum):
    """Origin of reach and impression figures."""
    INSIGHTS = "insights"
    FALLBACK = "fallback"


class SyncType(str, Enum):
    """Sync run type."""
    INITIAL = "INITIAL"
    INCREMENTAL = "INCREMENTAL"
    DAILY = "DAILY"


class SyncStatus(str, Enum):
    """Outcome recorded in the sync log."""
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Trend(str, Enum):
    """Overall period-over-period direction."""
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class MetricTrend(str, Enum):
    """Direction of a single metric."""
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class AnomalySeverity(str, Enum):
    """Severity of an anomaly report."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AnalyticsSnapshot(BaseModel):
    """One normalized measurement of an account or post at a point in time."""

    subject_id: str = Field(..., description="Account or post identifier")
    platform: Platform = Field(..., description="Source platform")
    kind: SnapshotKind = Field(default=SnapshotKind.POST, description="Measured subject type")

    # Counters
    views: int = Field(default=0, description="Total view events")
    likes: int = Field(default=0, description="Likes or reactions")
    comments: int = Field(default=0, description="Comment count")
    shares: int = Field(default=0, description="Share count")
    saves: int = Field(default=0, description="Saves/bookmarks")
    clicks: int = Field(default=0, description="Link and post clicks")
    reach: int = Field(default=0, description="Unique viewers")
    impressions: int = Field(default=0, description="Total impressions")

    # Derived
    engagement_rate: float = Field(default=0.0, description="Engagement as a percentage of reach")

    recorded_at: datetime = Field(..., description="Start of the measured day (UTC)")
    raw_payload: Dict[str, Any] = Field(default_factory=dict, description="Upstream payload for audit")
    data_quality: DataQuality = Field(default=DataQuality.EXCELLENT, description="Data quality tier")
    data_source: DataSource = Field(default=DataSource.INSIGHTS, description="Reach/impressions origin")

    @property
    def is_fallback(self) -> bool:
        return self.data_source == DataSource.FALLBACK


class MediaItem(BaseModel):
    """A post or story returned by a platform media listing."""

    id: str = Field(..., description="Platform media identifier")
    platform: Platform = Field(..., description="Source platform")
    kind: SnapshotKind = Field(default=SnapshotKind.POST, description="Post or story")
    published_at: Optional[datetime] = Field(default=None, description="Publication time")
    caption: Optional[str] = Field(default=None, description="Caption or message text")
    media_type: Optional[str] = Field(default=None, description="IMAGE, VIDEO, CAROUSEL_ALBUM, ...")
    media_url: Optional[str] = Field(default=None, description="Media or thumbnail URL")
    permalink: Optional[str] = Field(default=None, description="Public URL")
    raw: Dict[str, Any] = Field(default_factory=dict, description="Listing payload")


class RawInsights(BaseModel):
    """Per-media insights as returned by the first accepted metric set."""

    media_id: str = Field(..., description="Platform media identifier")
    platform: Platform = Field(..., description="Source platform")
    metrics: Dict[str, int] = Field(default_factory=dict, description="Metric name to value")
    metric_set: List[str] = Field(default_factory=list, description="Metric set that succeeded")
    tier: int = Field(default=0, description="Index of the metric set that succeeded")
    data: List[Dict[str, Any]] = Field(default_factory=list, description="Raw insights entries")


class AccountInsights(BaseModel):
    """Account-level figures for one profile."""

    platform: Platform = Field(..., description="Source platform")
    profile_id: str = Field(..., description="Platform profile or page identifier")
    username: Optional[str] = Field(default=None, description="Handle or page name")
    followers_count: int = Field(default=0, description="Followers or page fans")
    media_count: int = Field(default=0, description="Published media count")
    profile_views: int = Field(default=0, description="Profile visits in the period")
    website_clicks: int = Field(default=0, description="Website clicks in the period")
    reach: int = Field(default=0, description="Unique reach in the period")
    reach_strategy: str = Field(default="none", description="Reach strategy that succeeded")
    period: str = Field(default="day", description="Requested insights period")
    warnings: List[str] = Field(default_factory=list, description="Non-fatal fetch problems")
    raw: Dict[str, Any] = Field(default_factory=dict, description="Raw responses")


class TokenValidation(BaseModel):
    """Result of an access token check."""

    is_valid: bool
    user_id: Optional[str] = None
    name: Optional[str] = None
    error: Optional[str] = None


class PlatformCredentials(BaseModel):
    """Credentials supplied by the credential source."""

    access_token: str = Field(..., description="Graph API access token")
    platform: Platform = Field(..., description="Platform the token belongs to")
    refresh_token: Optional[str] = Field(default=None, description="Refresh token if issued")
    expires_at: Optional[datetime] = Field(default=None, description="Token expiry")
    profile_id: Optional[str] = Field(default=None, description="Platform profile or page ID")

    @property
    def has_token(self) -> bool:
        return bool(self.access_token and self.access_token.strip())


class SocialAccount(BaseModel):
    """A connected social account owned by the storage collaborator."""

    id: str = Field(..., description="Internal account identifier")
    platform: Platform = Field(..., description="Account platform")
    profile_id: str = Field(..., description="Platform profile or page ID")
    username: Optional[str] = Field(default=None, description="Handle or page name")
    team_id: Optional[str] = Field(default=None, description="Owning team")
    is_active: bool = Field(default=True, description="Whether syncs should run")


class PostRecord(BaseModel):
    """Stored post metadata."""

    id: str = Field(..., description="Internal post identifier")
    account_id: str = Field(..., description="Owning account")
    platform: Platform = Field(..., description="Source platform")
    platform_post_id: str = Field(..., description="Platform media identifier")
    kind: SnapshotKind = Field(default=SnapshotKind.POST, description="Post or story")
    caption: Optional[str] = None
    media_type: Optional[str] = None
    media_url: Optional[str] = None
    permalink: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


class AccountRollup(BaseModel):
    """Daily account-level figures and post aggregates."""

    account_id: str = Field(..., description="Internal account identifier")
    platform: Platform = Field(..., description="Account platform")
    recorded_at: datetime = Field(..., description="Start of the measured day (UTC)")

    followers_count: int = Field(default=0)
    media_count: int = Field(default=0)
    profile_views: int = Field(default=0)
    website_clicks: int = Field(default=0)
    reach: int = Field(default=0)

    # Post aggregates over the lookback window
    posts_analyzed: int = Field(default=0)
    total_views: int = Field(default=0)
    total_likes: int = Field(default=0)
    total_comments: int = Field(default=0)
    total_shares: int = Field(default=0)
    total_saves: int = Field(default=0)
    avg_views_per_post: float = Field(default=0.0)
    avg_likes_per_post: float = Field(default=0.0)
    avg_comments_per_post: float = Field(default=0.0)
    engagement_rate: float = Field(default=0.0, description="Engagement as a percentage of views")

    deltas: Dict[str, float] = Field(default_factory=dict, description="Change versus the previous rollup")
    data_quality: DataQuality = Field(default=DataQuality.BASIC)


class SyncState(BaseModel):
    """Append-only sync log entry."""

    account_id: str
    sync_type: SyncType
    status: SyncStatus
    last_sync_at: datetime
    posts_processed: int = 0
    analytics_updated: int = 0
    errors: List[str] = Field(default_factory=list)
    execution_time_ms: int = 0

    model_config = {"frozen": True}


class MetricChange(BaseModel):
    """Period-over-period change for one metric."""

    current: float
    previous: float
    absolute_change: float
    change_percent: float
    trend: MetricTrend


class ComparisonResult(BaseModel):
    """Comparison of two snapshots."""

    subject_id: str
    metrics: Dict[str, MetricChange] = Field(default_factory=dict)
    trend: Trend = Trend.STABLE
    improving_metrics: List[str] = Field(default_factory=list)
    declining_metrics: List[str] = Field(default_factory=list)
    current_recorded_at: Optional[datetime] = None
    previous_recorded_at: Optional[datetime] = None


class AnomalyFinding(BaseModel):
    """One metric deviating from its historical mean."""

    metric: str
    kind: str = Field(..., description="spike, drop or shift")
    current: float
    baseline: float
    message: str


class AnomalyReport(BaseModel):
    """Anomalies found for one snapshot."""

    has_anomalies: bool = False
    findings: List[AnomalyFinding] = Field(default_factory=list)
    severity: AnomalySeverity = AnomalySeverity.LOW


class RateLimitInfo(BaseModel):
    """Current state of one rate-limit window."""

    key: str
    limit: int
    remaining: int
    window_seconds: int
    reset_in_seconds: float
    queued: int = 0


class InitialSyncJob(BaseModel):
    """Job data for an initial backfill."""

    account_id: str
    platform: Optional[Platform] = None
    days_back: Optional[int] = Field(default=None, ge=1, description="Defaults to 30")
    limit: Optional[int] = Field(default=None, ge=1, description="Defaults to 50")


class IncrementalSyncJob(BaseModel):
    """Job data for an incremental sync. ``account_id="system"`` fans out."""

    account_id: str
    platform: Optional[Platform] = None
    limit: Optional[int] = Field(default=None, ge=1, description="Defaults to 25")
    last_sync_date: Optional[datetime] = None


class DailySyncJob(BaseModel):
    """Job data for the daily rollup. ``account_id="system"`` fans out."""

    account_id: str
    platform: Optional[Platform] = None
    lookback_days: Optional[int] = Field(default=None, ge=1, description="Defaults to 30")
    limit: Optional[int] = Field(default=None, ge=1, description="Defaults to 25")


class SyncResult(BaseModel):
    """Outcome of one sync call."""

    success: bool = True
    account_id: str
    sync_type: SyncType
    posts_processed: int = 0
    analytics_updated: int = 0
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    execution_time_ms: int = 0
    data_quality: Optional[DataQuality] = None
    anomalies: Optional[AnomalyReport] = None
    deltas: Dict[str, float] = Field(default_factory=dict)
