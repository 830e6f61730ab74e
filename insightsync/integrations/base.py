"""
Platform Adapter Base

This module defines the interface every platform adapter implements and the
registry used to select an adapter by platform. Shared behaviour lives here:
- Token validation against ``/me``
- Per-media insights with ordered fallback metric sets
- Account reach with multiple insight strategies
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

import structlog

from insightsync.config.settings import Settings
from insightsync.integrations.graph_client import GraphAPIClient
from insightsync.integrations.rate_limiter import RateLimiter
from insightsync.models.analytics import (
    AccountInsights,
    MediaItem,
    Platform,
    PlatformCredentials,
    RawInsights,
    SnapshotKind,
    TokenValidation,
    utc_now,
)
from insightsync.utils.error_handling import (
    AuthenticationError,
    MetricSetsExhaustedError,
    PlatformAPIError,
)

MetricSet = Tuple[str, ...]

ROLLING_REACH_MAX_DAYS = 28


def parse_insight_value(entry: Dict[str, Any]) -> int:
    """Read an insights entry value from ``values[0]`` or ``total_value``."""
    value: Any = None
    values = entry.get("values") or []
    if values:
        value = values[0].get("value")
    if not value and isinstance(entry.get("total_value"), dict):
        value = entry["total_value"].get("value")
    if isinstance(value, dict):
        return int(sum(v for v in value.values() if isinstance(v, (int, float))))
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def parse_insights(data: Sequence[Dict[str, Any]]) -> Dict[str, int]:
    """Map metric name to integer value for a list of insights entries."""
    return {
        entry["name"]: parse_insight_value(entry)
        for entry in data
        if entry.get("name")
    }


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse Graph API timestamps such as ``2024-05-01T10:00:00+0000``."""
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")
    except ValueError:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))


class PlatformAdapter(ABC):
    """Base class for platform metric fetchers."""

    # Richest set first; the first accepted set wins
    MEDIA_METRIC_SETS: Tuple[MetricSet, ...] = ()
    STORY_METRIC_SETS: Tuple[MetricSet, ...] = ()
    REACH_METRIC: str = "reach"

    def __init__(self, client: GraphAPIClient):
        self.client = client
        self.logger = structlog.get_logger(__name__).bind(platform=self.platform.value)

    @property
    @abstractmethod
    def platform(self) -> Platform:
        """Platform served by this adapter."""

    async def validate_token(self, credentials: PlatformCredentials) -> TokenValidation:
        """Check the token against ``/me``. Only auth failures mark it invalid."""
        if not credentials.has_token:
            return TokenValidation(is_valid=False, error="Access token is empty")
        try:
            payload = await self.client.get(
                "/me", credentials.access_token, {"fields": "id,name"}, endpoint="me"
            )
        except AuthenticationError as error:
            self.logger.warning("Token validation failed", error_code=error.code)
            return TokenValidation(is_valid=False, error=error.message)
        return TokenValidation(
            is_valid=True,
            user_id=payload.get("id"),
            name=payload.get("name"),
        )

    @abstractmethod
    async def list_media(
        self,
        profile_id: str,
        credentials: PlatformCredentials,
        limit: int = 25,
        since: Optional[datetime] = None,
    ) -> List[MediaItem]:
        """List recent media in upstream order."""

    async def list_stories(
        self,
        profile_id: str,
        credentials: PlatformCredentials,
    ) -> List[MediaItem]:
        """List live stories. Platforms without stories return nothing."""
        return []

    def metric_sets_for(self, kind: SnapshotKind) -> Tuple[MetricSet, ...]:
        if kind == SnapshotKind.STORY and self.STORY_METRIC_SETS:
            return self.STORY_METRIC_SETS
        return self.MEDIA_METRIC_SETS

    async def fetch_media_insights(
        self,
        media_id: str,
        credentials: PlatformCredentials,
        kind: SnapshotKind = SnapshotKind.POST,
    ) -> RawInsights:
        """
        Fetch insights for one media item, degrading through the metric sets.

        Args:
            media_id: Platform media identifier
            credentials: Account credentials
            kind: POST or STORY, selecting the metric set list

        Returns:
            Insights from the first metric set the platform accepts

        Raises:
            MetricSetsExhaustedError: every metric set was rejected
            PlatformAPIError: any rejection other than an unsupported metric
        """
        metric_sets = self.metric_sets_for(kind)
        for tier, metric_set in enumerate(metric_sets):
            try:
                payload = await self.client.get(
                    f"/{media_id}/insights",
                    credentials.access_token,
                    {"metric": ",".join(metric_set)},
                    endpoint="insights",
                )
            except PlatformAPIError as error:
                if error.retryable or not error.is_unsupported_metric:
                    raise
                self.logger.warning(
                    "Metric set rejected",
                    media_id=media_id,
                    tier=tier,
                    metrics=",".join(metric_set),
                    error_code=error.code,
                    error=error.message,
                )
                continue

            data = payload.get("data", [])
            if tier > 0:
                self.logger.info("Using fallback metric set", media_id=media_id, tier=tier)
            return RawInsights(
                media_id=media_id,
                platform=self.platform,
                metrics=parse_insights(data),
                metric_set=list(metric_set),
                tier=tier,
                data=data,
            )

        raise MetricSetsExhaustedError(
            media_id, len(metric_sets), platform=self.platform.value
        )

    @abstractmethod
    async def fetch_account_insights(
        self,
        profile_id: str,
        credentials: PlatformCredentials,
        period: str = "day",
        days_back: int = 30,
    ) -> AccountInsights:
        """Fetch account-level figures for one profile."""

    async def fetch_reach(
        self,
        profile_id: str,
        credentials: PlatformCredentials,
        days_back: int,
    ) -> Tuple[int, str, List[str]]:
        """
        Try the reach strategies in order.

        Returns:
            Tuple of (reach, strategy name, warnings). Reach is zero with
            strategy ``none`` when every strategy fails.
        """
        until = utc_now()
        since = until - timedelta(days=days_back)
        strategies = [
            ("day", {
                "metric": self.REACH_METRIC,
                "period": "day",
                "since": int(since.timestamp()),
                "until": int(until.timestamp()),
            }),
        ]
        if days_back <= ROLLING_REACH_MAX_DAYS:
            strategies.append(("days_28", {"metric": self.REACH_METRIC, "period": "days_28"}))

        warnings: List[str] = []
        for name, params in strategies:
            try:
                payload = await self.client.get(
                    f"/{profile_id}/insights",
                    credentials.access_token,
                    params,
                    endpoint="insights",
                )
            except PlatformAPIError as error:
                warnings.append(f"Reach strategy {name} failed: {error.message}")
                self.logger.warning("Reach strategy failed", strategy=name, error=error.message)
                continue

            values = [
                value.get("value", 0)
                for entry in payload.get("data", [])
                if entry.get("name") == self.REACH_METRIC
                for value in entry.get("values", [])
            ]
            numeric = [int(value) for value in values if isinstance(value, (int, float))]
            if name == "day":
                return sum(numeric), name, warnings
            return (numeric[-1] if numeric else 0), name, warnings

        warnings.append("Reach unavailable: all reach strategies failed")
        return 0, "none", warnings


AdapterFactory = Callable[[GraphAPIClient], PlatformAdapter]


class AdapterRegistry:
    """Maps each platform to the adapter implementing it."""

    def __init__(self):
        self._factories: Dict[Platform, AdapterFactory] = {}

    def register(self, platform: Platform, factory: AdapterFactory) -> None:
        self._factories[platform] = factory

    def adapter(self, platform: Platform) -> Callable[[Type[PlatformAdapter]], Type[PlatformAdapter]]:
        """Class decorator registering an adapter for ``platform``."""
        def decorator(cls: Type[PlatformAdapter]) -> Type[PlatformAdapter]:
            self.register(platform, cls)
            return cls
        return decorator

    def platforms(self) -> List[Platform]:
        return list(self._factories)

    def create(self, platform: Platform, client: GraphAPIClient) -> PlatformAdapter:
        try:
            factory = self._factories[platform]
        except KeyError:
            raise ValueError(f"No adapter registered for platform {platform.value}") from None
        return factory(client)

    def build_all(
        self,
        rate_limiter: RateLimiter,
        settings: Optional[Settings] = None,
        http_client: Any = None,
    ) -> Dict[Platform, PlatformAdapter]:
        """Create one client and adapter per registered platform."""
        return {
            platform: self.create(
                platform,
                GraphAPIClient(platform, rate_limiter, settings=settings, http_client=http_client),
            )
            for platform in self._factories
        }


default_registry = AdapterRegistry()
