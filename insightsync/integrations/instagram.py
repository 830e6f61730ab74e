"""
Instagram Graph API Adapter

This module fetches Instagram business account data:
- Media and story listings
- Per-media insights with fallback metric sets
- Follower count, profile activity and reach for the account
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from insightsync.integrations.base import (
    PlatformAdapter,
    default_registry,
    parse_insights,
    parse_timestamp,
)
from insightsync.models.analytics import (
    AccountInsights,
    MediaItem,
    Platform,
    PlatformCredentials,
    SnapshotKind,
)
from insightsync.utils.error_handling import PlatformAPIError

MEDIA_FIELDS = (
    "id,caption,media_type,media_url,thumbnail_url,permalink,timestamp,"
    "like_count,comments_count"
)
ACCOUNT_FIELDS = "id,username,name,followers_count,media_count"
PROFILE_ACTIVITY_METRICS = "profile_views,website_clicks"


@default_registry.adapter(Platform.INSTAGRAM)
class InstagramAdapter(PlatformAdapter):
    """Instagram business account fetcher."""

    MEDIA_METRIC_SETS = (
        ("reach", "views", "likes", "comments", "saved", "shares"),
        ("likes", "comments", "saved", "shares"),
        ("views", "reach"),
        ("likes", "comments", "saved"),
        ("likes", "comments"),
        ("likes",),
    )
    STORY_METRIC_SETS = (
        ("reach", "views", "replies", "shares"),
        ("reach", "views"),
        ("reach",),
    )
    REACH_METRIC = "reach"

    @property
    def platform(self) -> Platform:
        return Platform.INSTAGRAM

    def _parse_media(self, entry: Dict[str, Any], kind: SnapshotKind) -> MediaItem:
        return MediaItem(
            id=entry["id"],
            platform=Platform.INSTAGRAM,
            kind=kind,
            published_at=parse_timestamp(entry.get("timestamp")),
            caption=entry.get("caption"),
            media_type=entry.get("media_type"),
            media_url=entry.get("media_url") or entry.get("thumbnail_url"),
            permalink=entry.get("permalink"),
            raw=entry,
        )

    async def list_media(
        self,
        profile_id: str,
        credentials: PlatformCredentials,
        limit: int = 25,
        since: Optional[datetime] = None,
    ) -> List[MediaItem]:
        params: Dict[str, Any] = {"fields": MEDIA_FIELDS, "limit": limit}
        if since is not None:
            params["since"] = int(since.timestamp())

        payload = await self.client.get(
            f"/{profile_id}/media", credentials.access_token, params, endpoint="media"
        )
        items = [self._parse_media(entry, SnapshotKind.POST) for entry in payload.get("data", [])]

        # ``since`` is not honoured by every media edge version
        if since is not None:
            items = [item for item in items if item.published_at is None or item.published_at >= since]

        self.logger.info("Listed media", profile_id=profile_id, count=len(items))
        return items

    async def list_stories(
        self,
        profile_id: str,
        credentials: PlatformCredentials,
    ) -> List[MediaItem]:
        try:
            payload = await self.client.get(
                f"/{profile_id}/stories",
                credentials.access_token,
                {"fields": MEDIA_FIELDS},
                endpoint="stories",
            )
        except PlatformAPIError as error:
            self.logger.warning("Story listing unavailable", profile_id=profile_id, error=error.message)
            return []
        return [self._parse_media(entry, SnapshotKind.STORY) for entry in payload.get("data", [])]

    async def fetch_account_insights(
        self,
        profile_id: str,
        credentials: PlatformCredentials,
        period: str = "day",
        days_back: int = 30,
    ) -> AccountInsights:
        account = await self.client.get(
            f"/{profile_id}",
            credentials.access_token,
            {"fields": ACCOUNT_FIELDS},
            endpoint="node",
        )
        insights = AccountInsights(
            platform=Platform.INSTAGRAM,
            profile_id=profile_id,
            username=account.get("username") or account.get("name"),
            followers_count=int(account.get("followers_count") or 0),
            media_count=int(account.get("media_count") or 0),
            period=period,
            raw={"account": account},
        )

        try:
            activity = await self.client.get(
                f"/{profile_id}/insights",
                credentials.access_token,
                {"metric": PROFILE_ACTIVITY_METRICS, "period": period, "metric_type": "total_value"},
                endpoint="insights",
            )
        except PlatformAPIError as error:
            insights.warnings.append(f"Profile activity unavailable: {error.message}")
            self.logger.warning("Profile activity unavailable", profile_id=profile_id, error=error.message)
        else:
            metrics = parse_insights(activity.get("data", []))
            insights.profile_views = metrics.get("profile_views", 0)
            insights.website_clicks = metrics.get("website_clicks", 0)
            insights.raw["activity"] = activity

        reach, strategy, warnings = await self.fetch_reach(profile_id, credentials, days_back)
        insights.reach = reach
        insights.reach_strategy = strategy
        insights.warnings.extend(warnings)
        return insights
