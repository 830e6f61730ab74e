"""
Facebook Page Graph API Adapter

This module fetches Facebook Page data. Post insights frequently come back
empty for pages without enough audience; the listing therefore requests
reaction, comment and share summaries so the normalizer can fall back to
them.
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

POST_FIELDS = (
    "id,message,created_time,permalink_url,full_picture,shares,"
    "likes.summary(true),comments.summary(true)"
)
PAGE_FIELDS = "id,name,followers_count,fan_count"
PAGE_ACTIVITY_METRICS = "page_views_total"


@default_registry.adapter(Platform.FACEBOOK)
class FacebookAdapter(PlatformAdapter):
    """Facebook Page fetcher."""

    MEDIA_METRIC_SETS = (
        (
            "post_impressions",
            "post_impressions_unique",
            "post_impressions_paid",
            "post_impressions_organic",
            "post_clicks",
            "post_reactions_like_total",
            "post_reactions_love_total",
            "post_reactions_wow_total",
            "post_reactions_haha_total",
            "post_reactions_sorry_total",
            "post_reactions_anger_total",
        ),
        ("post_impressions", "post_impressions_unique", "post_clicks"),
        ("post_impressions_unique",),
        ("post_reactions_like_total",),
    )
    REACH_METRIC = "page_impressions_unique"

    @property
    def platform(self) -> Platform:
        return Platform.FACEBOOK

    def _parse_post(self, entry: Dict[str, Any]) -> MediaItem:
        return MediaItem(
            id=entry["id"],
            platform=Platform.FACEBOOK,
            kind=SnapshotKind.POST,
            published_at=parse_timestamp(entry.get("created_time")),
            caption=entry.get("message"),
            media_type="POST",
            media_url=entry.get("full_picture"),
            permalink=entry.get("permalink_url"),
            raw=entry,
        )

    async def list_media(
        self,
        profile_id: str,
        credentials: PlatformCredentials,
        limit: int = 25,
        since: Optional[datetime] = None,
    ) -> List[MediaItem]:
        params: Dict[str, Any] = {"fields": POST_FIELDS, "limit": limit}
        if since is not None:
            params["since"] = int(since.timestamp())

        payload = await self.client.get(
            f"/{profile_id}/posts", credentials.access_token, params, endpoint="posts"
        )
        posts = [self._parse_post(entry) for entry in payload.get("data", [])]
        self.logger.info("Listed posts", page_id=profile_id, count=len(posts))
        return posts

    async def fetch_account_insights(
        self,
        profile_id: str,
        credentials: PlatformCredentials,
        period: str = "day",
        days_back: int = 30,
    ) -> AccountInsights:
        page = await self.client.get(
            f"/{profile_id}",
            credentials.access_token,
            {"fields": PAGE_FIELDS},
            endpoint="node",
        )
        insights = AccountInsights(
            platform=Platform.FACEBOOK,
            profile_id=profile_id,
            username=page.get("name"),
            followers_count=int(page.get("followers_count") or page.get("fan_count") or 0),
            period=period,
            raw={"page": page},
        )

        try:
            activity = await self.client.get(
                f"/{profile_id}/insights",
                credentials.access_token,
                {"metric": PAGE_ACTIVITY_METRICS, "period": period},
                endpoint="insights",
            )
        except PlatformAPIError as error:
            insights.warnings.append(f"Page activity unavailable: {error.message}")
            self.logger.warning("Page activity unavailable", page_id=profile_id, error=error.message)
        else:
            metrics = parse_insights(activity.get("data", []))
            insights.profile_views = metrics.get("page_views_total", 0)
            insights.raw["activity"] = activity

        reach, strategy, warnings = await self.fetch_reach(profile_id, credentials, days_back)
        insights.reach = reach
        insights.reach_strategy = strategy
        insights.warnings.extend(warnings)
        return insights
