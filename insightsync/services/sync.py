"""
Sync Orchestration Service

This service drives the three sync modes for connected accounts:
- Initial sync: backfill of recent media with first snapshots
- Incremental sync: media newer than the last completed sync
- Daily sync: account-level figures, 30-day post rollups and deltas

Media items are processed sequentially so every call funnels through the
shared rate limiter. A failure on one item is recorded in the result and
the run continues with the next item.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, List, Mapping, Optional, Sequence, TypeVar

import structlog

from insightsync.config.settings import Settings, get_settings
from insightsync.integrations.base import PlatformAdapter
from insightsync.integrations.storage import AnalyticsStorage, CredentialSource, HotspotAnalyzer
from insightsync.models.analytics import (
    AccountRollup,
    AnalyticsSnapshot,
    DailySyncJob,
    DataQuality,
    IncrementalSyncJob,
    InitialSyncJob,
    MediaItem,
    Platform,
    PlatformCredentials,
    SnapshotKind,
    SocialAccount,
    SyncResult,
    SyncState,
    SyncStatus,
    SyncType,
    as_utc,
    utc_now,
)
from insightsync.services.cache import AnalyticsCache
from insightsync.services.normalizer import (
    aggregate,
    assess_data_quality,
    detect_anomalies,
    normalize,
    start_of_day,
    validate,
)
from insightsync.utils.error_handling import (
    AccountNotFoundError,
    AuthenticationError,
    InsightSyncError,
    log_error,
)

SYSTEM_ACCOUNT_ID = "system"

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ItemFailure:
    """One item that could not be processed."""
    item_id: str
    error: Exception

    @property
    def message(self) -> str:
        if isinstance(self.error, InsightSyncError):
            return self.error.message
        return str(self.error) or self.error.__class__.__name__


@dataclass
class FoldResult(Generic[R]):
    """Outcome of processing a batch item by item."""
    successes: List[R] = field(default_factory=list)
    errors: List[ItemFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def attempted(self) -> int:
        return len(self.successes) + len(self.errors)


async def fold_items(
    items: Sequence[T],
    handler: Callable[[T], Awaitable[R]],
    item_id: Callable[[T], str] = lambda item: str(getattr(item, "id", item)),
    delay: float = 0.0,
    cancel_event: Optional[asyncio.Event] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> FoldResult[R]:
    """
    Apply ``handler`` to each item in order, collecting successes and errors.

    Authentication errors abort the fold since every later item would fail
    the same way. ``cancel_event`` is checked between items; a cancelled
    fold keeps whatever it completed.
    """
    result: FoldResult[R] = FoldResult()
    for index, item in enumerate(items):
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            break
        if index and delay:
            await sleep(delay)
        try:
            result.successes.append(await handler(item))
        except AuthenticationError:
            raise
        except Exception as e:
            result.errors.append(ItemFailure(item_id=item_id(item), error=e))
    return result


class SyncOrchestrator:
    """Runs initial, incremental and daily syncs for connected accounts."""

    def __init__(
        self,
        storage: AnalyticsStorage,
        credentials: CredentialSource,
        adapters: Mapping[Platform, PlatformAdapter],
        cache: Optional[AnalyticsCache] = None,
        hotspot_analyzer: Optional[HotspotAnalyzer] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.credentials = credentials
        self.adapters = dict(adapters)
        self.cache = cache
        self.hotspot_analyzer = hotspot_analyzer
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._clock = clock
        self.logger = structlog.get_logger(__name__)

    # Entry points
    async def perform_initial_sync(
        self,
        job: InitialSyncJob,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Backfill recent media for a newly connected account.

        Raises:
            AccountNotFoundError: the account does not exist
        """
        days_back = job.days_back or self.settings.initial_sync_days_back
        limit = job.limit or self.settings.initial_sync_limit

        async def run(account: SocialAccount, credentials: PlatformCredentials, result: SyncResult) -> None:
            adapter = self._adapter(account.platform)
            profile_id = credentials.profile_id or account.profile_id
            since = self._clock() - timedelta(days=days_back)

            media = await adapter.list_media(profile_id, credentials, limit=limit, since=since)
            media.extend(await adapter.list_stories(profile_id, credentials))
            await self._process_media(adapter, account, credentials, media, result, cancel_event)

        return await self._run_for_account(SyncType.INITIAL, job.account_id, job.platform, run)

    async def perform_incremental_sync(
        self,
        job: IncrementalSyncJob,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Collect media published since the last completed sync.

        ``account_id="system"`` runs the sync for every account holding a
        non-empty credential, one account at a time.
        """
        if job.account_id == SYSTEM_ACCOUNT_ID:
            return await self._fan_out(
                SyncType.INCREMENTAL,
                job.platform,
                lambda account: self.perform_incremental_sync(
                    job.model_copy(update={"account_id": account.id, "platform": account.platform}),
                    cancel_event,
                ),
                cancel_event,
            )

        limit = job.limit or self.settings.incremental_sync_limit

        async def run(account: SocialAccount, credentials: PlatformCredentials, result: SyncResult) -> None:
            adapter = self._adapter(account.platform)
            profile_id = credentials.profile_id or account.profile_id
            since = await self._resolve_since(account, job.last_sync_date)

            media = await adapter.list_media(profile_id, credentials, limit=limit, since=since)
            media.extend(await adapter.list_stories(profile_id, credentials))
            await self._process_media(adapter, account, credentials, media, result, cancel_event)

            if result.posts_processed > 0 or result.analytics_updated > 0:
                await self._run_hotspot_analysis(account, result)

        return await self._run_for_account(SyncType.INCREMENTAL, job.account_id, job.platform, run)

    async def perform_daily_sync(
        self,
        job: DailySyncJob,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Refresh account figures and roll up recent post metrics.

        ``account_id="system"`` fans out like the incremental sync.
        """
        if job.account_id == SYSTEM_ACCOUNT_ID:
            return await self._fan_out(
                SyncType.DAILY,
                job.platform,
                lambda account: self.perform_daily_sync(
                    job.model_copy(update={"account_id": account.id, "platform": account.platform}),
                    cancel_event,
                ),
                cancel_event,
            )

        lookback_days = job.lookback_days or self.settings.daily_sync_lookback_days
        limit = job.limit or self.settings.daily_sync_limit

        async def run(account: SocialAccount, credentials: PlatformCredentials, result: SyncResult) -> None:
            await self._daily_rollup(account, credentials, result, lookback_days, limit, cancel_event)

        return await self._run_for_account(SyncType.DAILY, job.account_id, job.platform, run)

    # Shared steps
    def _adapter(self, platform: Platform) -> PlatformAdapter:
        try:
            return self.adapters[platform]
        except KeyError:
            raise ValueError(f"No adapter configured for platform {platform.value}") from None

    async def _resolve_account(self, account_id: str, platform: Optional[Platform]) -> SocialAccount:
        account = await self.storage.get_account(account_id)
        if account is None or (platform is not None and account.platform != platform):
            raise AccountNotFoundError(account_id)
        return account

    async def _resolve_credentials(self, account: SocialAccount) -> PlatformCredentials:
        credentials = await self.credentials.get_credentials(account.id)
        if credentials is None or not credentials.has_token:
            raise AuthenticationError(
                f"No credentials stored for account {account.id}",
                platform=account.platform.value,
                code="MISSING_CREDENTIALS",
            )

        validation = await self._adapter(account.platform).validate_token(credentials)
        if not validation.is_valid:
            raise AuthenticationError(
                f"Invalid access token: {validation.error}",
                platform=account.platform.value,
                code="INVALID_TOKEN",
            )
        return credentials

    async def _resolve_since(self, account: SocialAccount, explicit: Optional[datetime]) -> datetime:
        if explicit is not None:
            return as_utc(explicit)
        state = await self.storage.find_latest_sync_state(
            account.id, [SyncType.INCREMENTAL, SyncType.INITIAL]
        )
        if state is not None:
            return state.last_sync_at
        return self._clock() - timedelta(days=self.settings.initial_sync_days_back)

    async def _run_for_account(
        self,
        sync_type: SyncType,
        account_id: str,
        platform: Optional[Platform],
        run: Callable[[SocialAccount, PlatformCredentials, SyncResult], Awaitable[None]],
    ) -> SyncResult:
        started_at = self._clock()
        timer = time.perf_counter()
        account = await self._resolve_account(account_id, platform)

        logger = self.logger.bind(account_id=account.id, sync_type=sync_type.value)
        logger.info("Sync started", platform=account.platform.value)
        result = SyncResult(account_id=account.id, sync_type=sync_type)

        try:
            credentials = await self._resolve_credentials(account)
            await run(account, credentials, result)
        except InsightSyncError as e:
            result.success = False
            result.errors.append(e.message)
            log_error(e, account_id=account.id, sync_type=sync_type.value)
        except Exception as e:
            result.success = False
            result.errors.append(str(e))
            logger.error("Sync failed unexpectedly", error=str(e), exc_info=True)

        result.execution_time_ms = int((time.perf_counter() - timer) * 1000)
        await self._append_sync_log(account, result, started_at)

        logger.info(
            "Sync finished",
            success=result.success,
            posts_processed=result.posts_processed,
            analytics_updated=result.analytics_updated,
            errors=len(result.errors),
            execution_time_ms=result.execution_time_ms,
        )
        return result

    async def _fan_out(
        self,
        sync_type: SyncType,
        platform: Optional[Platform],
        run_one: Callable[[SocialAccount], Awaitable[SyncResult]],
        cancel_event: Optional[asyncio.Event],
    ) -> SyncResult:
        timer = time.perf_counter()
        result = SyncResult(account_id=SYSTEM_ACCOUNT_ID, sync_type=sync_type)

        accounts = await self.storage.list_accounts([platform] if platform else None)
        eligible: List[SocialAccount] = []
        for account in accounts:
            credentials = await self.credentials.get_credentials(account.id)
            if credentials is not None and credentials.has_token:
                eligible.append(account)

        self.logger.info(
            "Processing all eligible accounts",
            sync_type=sync_type.value,
            accounts=len(eligible),
        )

        failed_accounts = 0
        for account in eligible:
            if cancel_event is not None and cancel_event.is_set():
                result.warnings.append("Fan-out cancelled before all accounts were processed")
                break
            try:
                account_result = await run_one(account)
            except InsightSyncError as e:
                failed_accounts += 1
                result.errors.append(f"Account {account.id}: {e.message}")
                continue
            except Exception as e:
                failed_accounts += 1
                result.errors.append(f"Account {account.id}: {e}")
                self.logger.error("Account sync failed", account_id=account.id, error=str(e), exc_info=True)
                continue

            result.posts_processed += account_result.posts_processed
            result.analytics_updated += account_result.analytics_updated
            result.errors.extend(f"Account {account.id}: {error}" for error in account_result.errors)
            result.warnings.extend(f"Account {account.id}: {warning}" for warning in account_result.warnings)
            if not account_result.success:
                failed_accounts += 1

        result.success = failed_accounts == 0
        result.execution_time_ms = int((time.perf_counter() - timer) * 1000)
        return result

    async def _append_sync_log(self, account: SocialAccount, result: SyncResult, started_at: datetime) -> None:
        entry = SyncState(
            account_id=account.id,
            sync_type=result.sync_type,
            status=SyncStatus.COMPLETED if result.success else SyncStatus.FAILED,
            last_sync_at=started_at,
            posts_processed=result.posts_processed,
            analytics_updated=result.analytics_updated,
            errors=list(result.errors),
            execution_time_ms=result.execution_time_ms,
        )
        try:
            await self.storage.append_sync_log(entry)
        except Exception as e:
            result.warnings.append(f"Sync log: {e}")
            self.logger.error("Failed to append sync log", account_id=account.id, error=str(e))

    async def _run_hotspot_analysis(self, account: SocialAccount, result: SyncResult) -> None:
        if self.hotspot_analyzer is None:
            return
        try:
            await self.hotspot_analyzer.analyze(account.id)
        except Exception as e:
            result.warnings.append(f"Hotspot analysis: {e}")
            self.logger.warning("Hotspot analysis failed", account_id=account.id, error=str(e))

    async def _media_snapshot(
        self,
        adapter: PlatformAdapter,
        credentials: PlatformCredentials,
        item: MediaItem,
        subject_id: str,
        recorded_at: datetime,
    ) -> AnalyticsSnapshot:
        """Fetch insights for one item and normalize them."""
        insights = await adapter.fetch_media_insights(item.id, credentials, item.kind)
        richest = adapter.metric_sets_for(item.kind)[0]
        payload = {
            "media": item.raw,
            "metrics": insights.metrics,
            "metric_set": insights.metric_set,
            "tier": insights.tier,
        }
        return normalize(
            payload,
            adapter.platform,
            item.kind,
            subject_id=subject_id,
            recorded_at=recorded_at,
            data_quality=assess_data_quality(len(insights.metric_set), len(richest)),
        )

    async def _process_media(
        self,
        adapter: PlatformAdapter,
        account: SocialAccount,
        credentials: PlatformCredentials,
        media: Sequence[MediaItem],
        result: SyncResult,
        cancel_event: Optional[asyncio.Event],
    ) -> List[AnalyticsSnapshot]:
        """Upsert posts and create today's snapshot for each, once per day."""
        now = self._clock()

        async def handle(item: MediaItem) -> Optional[AnalyticsSnapshot]:
            post, _created = await self.storage.upsert_post(account.id, item)
            result.posts_processed += 1

            if await self.storage.has_snapshot_for_day(post.id, item.kind, now):
                self.logger.debug("Snapshot already recorded today", post_id=post.id)
                return None

            snapshot = await self._media_snapshot(adapter, credentials, item, post.id, now)
            violation = validate(snapshot)
            if violation is not None:
                raise violation

            await self.storage.create_analytics_snapshot(snapshot)
            result.analytics_updated += 1
            return snapshot

        fold = await fold_items(
            media,
            handle,
            delay=self.settings.media_request_delay_seconds,
            cancel_event=cancel_event,
            sleep=self._sleep,
        )

        for failure in fold.errors:
            result.errors.append(f"Media {failure.item_id}: {failure.message}")
            self.logger.warning(
                "Media item failed",
                account_id=account.id,
                media_id=failure.item_id,
                error=failure.message,
            )
        if fold.cancelled:
            result.warnings.append("Sync cancelled before all media were processed")
        if fold.attempted:
            result.data_quality = assess_data_quality(len(fold.successes), fold.attempted)

        return [snapshot for snapshot in fold.successes if snapshot is not None]

    async def _daily_rollup(
        self,
        account: SocialAccount,
        credentials: PlatformCredentials,
        result: SyncResult,
        lookback_days: int,
        limit: int,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        adapter = self._adapter(account.platform)
        profile_id = credentials.profile_id or account.profile_id
        now = self._clock()
        today = start_of_day(now)
        rollup = AccountRollup(account_id=account.id, platform=account.platform, recorded_at=today)

        # Account-level figures
        try:
            insights = await adapter.fetch_account_insights(
                profile_id, credentials, period="day", days_back=lookback_days
            )
        except AuthenticationError:
            raise
        except InsightSyncError as e:
            result.errors.append(f"Account analytics: {e.message}")
            log_error(e, account_id=account.id, step="account_insights")
        else:
            rollup.followers_count = insights.followers_count
            rollup.media_count = insights.media_count
            rollup.profile_views = insights.profile_views
            rollup.website_clicks = insights.website_clicks
            rollup.reach = insights.reach
            result.warnings.extend(insights.warnings)

        # Post-level rollup over the lookback window
        media = await adapter.list_media(
            profile_id, credentials, limit=limit, since=now - timedelta(days=lookback_days)
        )
        fold = await fold_items(
            media,
            lambda item: self._media_snapshot(adapter, credentials, item, item.id, now),
            delay=self.settings.media_request_delay_seconds,
            cancel_event=cancel_event,
            sleep=self._sleep,
        )
        for failure in fold.errors:
            result.errors.append(f"Post aggregation: Media {failure.item_id}: {failure.message}")

        snapshots: List[AnalyticsSnapshot] = fold.successes
        self._fill_post_totals(rollup, snapshots)
        rollup.data_quality = assess_data_quality(len(snapshots), len(media)) if media else DataQuality.BASIC
        result.posts_processed = len(snapshots)
        result.data_quality = rollup.data_quality

        # Day-over-day deltas
        previous = await self.storage.find_latest_rollup(account.id, before=today)
        if previous is not None:
            rollup.deltas = {
                "followers_count": rollup.followers_count - previous.followers_count,
                "reach": rollup.reach - previous.reach,
                "profile_views": rollup.profile_views - previous.profile_views,
                "total_views": rollup.total_views - previous.total_views,
                "engagement_rate": round(rollup.engagement_rate - previous.engagement_rate, 2),
            }
        result.deltas = dict(rollup.deltas)
        await self.storage.upsert_account_rollup(rollup)

        # Account snapshot, once per day
        account_snapshot = self._account_snapshot(account, rollup, snapshots, today)
        violation = validate(account_snapshot)
        if violation is not None:
            result.errors.append(violation.message)
        elif await self.storage.has_snapshot_for_day(account.id, SnapshotKind.ACCOUNT, today):
            self.logger.info("Account snapshot already recorded today", account_id=account.id)
        else:
            await self.storage.create_analytics_snapshot(account_snapshot)
            result.analytics_updated += 1

        history = [
            snapshot
            for snapshot in await self.storage.list_snapshots(
                account.id, SnapshotKind.ACCOUNT, since=today - timedelta(days=lookback_days)
            )
            if snapshot.recorded_at < today
        ]
        result.anomalies = detect_anomalies(account_snapshot, history)
        if result.anomalies.has_anomalies:
            self.logger.warning(
                "Anomalies detected",
                account_id=account.id,
                severity=result.anomalies.severity.value,
                findings=[finding.message for finding in result.anomalies.findings],
            )

        if self.cache is not None:
            self.cache.clear(account.id)

    @staticmethod
    def _fill_post_totals(rollup: AccountRollup, snapshots: Sequence[AnalyticsSnapshot]) -> None:
        rollup.posts_analyzed = len(snapshots)
        rollup.total_views = sum(snapshot.views for snapshot in snapshots)
        rollup.total_likes = sum(snapshot.likes for snapshot in snapshots)
        rollup.total_comments = sum(snapshot.comments for snapshot in snapshots)
        rollup.total_shares = sum(snapshot.shares for snapshot in snapshots)
        rollup.total_saves = sum(snapshot.saves for snapshot in snapshots)

        if snapshots:
            count = len(snapshots)
            rollup.avg_views_per_post = round(rollup.total_views / count, 2)
            rollup.avg_likes_per_post = round(rollup.total_likes / count, 2)
            rollup.avg_comments_per_post = round(rollup.total_comments / count, 2)

        if rollup.total_views > 0:
            interactions = (
                rollup.total_likes + rollup.total_comments
                + rollup.total_shares + rollup.total_saves
            )
            rollup.engagement_rate = round(interactions / rollup.total_views * 100, 2)

    @staticmethod
    def _account_snapshot(
        account: SocialAccount,
        rollup: AccountRollup,
        snapshots: Sequence[AnalyticsSnapshot],
        today: datetime,
    ) -> AnalyticsSnapshot:
        combined = aggregate(snapshots)
        if combined is None:
            return AnalyticsSnapshot(
                subject_id=account.id,
                platform=account.platform,
                kind=SnapshotKind.ACCOUNT,
                reach=rollup.reach,
                recorded_at=today,
                raw_payload={"rollup": rollup.model_dump(mode="json")},
                data_quality=DataQuality.BASIC,
            )
        return combined.model_copy(update={
            "subject_id": account.id,
            "kind": SnapshotKind.ACCOUNT,
            "recorded_at": today,
            "raw_payload": {"rollup": rollup.model_dump(mode="json")},
        })
