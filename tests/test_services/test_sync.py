"""
Tests for the Sync Orchestrator

This module runs the orchestrator against the real Instagram adapter with a
stubbed Graph API and the in-memory store.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import insights_entry
from insightsync.integrations.instagram import InstagramAdapter
from insightsync.integrations.memory_store import InMemoryStore
from insightsync.models.analytics import (
    AccountRollup,
    DailySyncJob,
    DataQuality,
    IncrementalSyncJob,
    InitialSyncJob,
    Platform,
    PlatformCredentials,
    SnapshotKind,
    SocialAccount,
    SyncStatus,
    SyncType,
)
from insightsync.services.cache import AnalyticsCache
from insightsync.services.normalizer import start_of_day
from insightsync.services.sync import SyncOrchestrator, fold_items
from insightsync.utils.error_handling import AccountNotFoundError, AuthenticationError

FULL_SET = "reach,views,likes,comments,saved,shares"


def full_insights(reach: int, views: int, likes: int) -> dict:
    return {"data": [
        insights_entry("reach", reach),
        insights_entry("views", views),
        insights_entry("likes", likes),
        insights_entry("comments", 5),
        insights_entry("saved", 3),
        insights_entry("shares", 2),
    ]}


@pytest.fixture
def stub_account(graph_api, recent):
    """Instagram profile ig-1 with three media items; m3 has no insights."""
    graph_api.add("me", {"id": "ig-1", "name": "Studio"})
    graph_api.add("ig-1/media", {"data": [
        {"id": "m1", "media_type": "IMAGE", "timestamp": recent(1), "like_count": 40, "comments_count": 5},
        {"id": "m2", "media_type": "VIDEO", "timestamp": recent(5), "like_count": 10, "comments_count": 1},
        {"id": "m3", "media_type": "IMAGE", "timestamp": recent(9)},
    ]})
    graph_api.add("m1/insights", full_insights(500, 800, 40), metric=FULL_SET)
    graph_api.add("m2/insights", {"data": [
        insights_entry("likes", 10),
        insights_entry("comments", 1),
        insights_entry("saved", 0),
        insights_entry("shares", 1),
    ]}, metric="likes,comments,saved,shares")
    return graph_api


@pytest.fixture
def adapter(make_client) -> InstagramAdapter:
    return InstagramAdapter(make_client(Platform.INSTAGRAM))


@pytest.fixture
def cache() -> AnalyticsCache:
    return AnalyticsCache()


@pytest.fixture
def orchestrator(store, adapter, cache, settings) -> SyncOrchestrator:
    return SyncOrchestrator(
        storage=store,
        credentials=store,
        adapters={Platform.INSTAGRAM: adapter},
        cache=cache,
        settings=settings,
    )


class TestItemFold:
    """Test fold_items."""

    @pytest.mark.asyncio
    async def test_collects_errors_and_continues(self):
        async def handler(item):
            if item == "b":
                raise ValueError("bad item")
            return item.upper()

        result = await fold_items(["a", "b", "c"], handler, item_id=str)

        assert result.successes == ["A", "C"]
        assert [(failure.item_id, failure.message) for failure in result.errors] == [("b", "bad item")]
        assert result.attempted == 3

    @pytest.mark.asyncio
    async def test_authentication_error_aborts(self):
        handler = AsyncMock(side_effect=AuthenticationError("token revoked"))

        with pytest.raises(AuthenticationError):
            await fold_items(["a", "b"], handler, item_id=str)

        assert handler.await_count == 1

    @pytest.mark.asyncio
    async def test_delay_between_items(self):
        sleep = AsyncMock()

        await fold_items([1, 2, 3], AsyncMock(), item_id=str, delay=0.2, sleep=sleep)

        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_cancellation_keeps_completed_items(self):
        cancel = asyncio.Event()

        async def handler(item):
            if item == 2:
                cancel.set()
            return item

        result = await fold_items([1, 2, 3], handler, item_id=str, cancel_event=cancel)

        assert result.successes == [1, 2]
        assert result.cancelled


class TestInitialSync:
    """Test perform_initial_sync."""

    @pytest.mark.asyncio
    async def test_partial_failure_is_recorded(self, orchestrator, store, stub_account):
        """Two media items succeed and one exhausts every metric set."""
        result = await orchestrator.perform_initial_sync(InitialSyncJob(account_id="acct-ig"))

        assert result.success
        assert result.sync_type == SyncType.INITIAL
        assert result.posts_processed == 3
        assert result.analytics_updated == 2
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Media m3:")
        assert result.data_quality == DataQuality.GOOD

        posts = {post.platform_post_id: post for post in store.list_posts("acct-ig")}
        assert set(posts) == {"m1", "m2", "m3"}

        first = await store.list_snapshots(posts["m1"].id, SnapshotKind.POST)
        second = await store.list_snapshots(posts["m2"].id, SnapshotKind.POST)
        assert first[0].reach == 500
        assert first[0].engagement_rate == 10.0
        assert not first[0].is_fallback
        assert second[0].is_fallback
        assert second[0].data_quality == DataQuality.BASIC

        logs = store.sync_logs("acct-ig")
        assert [(log.sync_type, log.status) for log in logs] == [(SyncType.INITIAL, SyncStatus.COMPLETED)]

    @pytest.mark.asyncio
    async def test_days_back_and_limit_forwarded(self, orchestrator, stub_account):
        await orchestrator.perform_initial_sync(InitialSyncJob(account_id="acct-ig", days_back=7, limit=5))

        params = stub_account.calls_to("ig-1/media")[0].url.params
        assert params["limit"] == "5"
        since = datetime.fromtimestamp(int(params["since"]), tz=timezone.utc)
        assert timedelta(days=6, hours=23) < datetime.now(timezone.utc) - since < timedelta(days=7, hours=1)

    @pytest.mark.asyncio
    async def test_unknown_account(self, orchestrator):
        with pytest.raises(AccountNotFoundError):
            await orchestrator.perform_initial_sync(InitialSyncJob(account_id="nope"))

    @pytest.mark.asyncio
    async def test_platform_mismatch_is_not_found(self, orchestrator):
        with pytest.raises(AccountNotFoundError):
            await orchestrator.perform_initial_sync(
                InitialSyncJob(account_id="acct-ig", platform=Platform.FACEBOOK)
            )

    @pytest.mark.asyncio
    async def test_missing_credentials(self, adapter, settings, instagram_account):
        store = InMemoryStore()
        store.add_account(
            instagram_account,
            PlatformCredentials(access_token="", platform=Platform.INSTAGRAM),
        )
        orchestrator = SyncOrchestrator(store, store, {Platform.INSTAGRAM: adapter}, settings=settings)

        result = await orchestrator.perform_initial_sync(InitialSyncJob(account_id="acct-ig"))

        assert not result.success
        assert "No credentials" in result.errors[0]
        assert store.sync_logs("acct-ig")[0].status == SyncStatus.FAILED

    @pytest.mark.asyncio
    async def test_invalid_token(self, orchestrator, graph_api):
        graph_api.add("me", {"error": {"message": "Error validating access token", "code": 190}}, status_code=400)

        result = await orchestrator.perform_initial_sync(InitialSyncJob(account_id="acct-ig"))

        assert not result.success
        assert result.errors[0].startswith("Invalid access token")
        assert graph_api.calls_to("ig-1/media") == []

    @pytest.mark.asyncio
    async def test_cancelled_before_processing(self, orchestrator, stub_account):
        cancel = asyncio.Event()
        cancel.set()

        result = await orchestrator.perform_initial_sync(InitialSyncJob(account_id="acct-ig"), cancel_event=cancel)

        assert result.posts_processed == 0
        assert any("cancelled" in warning for warning in result.warnings)


class TestIncrementalSync:
    """Test perform_incremental_sync."""

    @pytest.mark.asyncio
    async def test_same_day_rerun_is_idempotent(self, orchestrator, store, stub_account):
        job = IncrementalSyncJob(
            account_id="acct-ig",
            last_sync_date=datetime.now(timezone.utc) - timedelta(days=1),
        )

        first = await orchestrator.perform_incremental_sync(job)
        second = await orchestrator.perform_incremental_sync(job)

        assert first.analytics_updated == 2
        assert second.posts_processed == 3
        assert second.analytics_updated == 0
        for post in store.list_posts("acct-ig"):
            snapshots = await store.list_snapshots(post.id, SnapshotKind.POST)
            assert len(snapshots) <= 1

    @pytest.mark.asyncio
    async def test_since_defaults_to_last_completed_sync(self, store, adapter, settings, stub_account):
        fixed = datetime.now(timezone.utc)
        orchestrator = SyncOrchestrator(
            store, store, {Platform.INSTAGRAM: adapter}, settings=settings, clock=lambda: fixed
        )
        await orchestrator.perform_initial_sync(InitialSyncJob(account_id="acct-ig"))

        result = await orchestrator.perform_incremental_sync(IncrementalSyncJob(account_id="acct-ig"))

        last_listing = stub_account.calls_to("ig-1/media")[-1]
        assert last_listing.url.params["since"] == str(int(fixed.timestamp()))
        # Every stubbed item predates the previous run
        assert result.posts_processed == 0

    @pytest.mark.asyncio
    async def test_naive_last_sync_date_is_taken_as_utc(self, orchestrator, stub_account):
        since = datetime.now(timezone.utc) - timedelta(days=1)
        job = IncrementalSyncJob(account_id="acct-ig", last_sync_date=since.replace(tzinfo=None))

        result = await orchestrator.perform_incremental_sync(job)

        assert result.success
        assert result.posts_processed == 3
        assert result.analytics_updated == 2
        listing = stub_account.calls_to("ig-1/media")[-1]
        assert listing.url.params["since"] == str(int(since.timestamp()))

    @pytest.mark.asyncio
    async def test_offset_last_sync_date(self, orchestrator, stub_account):
        since = datetime.now(timezone(timedelta(hours=5))) - timedelta(days=1)

        result = await orchestrator.perform_incremental_sync(
            IncrementalSyncJob(account_id="acct-ig", last_sync_date=since)
        )

        assert result.success
        assert result.posts_processed == 3

    @pytest.mark.asyncio
    async def test_hotspot_analysis_failure_is_a_warning(self, store, adapter, settings, stub_account):
        analyzer = AsyncMock()
        analyzer.analyze.side_effect = RuntimeError("analysis backend down")
        orchestrator = SyncOrchestrator(
            store, store, {Platform.INSTAGRAM: adapter}, hotspot_analyzer=analyzer, settings=settings
        )

        result = await orchestrator.perform_incremental_sync(IncrementalSyncJob(account_id="acct-ig"))

        assert result.success
        assert "Hotspot analysis: analysis backend down" in result.warnings
        analyzer.analyze.assert_awaited_once_with("acct-ig")

    @pytest.mark.asyncio
    async def test_system_without_accounts(self, adapter, settings):
        store = InMemoryStore()
        orchestrator = SyncOrchestrator(store, store, {Platform.INSTAGRAM: adapter}, settings=settings)

        result = await orchestrator.perform_incremental_sync(IncrementalSyncJob(account_id="system"))

        assert result.success
        assert result.account_id == "system"
        assert (result.posts_processed, result.analytics_updated) == (0, 0)
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_system_fan_out(self, orchestrator, store, stub_account):
        """Eligible accounts run in turn; failures are prefixed with the account."""
        store.add_account(
            SocialAccount(id="acct-2", platform=Platform.INSTAGRAM, profile_id="ig-2"),
            PlatformCredentials(access_token="ig-token-2", platform=Platform.INSTAGRAM, profile_id="ig-2"),
        )
        store.add_account(SocialAccount(id="acct-3", platform=Platform.INSTAGRAM, profile_id="ig-3"))

        result = await orchestrator.perform_incremental_sync(IncrementalSyncJob(account_id="system"))

        assert not result.success
        assert result.posts_processed == 3
        assert result.analytics_updated == 2
        assert any(error.startswith("Account acct-ig: Media m3:") for error in result.errors)
        assert any(error.startswith("Account acct-2: ") for error in result.errors)
        assert not any("acct-3" in error for error in result.errors)
        assert store.sync_logs("acct-3") == []

    @pytest.mark.asyncio
    async def test_fan_out_continues_after_storage_failure(
        self, adapter, settings, stub_account, instagram_account, instagram_credentials, monkeypatch
    ):
        store = InMemoryStore()
        store.add_account(
            SocialAccount(id="acct-down", platform=Platform.INSTAGRAM, profile_id="ig-9"),
            PlatformCredentials(access_token="ig-token-9", platform=Platform.INSTAGRAM, profile_id="ig-9"),
        )
        store.add_account(instagram_account, instagram_credentials)
        get_account = store.get_account

        async def flaky_get_account(account_id):
            if account_id == "acct-down":
                raise RuntimeError("storage offline")
            return await get_account(account_id)

        monkeypatch.setattr(store, "get_account", flaky_get_account)
        orchestrator = SyncOrchestrator(store, store, {Platform.INSTAGRAM: adapter}, settings=settings)

        result = await orchestrator.perform_incremental_sync(IncrementalSyncJob(account_id="system"))

        assert not result.success
        assert "Account acct-down: storage offline" in result.errors
        assert result.posts_processed == 3
        assert len(store.sync_logs("acct-ig")) == 1


class TestDailySync:
    """Test perform_daily_sync."""

    @pytest.fixture
    def daily_stub(self, stub_account):
        stub_account.add("ig-1", {"id": "ig-1", "username": "studio", "followers_count": 1500, "media_count": 3})
        stub_account.add("ig-1/insights", {"data": [
            {"name": "profile_views", "total_value": {"value": 40}},
            {"name": "website_clicks", "total_value": {"value": 6}},
        ]}, metric="profile_views,website_clicks")
        stub_account.add("ig-1/insights", {"data": [
            {"name": "reach", "values": [{"value": 300}, {"value": 400}]},
        ]}, metric="reach")
        return stub_account

    @pytest.mark.asyncio
    async def test_rollup_and_account_snapshot(self, orchestrator, store, cache, daily_stub):
        cache.set(cache.make_key("acct-ig", view="comparison"), {"stale": True})

        result = await orchestrator.perform_daily_sync(DailySyncJob(account_id="acct-ig"))

        assert result.success
        assert result.posts_processed == 2
        assert result.analytics_updated == 1
        assert result.errors == ["Post aggregation: Media m3: No insights available for media m3 after 6 metric sets"]
        assert result.anomalies is not None and not result.anomalies.has_anomalies

        rollup = await store.find_latest_rollup("acct-ig")
        assert rollup.followers_count == 1500
        assert rollup.profile_views == 40
        assert rollup.reach == 700
        assert rollup.posts_analyzed == 2
        assert rollup.total_likes == 50
        assert rollup.recorded_at == start_of_day(datetime.now(timezone.utc))

        account_snapshots = await store.list_snapshots("acct-ig", SnapshotKind.ACCOUNT)
        assert len(account_snapshots) == 1
        assert account_snapshots[0].likes == 50
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_deltas_against_previous_rollup(self, orchestrator, store, daily_stub):
        today = start_of_day(datetime.now(timezone.utc))
        await store.upsert_account_rollup(AccountRollup(
            account_id="acct-ig",
            platform=Platform.INSTAGRAM,
            recorded_at=today - timedelta(days=1),
            followers_count=1450,
            reach=650,
        ))

        result = await orchestrator.perform_daily_sync(DailySyncJob(account_id="acct-ig"))

        assert result.deltas["followers_count"] == 50
        assert result.deltas["reach"] == 50

    @pytest.mark.asyncio
    async def test_second_run_same_day_keeps_one_snapshot(self, orchestrator, store, daily_stub):
        await orchestrator.perform_daily_sync(DailySyncJob(account_id="acct-ig"))
        second = await orchestrator.perform_daily_sync(DailySyncJob(account_id="acct-ig"))

        assert second.analytics_updated == 0
        assert len(await store.list_snapshots("acct-ig", SnapshotKind.ACCOUNT)) == 1

    @pytest.mark.asyncio
    async def test_account_insights_failure_is_recorded(self, orchestrator, stub_account):
        result = await orchestrator.perform_daily_sync(DailySyncJob(account_id="acct-ig"))

        assert result.success
        assert any(error.startswith("Account analytics:") for error in result.errors)
        assert result.posts_processed == 2
