"""
In-Memory Analytics Store

Process-lifetime implementation of the storage and credential protocols.
Used for local development and as the default store of the service; a
deployment backed by a database supplies its own implementation.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from insightsync.models.analytics import (
    AccountRollup,
    AnalyticsSnapshot,
    MediaItem,
    Platform,
    PlatformCredentials,
    PostRecord,
    SnapshotKind,
    SocialAccount,
    SyncState,
    SyncStatus,
    SyncType,
)


def _day_bounds(day: datetime) -> Tuple[datetime, datetime]:
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class InMemoryStore:
    """Dictionary-backed store for accounts, posts, snapshots and sync logs."""

    def __init__(self):
        self.logger = structlog.get_logger(__name__)
        self._storage: Dict[str, Any] = {
            "accounts": {},
            "credentials": {},
            "posts": {},
            "snapshots": [],
            "rollups": {},
            "sync_logs": [],
        }

    # Account Operations
    def add_account(
        self,
        account: SocialAccount,
        credentials: Optional[PlatformCredentials] = None,
    ) -> SocialAccount:
        """Register an account and optionally its credentials."""
        self._storage["accounts"][account.id] = account
        if credentials is not None:
            self._storage["credentials"][account.id] = credentials
        return account

    async def get_account(self, account_id: str) -> Optional[SocialAccount]:
        return self._storage["accounts"].get(account_id)

    async def list_accounts(self, platforms: Optional[Sequence[Platform]] = None) -> List[SocialAccount]:
        return [
            account
            for account in self._storage["accounts"].values()
            if account.is_active and (platforms is None or account.platform in platforms)
        ]

    async def get_credentials(self, account_id: str) -> Optional[PlatformCredentials]:
        return self._storage["credentials"].get(account_id)

    # Post Operations
    async def upsert_post(self, account_id: str, media: MediaItem) -> Tuple[PostRecord, bool]:
        key = (account_id, media.platform, media.id)
        existing = self._storage["posts"].get(key)
        if existing is not None:
            updated = existing.model_copy(update={
                "caption": media.caption,
                "media_url": media.media_url,
                "permalink": media.permalink,
            })
            self._storage["posts"][key] = updated
            return updated, False

        record = PostRecord(
            id=str(uuid.uuid4()),
            account_id=account_id,
            platform=media.platform,
            platform_post_id=media.id,
            kind=media.kind,
            caption=media.caption,
            media_type=media.media_type,
            media_url=media.media_url,
            permalink=media.permalink,
            published_at=media.published_at,
        )
        self._storage["posts"][key] = record
        self.logger.debug("Post created", account_id=account_id, platform_post_id=media.id)
        return record, True

    def list_posts(self, account_id: str) -> List[PostRecord]:
        return [post for post in self._storage["posts"].values() if post.account_id == account_id]

    # Snapshot Operations
    async def create_analytics_snapshot(self, snapshot: AnalyticsSnapshot) -> AnalyticsSnapshot:
        self._storage["snapshots"].append(snapshot)
        return snapshot

    async def has_snapshot_for_day(self, subject_id: str, kind: SnapshotKind, day: datetime) -> bool:
        start, end = _day_bounds(day)
        return any(
            snapshot.subject_id == subject_id
            and snapshot.kind == kind
            and start <= snapshot.recorded_at < end
            for snapshot in self._storage["snapshots"]
        )

    async def list_snapshots(
        self,
        subject_id: str,
        kind: SnapshotKind,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[AnalyticsSnapshot]:
        matches = [
            snapshot
            for snapshot in self._storage["snapshots"]
            if snapshot.subject_id == subject_id
            and snapshot.kind == kind
            and (since is None or snapshot.recorded_at >= since)
        ]
        matches.sort(key=lambda snapshot: snapshot.recorded_at, reverse=True)
        return matches[:limit] if limit is not None else matches

    async def find_latest_snapshot(
        self,
        subject_id: str,
        kind: SnapshotKind = SnapshotKind.ACCOUNT,
        before: Optional[datetime] = None,
    ) -> Optional[AnalyticsSnapshot]:
        for snapshot in await self.list_snapshots(subject_id, kind):
            if before is None or snapshot.recorded_at < before:
                return snapshot
        return None

    # Rollup Operations
    async def upsert_account_rollup(self, rollup: AccountRollup) -> AccountRollup:
        self._storage["rollups"][(rollup.account_id, rollup.recorded_at)] = rollup
        return rollup

    async def find_latest_rollup(
        self,
        account_id: str,
        before: Optional[datetime] = None,
    ) -> Optional[AccountRollup]:
        candidates = [
            rollup
            for (owner, recorded_at), rollup in self._storage["rollups"].items()
            if owner == account_id and (before is None or recorded_at < before)
        ]
        return max(candidates, key=lambda rollup: rollup.recorded_at, default=None)

    # Sync Log Operations
    async def append_sync_log(self, entry: SyncState) -> None:
        self._storage["sync_logs"].append(entry)

    async def find_latest_sync_state(
        self,
        account_id: str,
        sync_types: Sequence[SyncType],
        completed_only: bool = True,
    ) -> Optional[SyncState]:
        candidates = [
            entry
            for entry in self._storage["sync_logs"]
            if entry.account_id == account_id
            and entry.sync_type in sync_types
            and (not completed_only or entry.status == SyncStatus.COMPLETED)
        ]
        return max(candidates, key=lambda entry: entry.last_sync_at, default=None)

    def sync_logs(self, account_id: Optional[str] = None) -> List[SyncState]:
        return [
            entry
            for entry in self._storage["sync_logs"]
            if account_id is None or entry.account_id == account_id
        ]
