"""
External Collaborator Interfaces

Persistence, credentials and hotspot analysis are owned by the surrounding
application. The sync pipeline only depends on these protocols.
"""

from datetime import datetime
from typing import Any, List, Optional, Protocol, Sequence, Tuple

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
    SyncType,
)


class AnalyticsStorage(Protocol):
    """Repository for accounts, posts, snapshots and the sync log."""

    async def get_account(self, account_id: str) -> Optional[SocialAccount]:
        ...

    async def list_accounts(self, platforms: Optional[Sequence[Platform]] = None) -> List[SocialAccount]:
        ...

    async def upsert_post(self, account_id: str, media: MediaItem) -> Tuple[PostRecord, bool]:
        """Create or update a post. Returns the record and whether it was created."""
        ...

    async def create_analytics_snapshot(self, snapshot: AnalyticsSnapshot) -> AnalyticsSnapshot:
        ...

    async def has_snapshot_for_day(self, subject_id: str, kind: SnapshotKind, day: datetime) -> bool:
        ...

    async def find_latest_snapshot(
        self,
        subject_id: str,
        kind: SnapshotKind = SnapshotKind.ACCOUNT,
        before: Optional[datetime] = None,
    ) -> Optional[AnalyticsSnapshot]:
        ...

    async def list_snapshots(
        self,
        subject_id: str,
        kind: SnapshotKind,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[AnalyticsSnapshot]:
        """Snapshots newest first."""
        ...

    async def upsert_account_rollup(self, rollup: AccountRollup) -> AccountRollup:
        ...

    async def find_latest_rollup(
        self,
        account_id: str,
        before: Optional[datetime] = None,
    ) -> Optional[AccountRollup]:
        ...

    async def append_sync_log(self, entry: SyncState) -> None:
        ...

    async def find_latest_sync_state(
        self,
        account_id: str,
        sync_types: Sequence[SyncType],
        completed_only: bool = True,
    ) -> Optional[SyncState]:
        ...


class CredentialSource(Protocol):
    """Supplies access tokens for connected accounts."""

    async def get_credentials(self, account_id: str) -> Optional[PlatformCredentials]:
        ...


class HotspotAnalyzer(Protocol):
    """Downstream analysis run after incremental syncs."""

    async def analyze(self, account_id: str) -> Any:
        ...
