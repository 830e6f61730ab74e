"""
Sync API Endpoints

This module exposes the sync entry points to schedulers and operators:
- Initial, incremental and daily sync triggers
- Rate-limit window inspection
- Cached period comparison for an account
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from insightsync.integrations.rate_limiter import RateLimiter
from insightsync.models.analytics import (
    ComparisonResult,
    DailySyncJob,
    IncrementalSyncJob,
    InitialSyncJob,
    Platform,
    RateLimitInfo,
    SyncResult,
)
from insightsync.services.comparison import ComparisonService
from insightsync.services.sync import SyncOrchestrator
from insightsync.utils.error_handling import AccountNotFoundError

router = APIRouter()
logger = structlog.get_logger(__name__)


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Get the orchestrator built at startup."""
    return request.app.state.services.orchestrator


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.services.rate_limiter


def get_comparison_service(request: Request) -> ComparisonService:
    return request.app.state.services.comparison


def _not_found(error: AccountNotFoundError) -> HTTPException:
    logger.warning("Sync requested for unknown account", account_id=error.account_id)
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)


@router.post("/initial", response_model=SyncResult)
async def trigger_initial_sync(
    job: InitialSyncJob,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncResult:
    """Backfill a newly connected account."""
    logger.info("Initial sync requested", account_id=job.account_id)
    try:
        return await orchestrator.perform_initial_sync(job)
    except AccountNotFoundError as e:
        raise _not_found(e)


@router.post("/incremental", response_model=SyncResult)
async def trigger_incremental_sync(
    job: IncrementalSyncJob,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncResult:
    """
    Collect new media for one account.

    Pass ``account_id="system"`` to process every eligible account.
    """
    logger.info("Incremental sync requested", account_id=job.account_id)
    try:
        return await orchestrator.perform_incremental_sync(job)
    except AccountNotFoundError as e:
        raise _not_found(e)


@router.post("/daily", response_model=SyncResult)
async def trigger_daily_sync(
    job: DailySyncJob,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncResult:
    """Refresh account figures and post rollups."""
    logger.info("Daily sync requested", account_id=job.account_id)
    try:
        return await orchestrator.perform_daily_sync(job)
    except AccountNotFoundError as e:
        raise _not_found(e)


@router.get("/rate-limits/{platform}/{endpoint}", response_model=RateLimitInfo)
async def get_rate_limit(
    platform: Platform,
    endpoint: str,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitInfo:
    """Current window state for a platform endpoint."""
    return rate_limiter.get_rate_limit_info(platform, endpoint)


@router.get("/comparison/{account_id}", response_model=ComparisonResult)
async def get_comparison(
    account_id: str,
    comparison: ComparisonService = Depends(get_comparison_service),
) -> ComparisonResult:
    """Compare the two latest account snapshots."""
    result = await comparison.get_account_comparison(account_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not enough account history to compare",
        )
    return result
