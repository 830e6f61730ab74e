"""
Background Sync Scheduler

This service triggers the periodic jobs in-process:
- Incremental sync for all eligible accounts
- Daily rollup for all eligible accounts
- Cache cleanup
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from insightsync.config.settings import Settings, get_settings
from insightsync.models.analytics import DailySyncJob, IncrementalSyncJob, utc_now
from insightsync.services.cache import AnalyticsCache
from insightsync.services.sync import SYSTEM_ACCOUNT_ID, SyncOrchestrator

CHECK_INTERVAL_SECONDS = 30
ERROR_BACKOFF_SECONDS = 60


class SyncScheduler:
    """Interval scheduler for sync jobs."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        cache: Optional[AnalyticsCache] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize scheduler with the orchestrator it drives."""
        settings = settings or get_settings()
        self.logger = structlog.get_logger(__name__)
        self.orchestrator = orchestrator
        self.cache = cache

        self.is_running = False
        self.job_intervals = {
            "incremental_sync": settings.incremental_sync_interval_seconds,
            "daily_sync": settings.daily_sync_interval_seconds,
            "cache_cleanup": settings.cache_ttl_minutes * 60,
        }
        self.last_run: Dict[str, datetime] = {}

    async def start(self) -> None:
        """Start the scheduler loop. Returns when ``stop`` is called."""
        if self.is_running:
            self.logger.warning("Scheduler already running")
            return

        self.is_running = True
        self.logger.info("Starting sync scheduler", intervals=self.job_intervals)

        current_time = utc_now()
        for job_name in self.job_intervals:
            self.last_run.setdefault(job_name, current_time)

        await self._run_scheduler_loop()

    async def stop(self) -> None:
        """Stop the scheduler loop after the current check."""
        self.is_running = False
        self.logger.info("Stopping sync scheduler")

    async def _run_scheduler_loop(self) -> None:
        while self.is_running:
            try:
                await self._check_and_run_jobs(utc_now())
                await asyncio.sleep(CHECK_INTERVAL_SECONDS)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Scheduler loop error", error=str(e))
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    def due_jobs(self, current_time: datetime) -> list:
        """Names of jobs whose interval has elapsed."""
        due = []
        for job_name, interval_seconds in self.job_intervals.items():
            last_run = self.last_run.get(job_name)
            if last_run is None or (current_time - last_run).total_seconds() >= interval_seconds:
                due.append(job_name)
        return due

    async def _check_and_run_jobs(self, current_time: datetime) -> None:
        jobs_to_run = self.due_jobs(current_time)
        if not jobs_to_run:
            return

        self.logger.info("Running scheduled jobs", jobs=jobs_to_run)
        await asyncio.gather(
            *(self._run_job(job_name, current_time) for job_name in jobs_to_run),
            return_exceptions=True,
        )

    async def _run_job(self, job_name: str, current_time: datetime) -> Any:
        try:
            self.logger.info("Starting job", job=job_name)

            result: Any = None
            if job_name == "incremental_sync":
                result = await self._incremental_sync_job()
            elif job_name == "daily_sync":
                result = await self._daily_sync_job()
            elif job_name == "cache_cleanup":
                result = self._cache_cleanup_job()

            self.last_run[job_name] = current_time
            self.logger.info("Job completed", job=job_name, result=result)
            return result

        except Exception as e:
            self.logger.error("Job failed", job=job_name, error=str(e))
            return None

    async def _incremental_sync_job(self) -> Dict[str, Any]:
        result = await self.orchestrator.perform_incremental_sync(
            IncrementalSyncJob(account_id=SYSTEM_ACCOUNT_ID)
        )
        return result.model_dump(include={"success", "posts_processed", "analytics_updated", "errors"})

    async def _daily_sync_job(self) -> Dict[str, Any]:
        result = await self.orchestrator.perform_daily_sync(
            DailySyncJob(account_id=SYSTEM_ACCOUNT_ID)
        )
        return result.model_dump(include={"success", "posts_processed", "analytics_updated", "errors"})

    def _cache_cleanup_job(self) -> Dict[str, int]:
        if self.cache is None:
            return {"valid": 0, "expired": 0}
        stats = self.cache.cleanup()
        return {"valid": stats.valid, "expired": stats.expired}

    async def run_job_once(self, job_name: str) -> Dict[str, Any]:
        """Run a specific job immediately."""
        if job_name not in self.job_intervals:
            raise ValueError(f"Unknown job: {job_name}")

        self.logger.info("Running job manually", job=job_name)
        current_time = utc_now()
        result = await self._run_job(job_name, current_time)
        return {"job": job_name, "run_at": current_time, "result": result}

    def get_job_status(self) -> Dict[str, Any]:
        """Get current status of the scheduler and jobs."""
        current_time = utc_now()
        job_statuses = {}

        for job_name, interval_seconds in self.job_intervals.items():
            last_run = self.last_run.get(job_name)
            if last_run:
                elapsed = (current_time - last_run).total_seconds()
                next_run_in = max(0, interval_seconds - elapsed)
            else:
                elapsed = None
                next_run_in = 0

            job_statuses[job_name] = {
                "interval_seconds": interval_seconds,
                "last_run": last_run,
                "time_since_last_run": elapsed,
                "next_run_in": next_run_in,
            }

        return {
            "is_running": self.is_running,
            "current_time": current_time,
            "jobs": job_statuses,
        }
