from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import get_settings
from .near_limit_scanner import NearLimitScanner, ScanSummary

logger = structlog.get_logger(__name__)


class AnalysisScheduler:
    def __init__(self, scanner: NearLimitScanner):
        self.scanner = scanner
        self.scheduler = AsyncIOScheduler()
        self._scan_running = False

    async def run_near_limit_scan(self) -> Optional[ScanSummary]:
        """Scheduled near-limit scan; skipped while a previous run is in flight."""
        if self._scan_running:
            logger.warning("Near-limit scan already running, skipping")
            return None

        self._scan_running = True
        try:
            return await self.scanner.scan()
        except Exception as e:
            logger.error("Near-limit scan failed", error=str(e))
            return None
        finally:
            self._scan_running = False

    def start(self) -> None:
        settings = get_settings()
        if settings.near_limit_scan_enabled:
            self.scheduler.add_job(
                self.run_near_limit_scan,
                IntervalTrigger(minutes=settings.near_limit_scan_interval_minutes),
                id="near_limit_scan",
                replace_existing=True,
            )
            logger.info(
                "Near-limit scan scheduled",
                interval_minutes=settings.near_limit_scan_interval_minutes,
            )

        self.scheduler.start()
        logger.info("Analysis scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Analysis scheduler shut down")

    def get_jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]
