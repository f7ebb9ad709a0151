# background/engine_scheduler.py
"""
Engine Scheduler - periodic batch jobs.
Uses APScheduler for task scheduling.

Jobs:
- Investment accrual: every day at 02:00 UTC (catches up missed cycles)
- Rank evaluation and salary: 1st of month at 03:00 UTC
- Expired OTP cleanup: every 5 minutes

Every job is re-entrant: the accrual and salary batches resume from their
per-investment/per-user markers, so a restart never pays twice.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.db import get_db_session_ctx
from mlm_engine.services.accrual_service import AccrualService
from mlm_engine.services.otp_service import OTPService
from mlm_engine.services.rank_service import RankService
from mlm_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class EngineScheduler:
    """
    Background scheduler for engine batch jobs.
    """

    def __init__(self):
        self.isRunning = False

        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 3600
            }
        )

        self.stats = {
            "tasksExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "lastAccrual": None,
            "lastSalary": None,
            "otpSessionsCleaned": 0,
        }

    async def start(self):
        """Start scheduler with all jobs."""
        if self.isRunning:
            logger.warning("Engine Scheduler already running")
            return

        logger.info("=" * 60)
        logger.info("Starting Engine Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Investment accrual (every day at 02:00 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_accrual_wrapper,
            trigger=CronTrigger(hour=2, minute=0),
            id='daily_accrual',
            name='Investment Accrual (02:00 UTC)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Investment Accrual (02:00 UTC)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Rank and salary (1st of month at 03:00 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_salary_wrapper,
            trigger=CronTrigger(day=1, hour=3, minute=0),
            id='monthly_salary',
            name='Rank Salary (1st, 03:00 UTC)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Rank Salary (1st of month, 03:00 UTC)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 3: Expired OTP cleanup (every 5 minutes)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_otp_cleanup_wrapper,
            trigger=IntervalTrigger(minutes=5),
            id='otp_cleanup',
            name='OTP Cleanup',
            replace_existing=True
        )
        logger.info("✓ Job registered: OTP Cleanup (every 5 minutes)")

        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ Engine Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping Engine Scheduler...")
        self.isRunning = False

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ Engine Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    def _record_error(self, job: str, e: Exception):
        logger.error(f"Error in {job} job: {e}", exc_info=True)
        self.stats["errors"] += 1
        self.stats["lastError"] = f"{job}: {e}"

    async def _safe_accrual_wrapper(self):
        try:
            await self.runAccrual()
        except Exception as e:
            self._record_error("accrual", e)

    async def _safe_salary_wrapper(self):
        try:
            await self.runSalary()
        except Exception as e:
            self._record_error("salary", e)

    async def _safe_otp_cleanup_wrapper(self):
        try:
            self.cleanupOtp()
        except Exception as e:
            self._record_error("otp cleanup", e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    async def runAccrual(self) -> dict:
        """Accrue every due investment cycle."""
        logger.info(f"Executing accrual for {timeMachine.now.date()}")

        with get_db_session_ctx() as session:
            result = await AccrualService(session).runAccrual()

        self.stats["tasksExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
        self.stats["lastAccrual"] = {
            "at": timeMachine.now.isoformat(),
            "cyclesPosted": result["cyclesPosted"],
            "errors": result["errors"],
        }
        return result

    async def runSalary(self, period: str = None) -> dict:
        """Evaluate ranks and pay salary for the period (default: current month)."""
        period = period or timeMachine.currentMonth
        logger.info(f"Executing rank salary for {period}")

        with get_db_session_ctx() as session:
            result = await RankService(session).runMonthlySalary(period)

        self.stats["tasksExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
        self.stats["lastSalary"] = {
            "period": period,
            "paid": result["paid"],
            "errors": result["errors"],
        }
        return result

    def cleanupOtp(self) -> int:
        with get_db_session_ctx() as session:
            deleted = OTPService(session, delivery=None).cleanupExpired()
        self.stats["otpSessionsCleaned"] += deleted
        return deleted

    def getStatus(self) -> dict:
        """Get scheduler status."""
        jobs_info = []
        if self.scheduler.running:
            for job in self.scheduler.get_jobs():
                jobs_info.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            "isRunning": self.isRunning,
            "schedulerRunning": self.scheduler.running,
            "currentTime": timeMachine.now.isoformat(),
            "isTestMode": timeMachine.isTestMode,
            "stats": self.stats,
            "jobs": jobs_info
        }


# Global scheduler instance (created in treeledger.py)
scheduler: Optional[EngineScheduler] = None
