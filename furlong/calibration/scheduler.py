"""Background scheduling for calibration work."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from furlong.calibration.autologger import AutoLogOptions, auto_log_calibration_data
from furlong.calibration.cards import ParsedCard, ScoredRace
from furlong.calibration.manager import CalibrationManager
from furlong.calibration.storage import CalibrationStore

logger = logging.getLogger(__name__)

RECALIBRATION_JOB_ID = "calibration-readiness"


class CalibrationScheduler:
    """Runs auto-logging off the request path and polls for recalibration."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if not self._started:
            self.scheduler.start()
            self._started = True
            logger.info("Calibration scheduler started")

    async def stop(self) -> None:
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Calibration scheduler stopped")

    def schedule_auto_log(
        self,
        store: CalibrationStore,
        manager: CalibrationManager,
        card: ParsedCard,
        scored_races: Optional[list[ScoredRace]] = None,
        options: Optional[AutoLogOptions] = None,
        delay_seconds: float = 0.1,
    ) -> str:
        """Queue a one-shot auto-log run shortly after now; returns the job id."""
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        job_id = f"auto-log-{card.filename or 'card'}-{run_at.timestamp():.3f}"

        async def run() -> None:
            try:
                await auto_log_calibration_data(store, manager, card, scored_races, options)
            except Exception as e:
                logger.error(f"Scheduled auto-logging failed: {e}", exc_info=True)

        self.scheduler.add_job(
            run,
            DateTrigger(run_date=run_at),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=60,
        )
        logger.info(f"Scheduled auto-log job {job_id}")
        return job_id

    def schedule_recalibration_checks(self, manager: CalibrationManager, minutes: int = 60) -> str:
        """Poll ``manager.check_readiness`` every ``minutes``."""

        async def check() -> None:
            try:
                ready = await manager.check_readiness()
                logger.debug(f"Calibration readiness check: ready={ready}")
            except Exception as e:
                logger.error(f"Calibration readiness check failed: {e}", exc_info=True)

        self.scheduler.add_job(
            check,
            IntervalTrigger(minutes=minutes),
            id=RECALIBRATION_JOB_ID,
            replace_existing=True,
            misfire_grace_time=60,
        )
        logger.info(f"Calibration readiness check every {minutes} minutes")
        return RECALIBRATION_JOB_ID

    def remove_job(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except Exception as e:
            logger.warning(f"Could not remove job {job_id}: {e}")

    def get_jobs(self) -> list:
        return self.scheduler.get_jobs()
