import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Settings, get_settings
from storage import PersistenceError
from tracker import FinanceTracker


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, tracker: FinanceTracker, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.tracker = tracker
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        if self.tracker.pending:
            self.tracker.retry_pending()
        try:
            outcome = self.tracker.materialize_due()
        except PersistenceError:
            # already logged and queued for retry by the tracker
            return
        if not outcome.ok:
            logger.warning(f"scheduler_run: source={source} error={outcome.error}")
            return
        logger.info(f"scheduler_run: source={source} occurrences_posted={len(outcome.value)}")

    def start(self) -> None:
        self._run_job("startup")

        hour = self.settings.materialize_hour
        minute = self.settings.materialize_minute
        trigger = CronTrigger(hour=hour, minute=minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily {hour:02d}:{minute:02d} and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
