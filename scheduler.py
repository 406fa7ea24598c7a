import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from closures import close_elapsed_periods
from config import get_settings
from recurrence import expand_due_templates


settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Runs the recurring-transaction and budget-closure jobs.

    The jobs share no in-memory state; each pass re-derives its work from
    the database. ``max_instances=1`` keeps a slow pass from overlapping the
    next tick of the same job, and ``coalesce`` folds missed ticks into one.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def run_recurring(self, source: str = "manual") -> int:
        logger.debug(f"recurring_run: source={source}")
        count = expand_due_templates(self.session_factory)
        if count:
            logger.info(f"recurring_run: source={source} occurrences_posted={count}")
        return count

    def run_closures(self, source: str = "manual") -> int:
        logger.info(f"closure_run: source={source}")
        count = close_elapsed_periods(self.session_factory)
        logger.info(f"closure_run: source={source} snapshots_written={count}")
        return count

    def _safe_run(self, job, source: str) -> None:
        try:
            job(source)
        except Exception:
            logger.exception(f"scheduler_job_failed: source={source}")

    def start(self) -> None:
        self._safe_run(self.run_recurring, "startup")
        self._safe_run(self.run_closures, "startup")

        trigger = IntervalTrigger(seconds=self.settings.recurring_interval_secs)
        self.scheduler.add_job(
            self._safe_run,
            trigger,
            args=[self.run_recurring, "minutely"],
            id="recurring_minutely",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )

        trigger = CronTrigger(
            hour=self.settings.closure_hour, minute=self.settings.closure_minute
        )
        self.scheduler.add_job(
            self._safe_run,
            trigger,
            args=[self.run_closures, "daily"],
            id="budget_closures_daily",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started: recurring every "
            f"{self.settings.recurring_interval_secs}s, closures daily at "
            f"{self.settings.closure_hour:02d}:{self.settings.closure_minute:02d}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
