import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from notifications import NotificationSink, build_sink
from notifier import BudgetAlertNotifier, SweepResult


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, sink: Optional[NotificationSink] = None) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.notifier = BudgetAlertNotifier(
            session_scope,
            sink or build_sink(settings),
            max_workers=settings.sweep_workers,
            currency_code=settings.currency_code,
            app_url=settings.app_url,
        )

    def _run_job(self, source: str = "manual") -> None:
        try:
            self.run_now(source)
        except Exception:
            logger.exception(f"scheduler_run: source={source} sweep aborted")

    def run_now(
        self,
        source: str = "manual",
        today: Optional[date] = None,
        user_id: Optional[int] = None,
    ) -> SweepResult:
        logger.info(f"scheduler_run: source={source} user={user_id}")
        result = self.notifier.sweep(today, user_id=user_id)
        logger.info(f"scheduler_run: source={source} {result.as_dict()}")
        return result

    def start(self) -> None:
        hour = self.settings.alert_hour
        minute = self.settings.alert_minute
        trigger = CronTrigger(hour=hour, minute=minute)
        label = f"daily_{hour:02d}:{minute:02d}"
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[label],
            id="budget_alerts_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with budget alert sweep at {label}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
