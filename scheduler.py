import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

import ledger
from config import get_settings
from database import session_scope
from services import AccountService, RecurringService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_maintenance(session) -> dict[str, int]:
    """Recalculate every ledger, then refresh recurring detection per active account."""
    results = ledger.recalculate_all(session)
    detected = 0
    for account in AccountService(session).list(active_only=True):
        outcome = RecurringService(session).detect(account.id)
        detected += outcome.created + outcome.updated
    return {"accounts": len(results), "recurring_detected": detected}


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            stats = run_maintenance(session)
        logger.info(
            f"scheduler_run: source={source} accounts={stats['accounts']} "
            f"recurring_detected={stats['recurring_detected']}"
        )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="ledger_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 maintenance")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
