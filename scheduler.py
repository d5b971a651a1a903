import logging
import time
from typing import Callable, ContextManager, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import init_db, session_scope
from models import Budget
from services import AlertService, RecalculationService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def reconcile_budgets(session: Session) -> tuple[int, int]:
    """Recompute every active budget and fire any alerts it now crosses.

    Transaction writes already recalculate the budgets they touch; this is
    the safety net for writes that bypassed the service layer.
    """
    recalculator = RecalculationService(session)
    alerts = AlertService(session)
    budget_ids = session.scalars(
        select(Budget.id).where(Budget.is_active.is_(True))
    ).all()
    recalculator.recalculate_many(budget_ids)

    fired = 0
    for budget_id in budget_ids:
        fired += len(alerts.evaluate_alerts(budget_id))
    return len(budget_ids), fired


class SchedulerManager:
    def __init__(
        self, session_factory: Optional[Callable[[], ContextManager[Session]]] = None
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory or session_scope
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"reconcile_run: source={source}")
        with self.session_factory() as session:
            budgets, fired = reconcile_budgets(session)
            logger.info(
                f"reconcile_run: source={source} budgets={budgets} alerts_fired={fired}"
            )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(
            hour=self.settings.reconcile_hour, minute=self.settings.reconcile_minute
        )
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily"],
            id="reconcile_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="reconcile_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with daily "
            f"{self.settings.reconcile_hour:02d}:{self.settings.reconcile_minute:02d} "
            "and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")


def main() -> None:
    init_db()
    manager = SchedulerManager()
    manager.start()
    try:
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        manager.stop()


if __name__ == "__main__":
    main()
