import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from database import session_scope
from periods import utcnow
from rate_limit import RATE_LIMIT_POLICIES
from services import purge_expired_rate_limit_buckets


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.max_window_seconds = max(
            policy.window_seconds for policy in RATE_LIMIT_POLICIES.values()
        )

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"rate_limit_purge: source={source}")
        with session_scope() as session:
            count = purge_expired_rate_limit_buckets(
                session, utcnow(), self.max_window_seconds
            )
            logger.info(f"rate_limit_purge: source={source} buckets_removed={count}")

    def start(self) -> None:
        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly"],
            id="rate_limit_purge",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with hourly rate limit purge")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
