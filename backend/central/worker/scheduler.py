"""
定时任务调度器

运行方式：
    python -m central.worker.scheduler
"""

import logging
from datetime import timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from central.core.config import settings
from central.worker.tasks import retry_pending_submissions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> None:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    scheduler.add_job(
        retry_pending_submissions,
        IntervalTrigger(minutes=settings.FORWARD_RETRY_INTERVAL_MINUTES),
        id="retry_pending_submissions",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(
        "Scheduler started. Submission forward retry runs every %d minutes.",
        settings.FORWARD_RETRY_INTERVAL_MINUTES,
    )
    scheduler.start()


if __name__ == "__main__":
    main()
