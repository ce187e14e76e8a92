import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from chainindex.container import Services
from chainindex.worker import run_embedding_backfill

logger = logging.getLogger(__name__)

class SchedulerService:
    def __init__(self, services: Services):
        self.services = services
        self.scheduler = AsyncIOScheduler()

    def start(self) -> bool:
        settings = self.services.settings
        if not settings.ENABLE_EMBEDDING_BACKFILL:
            return False

        try:
            # Parse time string "HH:MM"
            hour, minute = map(int, settings.EMBEDDING_BACKFILL_TIME.split(":"))
            trigger = CronTrigger(hour=hour, minute=minute, timezone="UTC")
        except ValueError:
            logger.error(f"Invalid EMBEDDING_BACKFILL_TIME format: {settings.EMBEDDING_BACKFILL_TIME}. Scheduler not started.")
            return False

        self.scheduler.add_job(
            run_embedding_backfill,
            trigger=trigger,
            args=[self.services],
            id="daily_embedding_backfill_job",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Scheduler started. Embedding back-fill scheduled daily at {settings.EMBEDDING_BACKFILL_TIME} UTC.")
        return True

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
