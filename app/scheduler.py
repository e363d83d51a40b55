"""Background scheduler for periodic mirror reconciliation"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.models import Mirror
from app.models.base import SessionLocal
from app.services.sync_service import SyncService

logger = logging.getLogger(__name__)

JOB_PREFIX = "sync_mirror_"


class SyncScheduler:
    """One interval job per enabled mirror"""

    def __init__(self):
        self.scheduler = BackgroundScheduler()

    def start(self):
        self.scheduler.start()
        logger.info("Sync scheduler started")
        self.schedule_all_mirrors()

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def schedule_all_mirrors(self):
        """Schedule jobs for enabled mirrors and drop jobs of disabled or deleted ones"""
        db = SessionLocal()
        try:
            enabled = db.query(Mirror).filter(Mirror.sync_enabled == True).all()
            enabled_ids = {m.id for m in enabled}

            for job in self.scheduler.get_jobs():
                if not job.id.startswith(JOB_PREFIX):
                    continue
                mirror_id = int(job.id[len(JOB_PREFIX):])
                if mirror_id not in enabled_ids:
                    self.unschedule_mirror(mirror_id)

            for mirror in enabled:
                self.schedule_mirror(mirror.id, mirror.sync_interval_minutes)
        finally:
            db.close()

    def schedule_mirror(self, mirror_id: int, interval_minutes: int):
        job_id = f"{JOB_PREFIX}{mirror_id}"
        # Runs of the same mirror never overlap (max_instances=1).
        self.scheduler.add_job(
            func=self._sync_mirror_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            args=[mirror_id],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled sync for mirror {mirror_id} every {interval_minutes} minutes")

    def unschedule_mirror(self, mirror_id: int):
        job_id = f"{JOB_PREFIX}{mirror_id}"
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)
            logger.info(f"Unscheduled sync for mirror {mirror_id}")

    def _sync_mirror_job(self, mirror_id: int):
        db = SessionLocal()
        try:
            logger.info(f"Running scheduled sync for mirror {mirror_id}")
            result = SyncService(db).sync_mirror(mirror_id)
            logger.info(f"Scheduled sync completed for mirror {mirror_id}: {result}")
        except Exception as e:
            logger.error(f"Scheduled sync failed for mirror {mirror_id}: {e}")
        finally:
            db.close()


# Global scheduler instance
scheduler = SyncScheduler()
