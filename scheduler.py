import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import session_scope
from models import utcnow
from services import archive_expired_periods


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DAILY_JOB_ID = "archive_expired_daily"
HOURLY_JOB_ID = "archive_expired_hourly"


@dataclass
class ArchiveRun:
    source: str
    archived_ids: list[int] = field(default_factory=list)
    finished_at: Optional[datetime] = None


class SchedulerManager:
    """Archives budget periods once their end date has passed."""

    def __init__(self, session_factory: Optional[sessionmaker[Session]] = None) -> None:
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=get_settings().timezone)
        self.last_run: Optional[ArchiveRun] = None

    def archive_now(self, source: str = "manual") -> ArchiveRun:
        run = ArchiveRun(source=source)
        with session_scope(self.session_factory) as session:
            run.archived_ids = [p.id for p in archive_expired_periods(session)]
        run.finished_at = utcnow()
        self.last_run = run
        if run.archived_ids:
            logger.info(f"archive_job: source={source} archived={run.archived_ids}")
        else:
            logger.debug(f"archive_job: source={source} nothing to archive")
        return run

    def _schedule(self) -> None:
        tz = self.scheduler.timezone
        # Just after local midnight, plus an hourly pass for missed runs.
        jobs = (
            (DAILY_JOB_ID, CronTrigger(hour=0, minute=5, timezone=tz), 3600),
            (HOURLY_JOB_ID, IntervalTrigger(hours=1, timezone=tz), 300),
        )
        for job_id, trigger, grace in jobs:
            self.scheduler.add_job(
                self.archive_now,
                trigger,
                args=[job_id],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
            )

    def start(self) -> None:
        self.archive_now("startup")
        self._schedule()
        self.scheduler.start()
        logger.info(f"scheduler_started: jobs={[j.id for j in self.scheduler.get_jobs()]}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")
