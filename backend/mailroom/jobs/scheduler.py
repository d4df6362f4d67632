"""
In-process scheduler for the email cron.

Used when ``SCHEDULER_ENABLED=true``; otherwise the platform scheduler calls
``/cron/email``. Either way concurrent runs are arbitrated by the persisted
``email-cron`` lease, so a second process running its own scheduler only
produces skipped ticks.
"""
from datetime import timedelta
from typing import Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from mailroom.lib.logging import get_logger

logger = get_logger(__name__)

_scheduler: Optional["SchedulerManager"] = None

# A tick that starts late is still worth running, but two queued ticks are not.
JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 300,
}


class SchedulerManager:
    """
    Wraps a UTC BackgroundScheduler and logs every job outcome.

    Cron jobs return the run summary dict; its counters are attached to the
    log record so a tick can be followed without the HTTP endpoint.
    """

    def __init__(self):
        self.scheduler = BackgroundScheduler(timezone="UTC", job_defaults=JOB_DEFAULTS)
        self.scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    def _on_job_event(self, event: JobExecutionEvent) -> None:
        if event.code == EVENT_JOB_ERROR:
            logger.error(
                f"Scheduled job {event.job_id} failed: {event.exception!r}",
                exc_info=event.exception,
                extra={"job_id": event.job_id},
            )
        elif event.code == EVENT_JOB_MISSED:
            logger.warning(
                f"Scheduled job {event.job_id} missed its run time",
                extra={"job_id": event.job_id, "scheduled_run_time": str(event.scheduled_run_time)},
            )
        else:
            extra = {"job_id": event.job_id}
            if isinstance(event.retval, dict):
                extra["summary"] = event.retval
            logger.info(f"Scheduled job {event.job_id} finished", extra=extra)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        logger.info("Scheduler started", extra={"jobs": [job.id for job in self.scheduler.get_jobs()]})

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler; ``wait`` blocks until a running tick returns."""
        if not self.scheduler.running:
            logger.warning("Scheduler not running")
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def add_interval_job(
        self,
        func: Callable,
        job_id: str,
        seconds: Optional[int] = None,
        minutes: Optional[int] = None,
        **kwargs,
    ) -> None:
        """
        Schedule ``func`` every ``seconds`` + ``minutes``, replacing any job
        already registered under ``job_id``.

        Raises:
            ValueError: if the interval is empty
        """
        interval = timedelta(seconds=seconds or 0, minutes=minutes or 0)
        if interval <= timedelta(0):
            raise ValueError(f"Job {job_id} needs a positive interval")

        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=int(interval.total_seconds()), timezone="UTC"),
            id=job_id,
            replace_existing=True,
            **kwargs,
        )
        logger.info(f"Scheduled job {job_id} every {interval}", extra={"job_id": job_id})

    def add_daily_job(self, func: Callable, job_id: str, hour: int, minute: int = 0, **kwargs) -> None:
        """Schedule ``func`` once a day at ``hour:minute`` UTC, replacing any job with the same id."""
        self.scheduler.add_job(
            func,
            trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
            id=job_id,
            replace_existing=True,
            **kwargs,
        )
        logger.info(f"Scheduled job {job_id} daily at {hour:02d}:{minute:02d} UTC", extra={"job_id": job_id})

    def remove_job(self, job_id: str) -> None:
        self.scheduler.remove_job(job_id)
        logger.info(f"Removed scheduled job {job_id}", extra={"job_id": job_id})

    def get_jobs(self) -> list:
        return self.scheduler.get_jobs()


def get_scheduler() -> SchedulerManager:
    """Process-wide scheduler, created on first use."""
    global _scheduler

    if _scheduler is None:
        _scheduler = SchedulerManager()

    return _scheduler
