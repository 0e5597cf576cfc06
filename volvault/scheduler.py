"""
APScheduler-backed registry of recurring backups for Volvault.

Manages:
- One cron timer per enabled schedule, keyed by schedule id
- Loading enabled schedules at startup
- Manual "run now" triggers
- Stopping every timer at shutdown
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from volvault import store
from volvault.exceptions import NotFound
from volvault.models import ALL_VOLUMES
from volvault.backup.executor import BackupOptions, create_backup
from volvault.backup.retention import apply_retention


logger = logging.getLogger(__name__)


def parse_cron(expression: str, timezone: str = 'UTC') -> Optional[CronTrigger]:
    """Five-field crontab expression as a trigger, or None if it is invalid."""
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid cron expression {expression!r}: {e}")
        return None


class ScheduleRegistry:
    """
    Holds the active timer for each enabled schedule.

    Jobs are kept in APScheduler's in-memory store and rebuilt from the
    database by `load_enabled()`, so the schedules table is the only
    persistent state.
    """

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self.app = None
        self.scheduler = scheduler
        self.timezone = 'UTC'
        self._jobs: Dict[int, object] = {}

    def init(self, app):
        """Bind to the app and build the background scheduler."""
        self.app = app
        self.timezone = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

        if self.scheduler is None:
            executors = {
                'default': ThreadPoolExecutor(max_workers=app.config.get('SCHEDULER_MAX_WORKERS', 3))
            }
            job_defaults = {
                'coalesce': True,  # Combine multiple pending instances into one
                'max_instances': 1,  # Only one instance of a schedule at a time
                'misfire_grace_time': 300  # 5 minutes grace period for misfires
            }
            self.scheduler = BackgroundScheduler(
                executors=executors,
                job_defaults=job_defaults,
                timezone=self.timezone
            )
        return self

    def start(self):
        """Start the scheduler and register every enabled schedule."""
        if self.scheduler is None:
            raise RuntimeError("Scheduler not initialized. Call init() first.")

        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

        with self.app.app_context():
            self.load_enabled()

    def load_enabled(self) -> int:
        """
        Register a timer for every enabled schedule.

        Returns:
            Number of schedules with an active timer
        """
        count = 0
        for schedule in store.list_enabled_schedules():
            if self.add_job(schedule) is not None:
                count += 1
        logger.info(f"Loaded {count} scheduled backup(s)")
        return count

    def add_job(self, schedule):
        """
        Replace the timer for a schedule.

        Any existing timer for the schedule is removed first. An invalid cron
        expression leaves the schedule with no timer.

        Returns:
            The APScheduler job, or None if no timer was registered
        """
        self.remove_job(schedule.id)

        if not schedule.enabled:
            return None

        trigger = parse_cron(schedule.cron_expression, self.timezone)
        if trigger is None:
            logger.warning(f"Schedule {schedule.name} not registered (invalid cron)")
            return None

        job = self.scheduler.add_job(
            func=self._fire,
            args=[schedule.id],
            trigger=trigger,
            id=f"schedule_{schedule.id}",
            name=f"Backup: {schedule.name}",
            replace_existing=True
        )
        self._jobs[schedule.id] = job
        logger.info(f"Scheduled backup: {schedule.name} ({schedule.cron_expression})")
        return job

    def remove_job(self, schedule_id: int):
        """Stop and discard the timer for a schedule, if any."""
        job = self._jobs.pop(schedule_id, None)
        if job is None:
            return
        try:
            job.remove()
            logger.info(f"Removed scheduled backup {schedule_id}")
        except JobLookupError:
            pass

    def stop_all(self):
        """Stop every timer and shut the scheduler down. In-flight runs are not aborted."""
        for schedule_id in list(self._jobs):
            self.remove_job(schedule_id)

        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def has_job(self, schedule_id: int) -> bool:
        return schedule_id in self._jobs

    def get_jobs(self) -> List[dict]:
        jobs = []
        for schedule_id, job in list(self._jobs.items()):
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'schedule_id': schedule_id,
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
            })
        return jobs

    def run_now(self, schedule_id: int) -> int:
        """
        Run a schedule immediately in the caller's thread, even if disabled.

        Returns:
            ID of the Backup record

        Raises:
            NotFound: If the schedule does not exist
        """
        schedule = store.get_schedule(schedule_id)
        if schedule is None:
            raise NotFound(f"Schedule not found: {schedule_id}")
        return run_schedule(schedule)

    def _fire(self, schedule_id: int):
        with self.app.app_context():
            try:
                schedule = store.get_schedule(schedule_id)
                if schedule is None or not schedule.enabled:
                    logger.info(f"Skipping schedule {schedule_id} (deleted or disabled)")
                    return
                logger.info(f"Running scheduled backup: {schedule.name}")
                backup_id = run_schedule(schedule)
                logger.info(f"Scheduled backup {schedule.name} completed (backup {backup_id})")
            except Exception as e:
                logger.error(f"Scheduled backup {schedule_id} failed: {e}")


def get_registry(app=None) -> ScheduleRegistry:
    from flask import current_app
    app = app or current_app
    return app.extensions['volvault.scheduler']


def run_schedule(schedule) -> int:
    """Back up every volume of the schedule's node, then prune old runs."""
    schedule_id = schedule.id
    node_id = schedule.node_id
    storage_type = schedule.storage_type
    keep = schedule.retention_count

    backup_id = create_backup(BackupOptions(
        node_id=node_id,
        storage_type=storage_type,
        volume_name=ALL_VOLUMES
    ))
    store.update_schedule(schedule_id, last_run=datetime.utcnow())
    apply_retention(node_id, storage_type, keep)
    return backup_id
