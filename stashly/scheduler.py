"""
APScheduler configuration for Stashly.

Runs the backup pipeline on the configured cron schedule. A tick that
fires while the previous run is still going is dropped: the job runs with
max_instances=1 and the executor holds a single-run lock.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.events import EVENT_JOB_MAX_INSTANCES

from stashly.config import ConfigError
from stashly.backup.executor import execute_backup, RunInProgressError


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup'

# Global scheduler instance
scheduler = None


def build_trigger(cron: str) -> CronTrigger:
    """
    Parse a crontab expression into a UTC trigger.

    Raises:
        ConfigError: If the expression is invalid
    """
    try:
        return CronTrigger.from_crontab(cron, timezone='UTC')
    except ValueError as e:
        raise ConfigError(f"Invalid cron expression '{cron}': {e}")


def init_scheduler(config):
    """
    Initialize and configure APScheduler with the backup job.

    Args:
        config: Config instance

    Returns:
        The scheduler (not started)
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    trigger = build_trigger(config.backup.cron)

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[config],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='PostgreSQL backup',
        replace_existing=True
    )

    scheduler.add_listener(_on_max_instances, EVENT_JOB_MAX_INSTANCES)

    logger.info(f"Scheduled backup job to run every {config.backup.cron}")
    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until the scheduler is shut down.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    logger.info("Starting scheduler")
    scheduler.start()


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None


def _on_max_instances(event):
    logger.warning(
        f"Skipped scheduled run of job {event.job_id}: previous run still in progress"
    )


def _execute_backup_wrapper(config):
    """
    Run one backup from the scheduler thread.

    Nothing is raised back into APScheduler; outcomes are already notified
    by the executor and the next tick retries naturally.
    """
    try:
        run = execute_backup(config)
    except RunInProgressError as e:
        logger.warning(f"Skipping scheduled backup: {e}")
        return
    except Exception:
        logger.exception("Scheduled backup crashed")
        return

    if run.status == 'success':
        logger.info(f"Scheduled backup completed successfully: {run.key}")
    else:
        logger.error(f"Scheduled backup failed: {run.error_message}")
