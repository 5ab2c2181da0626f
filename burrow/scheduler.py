"""
APScheduler configuration and job scheduling for Burrow.

Manages:
- Scheduled backups (one cron job per service with a schedule)
- Manual backup triggers
- Cancellation of in-flight work on shutdown
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from burrow.backup.cancellation import OperationCancelled
from burrow.config import ConfigError


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def _runner():
    return flask_app.extensions['burrow']


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance with a Runner in app.extensions['burrow']
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after the Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state})")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} scheduled jobs:")
            for job in jobs:
                next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
                logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
        else:
            logger.info("No scheduled jobs loaded")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler(wait: bool = True):
    """
    Stop the APScheduler.

    The shared cancellation event is set first so running backups abandon
    their waits and commands instead of holding up shutdown.
    """
    if flask_app is not None:
        _runner().cancel_event.set()

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("APScheduler stopped")


def parse_schedule(service) -> CronTrigger:
    """
    Build the UTC cron trigger for a service's schedule.

    Raises:
        ConfigError: If the expression is not a valid five-field crontab
    """
    try:
        return CronTrigger.from_crontab(service.schedule, timezone='UTC')
    except ValueError as e:
        raise ConfigError(f"Invalid schedule for service {service.name}: {service.schedule!r}: {e}") from e


def sync_service_jobs():
    """
    Synchronize services from the loaded configuration to the scheduler.

    Services with a schedule get a cron job; jobs for services that no longer
    have one are removed.

    Raises:
        ConfigError: If a schedule is not a valid crontab expression
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    settings = _runner().settings
    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for service in settings.services.values():
        job_id = f"backup_{service.name}"
        if not service.schedule:
            continue

        trigger = parse_schedule(service)

        scheduler.add_job(
            func=_execute_backup_wrapper,
            args=[service.name],
            trigger=trigger,
            id=job_id,
            name=f"Backup: {service.name}",
            replace_existing=True
        )
        scheduled_job_ids.discard(job_id)
        logger.info(f"Scheduled backup of {service.name} ({service.schedule})")

    # Remove jobs for services that are gone or unscheduled
    for leftover_id in scheduled_job_ids:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed orphaned scheduled job: {leftover_id}")
        except JobLookupError:
            pass


def _execute_backup_wrapper(service_name: str):
    """
    Run a backup followed by retention cleanup in scheduler context.

    Failures are logged here; they are already recorded in the run history.
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup of {service_name}")
            artifact = _runner().backup_and_cleanup(service_name)
            logger.info(f"Scheduled backup of {service_name} completed: {artifact.name}")
        except OperationCancelled as e:
            logger.warning(f"Scheduled backup of {service_name} cancelled: {e}")
        except Exception as e:
            logger.error(f"Scheduled backup of {service_name} failed: {e}")


def trigger_backup_now(service_name: str) -> str:
    """
    Queue an immediate backup of a service.

    Args:
        service_name: Name of a configured service

    Returns:
        ID of the queued scheduler job

    Raises:
        ConfigError: If the service is unknown
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if _runner().settings.get_service(service_name) is None:
        raise ConfigError(f"Service not found: {service_name}")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{service_name}_{int(now.timestamp())}"

    # One second delay avoids racing the scheduler's wakeup
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[service_name],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name=f"Manual: {service_name}",
        replace_existing=True
    )

    logger.info(f"Manually triggered backup of {service_name}")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
