"""
Job Scheduler

Runs the reconciliation check and the boundary refresh periodically with
the `schedule` library. A job that keeps failing is disabled after its
configured number of consecutive failures; a run skipped because another
process holds the lock is not a failure.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import schedule

from . import SCHEDULE_CONFIG
from .orchestrator import OrchestrationResult, Orchestrator

logger = logging.getLogger(__name__)

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


class ScheduleType(Enum):
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"


class JobKind(Enum):
    """Workflow a scheduled job runs."""
    CHECK = "check"
    BOUNDARIES = "boundaries"


@dataclass
class ScheduleConfig:
    """Configuration for one periodic job."""
    name: str
    kind: JobKind
    schedule_type: ScheduleType
    enabled: bool = True

    # INTERVAL
    interval_minutes: Optional[int] = None
    interval_hours: Optional[int] = None

    # DAILY
    daily_time: Optional[str] = None  # "HH:MM"

    # WEEKLY
    weekly_day: Optional[str] = None  # "monday", "tuesday", ...
    weekly_time: Optional[str] = None  # "HH:MM"

    max_consecutive_failures: int = SCHEDULE_CONFIG["max_consecutive_failures"]
    force_rebuild: bool = False

    def is_complete(self) -> bool:
        """Whether the fields required by the schedule type are set."""
        if self.schedule_type == ScheduleType.INTERVAL:
            return bool(self.interval_minutes or self.interval_hours)
        if self.schedule_type == ScheduleType.DAILY:
            return bool(self.daily_time)
        return bool(self.weekly_time and self.weekly_day
                    and self.weekly_day.lower() in WEEKDAYS)


@dataclass
class JobResult:
    """Outcome of one run of a scheduled job."""
    job_name: str
    started_at: datetime
    completed_at: datetime
    success: bool
    outcome: Optional[OrchestrationResult] = None
    error_message: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def skipped(self) -> bool:
        return self.outcome is not None and self.outcome.lock_contention

    @property
    def total_changes(self) -> int:
        return self.outcome.total_changes if self.outcome else 0


class JobScheduler:
    """Periodic runner for the check and boundary workflows."""

    def __init__(self, orchestrator: Orchestrator,
                 scheduler: Optional[schedule.Scheduler] = None,
                 history_size: int = SCHEDULE_CONFIG["history_size"],
                 poll_seconds: float = SCHEDULE_CONFIG["poll_seconds"]):
        """
        Args:
            orchestrator: Executes the check and boundary workflows
            scheduler: `schedule` scheduler, a private one by default
            history_size: Job results kept in memory
            poll_seconds: Interval between pending-job checks
        """
        self.orchestrator = orchestrator
        self.scheduler = scheduler or schedule.Scheduler()
        self.poll_seconds = poll_seconds
        self.scheduled_jobs: Dict[str, ScheduleConfig] = {}
        self.failure_counts: Dict[str, int] = {}
        self.job_history: Deque[JobResult] = deque(maxlen=history_size)
        self.notification_handlers: List[Callable[[JobResult], None]] = []
        self._stop_event = threading.Event()

    def add_notification_handler(self, handler: Callable[[JobResult], None]) -> None:
        self.notification_handlers.append(handler)

    def add_scheduled_job(self, config: ScheduleConfig) -> None:
        """
        Register a job and schedule it if it is enabled.

        Raises:
            ValueError: The schedule fields for its type are missing
        """
        if not config.is_complete():
            raise ValueError(f"Incomplete {config.schedule_type.value} schedule for job {config.name}")

        self.scheduled_jobs[config.name] = config
        self.failure_counts[config.name] = 0
        self._schedule(config)
        logger.info(f"Scheduled {config.kind.value} job {config.name} ({config.schedule_type.value})")

    def remove_scheduled_job(self, job_name: str) -> None:
        if self.scheduled_jobs.pop(job_name, None) is None:
            return
        self.failure_counts.pop(job_name, None)
        self.scheduler.clear(job_name)
        logger.info(f"Removed job {job_name}")

    def enable_job(self, job_name: str) -> None:
        config = self.scheduled_jobs.get(job_name)
        if config is None:
            return
        config.enabled = True
        self.failure_counts[job_name] = 0
        self.scheduler.clear(job_name)
        self._schedule(config)
        logger.info(f"Job {job_name} enabled")

    def disable_job(self, job_name: str) -> None:
        config = self.scheduled_jobs.get(job_name)
        if config is None:
            return
        config.enabled = False
        self.scheduler.clear(job_name)
        logger.info(f"Job {job_name} disabled")

    def run_forever(self) -> None:
        """Run pending jobs until stop() is called."""
        logger.info(f"Job scheduler started with {len(self.scheduled_jobs)} jobs")
        while not self._stop_event.is_set():
            self.scheduler.run_pending()
            self._stop_event.wait(self.poll_seconds)
        logger.info("Job scheduler stopped")

    def stop(self) -> None:
        self._stop_event.set()

    def _schedule(self, config: ScheduleConfig) -> None:
        if not config.enabled:
            return

        if config.schedule_type == ScheduleType.INTERVAL:
            if config.interval_minutes:
                job = self.scheduler.every(config.interval_minutes).minutes
            else:
                job = self.scheduler.every(config.interval_hours).hours
        elif config.schedule_type == ScheduleType.DAILY:
            job = self.scheduler.every().day.at(config.daily_time)
        else:
            weekday = getattr(self.scheduler.every(), config.weekly_day.lower())
            job = weekday.at(config.weekly_time)

        job.do(self.execute_job, config.name).tag(config.name)

    def _run_workflow(self, config: ScheduleConfig) -> OrchestrationResult:
        if config.kind == JobKind.CHECK:
            return self.orchestrator.execute_check_workflow()
        return self.orchestrator.execute_boundary_refresh(force_rebuild=config.force_rebuild)

    def execute_job(self, job_name: str) -> Optional[JobResult]:
        """Run one job now and record its result; None if it is unknown or disabled."""
        config = self.scheduled_jobs.get(job_name)
        if config is None:
            logger.error(f"Unknown job: {job_name}")
            return None
        if not config.enabled:
            return None

        logger.info(f"Running {config.kind.value} job {job_name}")
        started = datetime.now()
        try:
            outcome = self._run_workflow(config)
            result = JobResult(job_name, started, datetime.now(), outcome.success, outcome,
                               '; '.join(outcome.error_messages) or None)
        except Exception as e:
            logger.exception(f"Job {job_name} raised: {e}")
            result = JobResult(job_name, started, datetime.now(), False, error_message=str(e))

        self._record(result, config)
        return result

    def _record(self, result: JobResult, config: ScheduleConfig) -> None:
        if result.success:
            self.failure_counts[config.name] = 0
        elif result.skipped:
            logger.info(f"Job {config.name} skipped, lock held by another process")
        else:
            self.failure_counts[config.name] += 1
            if self.failure_counts[config.name] >= config.max_consecutive_failures:
                logger.error(f"Disabling job {config.name} after "
                             f"{self.failure_counts[config.name]} consecutive failures")
                self.disable_job(config.name)

        self.job_history.append(result)
        for handler in self.notification_handlers:
            try:
                handler(result)
            except Exception as e:
                logger.warning(f"Notification handler {handler!r} raised: {e}")

    def _next_run(self, job_name: str) -> Optional[datetime]:
        runs = [job.next_run for job in self.scheduler.jobs if job_name in job.tags]
        return min(runs) if runs else None

    def get_job_status(self, job_name: str) -> Dict[str, Any]:
        config = self.scheduled_jobs.get(job_name)
        if config is None:
            return {'error': f"Unknown job: {job_name}"}

        next_run = self._next_run(job_name)
        runs = [r for r in self.job_history if r.job_name == job_name][-10:]
        return {
            'name': job_name,
            'kind': config.kind.value,
            'enabled': config.enabled,
            'schedule_type': config.schedule_type.value,
            'failure_count': self.failure_counts.get(job_name, 0),
            'max_consecutive_failures': config.max_consecutive_failures,
            'next_run': next_run.isoformat() if next_run else None,
            'recent_runs': [(r.started_at.isoformat(), r.success, r.total_changes)
                            for r in reversed(runs)],
        }

    def get_scheduler_status(self) -> Dict[str, Any]:
        enabled = [name for name, config in self.scheduled_jobs.items() if config.enabled]
        recent = list(self.job_history)[-20:]
        return {
            'running': not self._stop_event.is_set(),
            'jobs': len(self.scheduled_jobs),
            'active_jobs': len(enabled),
            'total_executions': len(self.job_history),
            'recent_success_rate': (sum(r.success for r in recent) / len(recent)) if recent else 0,
            'last_started': recent[-1].started_at.isoformat() if recent else None,
        }


def create_daily_check_schedule(time_str: str = SCHEDULE_CONFIG["check_daily_time"]) -> ScheduleConfig:
    """Reconcile against the planet snapshot once a day."""
    return ScheduleConfig(name="daily_check", kind=JobKind.CHECK,
                          schedule_type=ScheduleType.DAILY, daily_time=time_str)


def create_weekly_boundary_schedule(day: str = SCHEDULE_CONFIG["boundaries_weekly_day"],
                                    time_str: str = SCHEDULE_CONFIG["boundaries_weekly_time"]
                                    ) -> ScheduleConfig:
    """Refresh the boundaries once a week; two failed refreshes disable the job."""
    return ScheduleConfig(name="weekly_boundaries", kind=JobKind.BOUNDARIES,
                          schedule_type=ScheduleType.WEEKLY, weekly_day=day,
                          weekly_time=time_str, max_consecutive_failures=2)


def job_log_handler(result: JobResult) -> None:
    """Write one summary line per finished job."""
    if result.skipped:
        level, state = logging.INFO, 'skipped'
    elif result.success:
        level, state = logging.INFO, 'succeeded'
    else:
        level, state = logging.ERROR, f'failed ({result.error_message})'
    logger.log(level, f"Job {result.job_name} {state}: {result.total_changes} changes "
                      f"in {result.duration_seconds:.1f}s")
