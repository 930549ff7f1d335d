"""Time-based triggering of migrations for configured schedules."""

import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqltransfer.core.orchestrator import MigrationOrchestrator
from sqltransfer.core.resolver import ConfigurationStore
from sqltransfer.errors import TransferError
from sqltransfer.logging import get_logger
from sqltransfer.models import Configuration, Schedule, utcnow

logger = get_logger(__name__)

INTERVAL = "interval"
DAILY = "daily"

FREQUENCY_UNITS = {
    "minute": timedelta(minutes=1),
    "minutes": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "hours": timedelta(hours=1),
    "day": timedelta(days=1),
    "days": timedelta(days=1),
}

WEEK_DAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def schedule_interval(schedule: Schedule) -> timedelta:
    """Length of one interval of an Interval schedule.

    Raises:
        ValueError: On an unknown unit or a non-positive frequency
    """
    unit = FREQUENCY_UNITS.get(str(schedule.frequency_unit).strip().lower())
    if unit is None:
        raise ValueError(
            f"Schedule {schedule.schedule_id} has unknown frequency unit "
            f"'{schedule.frequency_unit}'"
        )
    if schedule.frequency <= 0:
        raise ValueError(f"Schedule {schedule.schedule_id} frequency must be positive")
    return unit * schedule.frequency


def allowed_week_days(schedule: Schedule) -> List[int]:
    """Weekday numbers (Monday is 0) a Daily schedule may run on; all when unset.

    Raises:
        ValueError: On a name that is not a weekday
    """
    if not schedule.week_days:
        return list(range(7))

    days = []
    for name in schedule.week_days:
        text = str(name).strip().lower()
        matches = [i for i, day in enumerate(WEEK_DAYS) if day == text or day[:3] == text]
        if not matches:
            raise ValueError(f"Schedule {schedule.schedule_id} has unknown week day '{name}'")
        days.append(matches[0])
    return sorted(set(days))


def next_run_time(schedule: Schedule, after: datetime) -> datetime:
    """First time strictly after ``after`` at which the schedule should fire.

    Raises:
        ValueError: On an unknown schedule type or invalid schedule fields
    """
    schedule_type = str(schedule.schedule_type).strip().lower()
    if schedule_type == INTERVAL:
        return after + schedule_interval(schedule)

    if schedule_type == DAILY:
        days = allowed_week_days(schedule)
        at = schedule.start_time or datetime.min.time()
        for offset in range(8):
            candidate = datetime.combine(after.date() + timedelta(days=offset), at)
            if candidate > after and candidate.weekday() in days:
                return candidate

    raise ValueError(
        f"Schedule {schedule.schedule_id} has unknown type '{schedule.schedule_type}'"
    )


def first_run_time(schedule: Schedule, now: datetime) -> datetime:
    """When a schedule that has never run becomes due."""
    if str(schedule.schedule_type).strip().lower() == INTERVAL:
        schedule_interval(schedule)
        if schedule.start_time is None:
            return now
        return datetime.combine(now.date(), schedule.start_time)
    return next_run_time(schedule, now - timedelta(microseconds=1))


class MigrationScheduler:
    """Starts migrations when their configuration's schedules come due.

    A configuration never has two scheduled runs in flight: while the run
    started by one of its schedules is still active, its other due
    schedules are skipped until the next poll.
    """

    def __init__(
        self,
        orchestrator: MigrationOrchestrator,
        store: ConfigurationStore,
        poll_interval: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else orchestrator.settings.schedule_poll_interval
        )
        self._active_runs: Dict[int, int] = {}

    def due_schedules(self, now: Optional[datetime] = None) -> List[Tuple[Configuration, Schedule]]:
        """Active schedules of active configurations that should fire at ``now``."""
        now = now or utcnow()
        due = []
        for configuration in self.store.list():
            if not configuration.is_active:
                continue
            for schedule in configuration.schedules:
                if not schedule.is_active:
                    continue
                try:
                    if schedule.next_run_time is None:
                        schedule.next_run_time = first_run_time(schedule, now)
                except ValueError as e:
                    logger.error(f"Skipping schedule of '{configuration.name}': {e}")
                    continue
                if schedule.next_run_time <= now:
                    due.append((configuration, schedule))
        return due

    def run_pending(self, now: Optional[datetime] = None) -> List[int]:
        """Start every due migration.

        Returns:
            Ids of the runs started
        """
        now = now or utcnow()
        started = []
        for configuration, schedule in self.due_schedules(now):
            if self._has_active_run(configuration):
                logger.info(
                    f"Skipping schedule {schedule.schedule_id} of '{configuration.name}': "
                    f"run {self._active_runs[configuration.configuration_id]} still active"
                )
                continue

            try:
                run_id = self.orchestrator.start_migration(
                    configuration.configuration_id,
                    validate=schedule.validate_after,
                    triggered_by=f"schedule:{schedule.schedule_id}",
                )
            except TransferError as e:
                logger.error(f"Scheduled migration of '{configuration.name}' failed to start: {e}")
                continue
            finally:
                schedule.last_run_time = now
                schedule.next_run_time = next_run_time(schedule, now)

            self._active_runs[configuration.configuration_id] = run_id
            started.append(run_id)
            logger.info(
                f"Started scheduled run {run_id} for '{configuration.name}'; "
                f"next at {schedule.next_run_time:%Y-%m-%d %H:%M}"
            )
        return started

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Poll for due schedules until ``stop_event`` is set."""
        stop_event = stop_event or threading.Event()
        logger.info(f"Scheduler started, polling every {self.poll_interval:.0f}s")
        while not stop_event.is_set():
            self.run_pending()
            stop_event.wait(self.poll_interval)
        logger.info("Scheduler stopped")

    def _has_active_run(self, configuration: Configuration) -> bool:
        run_id = self._active_runs.get(configuration.configuration_id)
        if run_id is None:
            return False
        if self.orchestrator.is_active(run_id):
            return True
        del self._active_runs[configuration.configuration_id]
        return False
