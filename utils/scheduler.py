"""Per-event refresh scheduling reconciled against the persisted event records.

An event whose stored expression stops parsing loses its running job; it is
scheduled again once the expression is fixed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Event, RLock
from typing import Any, Callable, Dict, List, Optional

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pymongo.errors import PyMongoError

from config.settings import settings
from utils.logger import get_logger
from utils.storage import MongoStorage, storage as default_storage


logger = get_logger(__name__)

RECONCILE_JOB_ID = "reconcile_schedules"
_FIELD_NAMES = ("second", "minute", "hour", "day", "month", "day_of_week")
_CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _cron_day_of_week(field: str) -> str:
	"""Rewrite numeric weekdays (0 and 7 are Sunday) as names.

	APScheduler numbers weekdays from Monday, so numbers are expanded into
	explicit day names; named items pass through unchanged.
	"""

	if field == "*":
		return field

	days: List[str] = []
	for item in field.split(","):
		if any(char.isalpha() for char in item):
			days.append(item)
			continue

		body, has_step, raw_step = item.partition("/")
		step = int(raw_step) if has_step else 1
		if body == "*":
			first, last = 0, 6
		elif "-" in body:
			start, end = body.split("-", 1)
			first, last = int(start), int(end)
		else:
			first = int(body)
			last = 6 if has_step else first

		if step < 1 or not 0 <= first <= last <= 7:
			raise ValueError(f"Invalid day of week {item!r}")
		for day in range(first, last + 1, step):
			name = _CRON_WEEKDAYS[day % 7]
			if name not in days:
				days.append(name)
	return ",".join(days)


def parse_recurrence(expression: str, *, timezone: str | None = None) -> CronTrigger:
	"""Build a trigger from a five-field crontab or a six-field one with leading seconds.

	Day-of-week numbers use cron's numbering (0 or 7 is Sunday).
	Raises ``ValueError`` for anything else.
	"""

	if not expression or not isinstance(expression, str):
		raise ValueError("Empty recurrence expression")
	fields = expression.split()
	if len(fields) not in (5, 6):
		raise ValueError(f"Expected 5 or 6 fields, got {len(fields)}")

	fields[-1] = _cron_day_of_week(fields[-1])
	if len(fields) == 5:
		return CronTrigger.from_crontab(" ".join(fields), timezone=timezone or settings.scheduler_timezone)
	return CronTrigger(
		**dict(zip(_FIELD_NAMES, fields)),
		timezone=timezone or settings.scheduler_timezone,
	)


def next_run_time(expression: str, *, now: Optional[datetime] = None) -> Optional[datetime]:
	"""Next fire time for ``expression``, or ``None`` when it does not parse."""

	try:
		trigger = parse_recurrence(expression)
	except (ValueError, TypeError) as exc:
		logger.warning("Cannot parse recurrence expression %r: %s", expression, exc)
		return None
	return trigger.get_next_fire_time(None, now or datetime.now(UTC))


def _is_schedulable(event: Dict[str, Any]) -> bool:
	return (
		event.get("status") == "active"
		and event.get("tracking_enabled") is True
		and bool(event.get("refresh_schedule"))
	)


@dataclass(slots=True)
class ScheduleEntry:
	event_id: str
	expression: str
	job: Job


class ScheduleRegistry:
	"""Own the mapping event id -> running refresh job.

	Reconciliation polls the event store on a fixed interval instead of
	reacting to writes, so a schedule change takes effect within one interval.
	"""

	def __init__(
		self,
		runner: Callable[[str], Any],
		*,
		storage: Optional[MongoStorage] = None,
		scheduler: Optional[BackgroundScheduler] = None,
		reconcile_interval: Optional[int] = None,
	) -> None:
		self._runner = runner
		self._storage = storage or default_storage
		self._scheduler = scheduler or BackgroundScheduler(timezone=settings.scheduler_timezone)
		self._interval = reconcile_interval or settings.reconcile_interval_seconds
		self._entries: Dict[str, ScheduleEntry] = {}
		self._lock = RLock()
		self._stop_event = Event()

	@property
	def running(self) -> bool:
		return self._scheduler.running

	def start(self) -> None:
		if not self._scheduler.running:
			self._scheduler.start()
		self._stop_event.clear()
		self.reconcile()
		self._scheduler.add_job(
			self.reconcile,
			trigger=IntervalTrigger(seconds=self._interval),
			id=RECONCILE_JOB_ID,
			replace_existing=True,
			max_instances=1,
			coalesce=True,
		)
		logger.info(
			"Refresh scheduler started; reconciling every %ss (%s events scheduled)",
			self._interval,
			len(self._entries),
		)

	def stop(self) -> None:
		with self._lock:
			for event_id in list(self._entries):
				self._remove(event_id)
		if self._scheduler.running:
			self._scheduler.shutdown(wait=False)
		self._stop_event.set()
		logger.info("All scheduled refresh jobs stopped")

	def reload(self) -> List[str]:
		"""Drop every refresh job and rebuild the schedule from the event store."""

		with self._lock:
			for event_id in list(self._entries):
				self._remove(event_id)
			logger.info("Reloading refresh schedules")
			return self.reconcile()

	def list_active(self) -> List[str]:
		with self._lock:
			return list(self._entries)

	def entry(self, event_id: str) -> Optional[ScheduleEntry]:
		with self._lock:
			return self._entries.get(str(event_id))

	@staticmethod
	def next_run_time(expression: str) -> Optional[datetime]:
		return next_run_time(expression)

	def reconcile(self) -> List[str]:
		"""Start missing jobs, stop orphaned ones; safe to call any number of times."""

		try:
			events = self._storage.list_schedulable_events()
		except PyMongoError:
			logger.exception("Error loading event schedules; keeping current jobs")
			return self.list_active()

		desired = {str(event["_id"]): event["refresh_schedule"] for event in events if _is_schedulable(event)}

		with self._lock:
			for event_id in list(self._entries):
				if event_id not in desired:
					logger.info("Removing scheduled refresh for event %s", event_id)
					self._remove(event_id)

			for event_id, expression in desired.items():
				existing = self._entries.get(event_id)
				if existing is not None and existing.expression == expression:
					continue

				try:
					trigger = parse_recurrence(expression)
				except ValueError as exc:
					logger.warning("Invalid refresh schedule for event %s (%r): %s", event_id, expression, exc)
					if existing is not None:
						self._remove(event_id)
					continue

				if existing is not None:
					logger.info(
						"Refresh schedule for event %s changed from %r to %r",
						event_id,
						existing.expression,
						expression,
					)
					self._remove(event_id)
				self._add(event_id, expression, trigger)

			return list(self._entries)

	def _add(self, event_id: str, expression: str, trigger: CronTrigger) -> None:
		job = self._scheduler.add_job(
			self._execute_job,
			trigger=trigger,
			args=[event_id],
			id=f"refresh:{event_id}",
			replace_existing=True,
			max_instances=1,
			coalesce=True,
		)
		self._entries[event_id] = ScheduleEntry(event_id=event_id, expression=expression, job=job)
		logger.info("Scheduling XP refresh for event %s with schedule: %s", event_id, expression)

	def _remove(self, event_id: str) -> None:
		entry = self._entries.pop(event_id, None)
		if entry is None:
			return
		try:
			self._scheduler.remove_job(entry.job.id)
		except JobLookupError:
			logger.debug("Job %s was already gone", entry.job.id)

	def _execute_job(self, event_id: str) -> None:
		logger.info("Running scheduled refresh for event %s at %s", event_id, datetime.now(UTC).isoformat())
		try:
			outcome = self._runner(event_id)
			logger.info("Scheduled refresh for event %s complete: %s", event_id, outcome)
		except Exception:
			logger.exception("Scheduled refresh for event %s failed", event_id)

	def block(self) -> None:
		try:
			self._stop_event.wait()
		except KeyboardInterrupt:
			logger.info("Stopping scheduler via keyboard interrupt")
			self.stop()
