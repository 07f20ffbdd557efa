"""Event tracking lifecycle and XP task auto-completion."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from config.settings import settings
from services.refresh_service import RefreshOutcome, RefreshService
from utils import progress
from utils.logger import get_logger
from utils.notifier import Notifier, NullNotifier
from utils.snapshots import PlayerSnapshot, SnapshotKind, from_stats
from utils.storage import MongoStorage, storage as default_storage
from utils.wom_client import WiseOldManClient


logger = get_logger(__name__)


class TrackingError(RuntimeError):
	"""Business error raised by the tracking workflow."""

	status_code = 400


class EventNotFoundError(TrackingError):
	status_code = 404


class PermissionDeniedError(TrackingError):
	status_code = 403


class TrackingService:
	"""Orchestrates baselines, refreshes and XP task checks for bingo events."""

	def __init__(
		self,
		*,
		refresher: Optional[RefreshService] = None,
		gateway: Optional[WiseOldManClient] = None,
		storage: Optional[MongoStorage] = None,
		notifier: Optional[Notifier] = None,
		clock: Callable[[], datetime] = lambda: datetime.now(UTC),
	) -> None:
		self._storage = storage or default_storage
		self._notifier = notifier or NullNotifier()
		self._gateway = gateway or WiseOldManClient()
		self._refresher = refresher or RefreshService(
			gateway=self._gateway,
			storage=self._storage,
			notifier=self._notifier,
		)
		self._clock = clock

	def _load_event(self, event_id: Any, requested_by: Any = None) -> Dict[str, Any]:
		event = self._storage.get_event(event_id)
		if event is None:
			raise EventNotFoundError("Event not found")
		if requested_by is not None and event.get("creator_id") not in (None, requested_by):
			raise PermissionDeniedError("Only the event creator can change tracking")
		return event

	def _members_with_rsn(self, event_id: Any) -> List[Dict[str, Any]]:
		teams = self._storage.list_teams(event_id)
		member_ids = [member_id for team in teams for member_id in team.get("member_ids", [])]
		users = self._storage.users_by_ids(member_ids)

		members = []
		seen = set()
		for team in teams:
			for member_id in team.get("member_ids", []):
				rsn = (users.get(member_id) or {}).get("rsn")
				if rsn and member_id not in seen:
					seen.add(member_id)
					members.append({"user_id": member_id, "team_id": team["_id"], "rsn": rsn.strip()})
		return members

	def _capture_baselines(self, event_id: Any, members: List[Dict[str, Any]]) -> List[PlayerSnapshot]:
		names = list(dict.fromkeys(member["rsn"] for member in members))
		stats_by_rsn, failed = self._refresher.collect_stats(names)
		if failed:
			logger.warning("No baseline for %s players in event %s: %s", len(failed), event_id, ", ".join(failed))

		now = self._clock()
		staged = [
			from_stats(
				stats_by_rsn[member["rsn"]],
				event_id=event_id,
				team_id=member["team_id"],
				user_id=member["user_id"],
				kind=SnapshotKind.BASELINE,
				captured_at=now,
				rsn=member["rsn"],
			)
			for member in members
			if member["rsn"] in stats_by_rsn
		]
		return self._storage.insert_snapshots(staged, written_at=now)

	def start_tracking(self, event_id: Any, *, requested_by: Any = None) -> Dict[str, Any]:
		event = self._load_event(event_id, requested_by)
		if event.get("tracking_enabled"):
			raise TrackingError("Event tracking already started")

		event_key = event["_id"]
		members = self._members_with_rsn(event_key)
		if not members:
			raise TrackingError("No team members have an RSN set. Players must add their RuneScape names first.")

		baselines = self._capture_baselines(event_key, members)
		now = self._clock()
		self._storage.update_event(
			event_key,
			{"tracking_enabled": True, "event_started_at": now, "updated_at": now},
		)
		logger.info("Tracking started for event %s with %s players", event_key, len(members))
		return {
			"playersTracked": len(members),
			"baselinesCaptured": len(baselines),
			"players": [member["rsn"] for member in members],
		}

	def end_tracking(self, event_id: Any, *, requested_by: Any = None) -> Dict[str, Any]:
		event = self._load_event(event_id, requested_by)
		if not event.get("tracking_enabled"):
			raise TrackingError("Event tracking not active")

		event_key = event["_id"]
		outcome = self._refresher.refresh(event_key)
		if not outcome.success:
			logger.warning("Final refresh for event %s failed: %s", event_key, outcome.error)

		now = self._clock()
		self._storage.update_event(
			event_key,
			{"tracking_enabled": False, "event_ended_at": now, "updated_at": now},
		)
		logger.info("Tracking ended for event %s", event_key)
		return {"finalRefresh": outcome.as_dict()}

	def capture_late_baselines(self, event_id: Any) -> List[str]:
		"""Create baselines for members who joined a team after tracking started."""

		_, created = self._capture_missing_baselines(event_id)
		return created

	def _capture_missing_baselines(self, event_id: Any) -> Tuple[int, List[str]]:
		"""Return how many members were looked up and the names that got a baseline."""

		event = self._load_event(event_id)
		if not event.get("tracking_enabled"):
			return 0, []

		event_key = event["_id"]
		# A user keeps one baseline per event, even after switching teams
		existing = {snapshot.user_id for snapshot in self._storage.list_snapshots(event_key, SnapshotKind.BASELINE)}
		missing = [member for member in self._members_with_rsn(event_key) if member["user_id"] not in existing]
		if not missing:
			return 0, []

		logger.info("Capturing late baselines for %s members of event %s", len(missing), event_key)
		created = self._capture_baselines(event_key, missing)
		return len(missing), [snapshot.rsn for snapshot in created]

	def refresh(self, event_id: Any) -> RefreshOutcome:
		return self._refresher.refresh(event_id)

	def team_progress(self, event_id: Any) -> List[progress.TeamProgress]:
		event = self._load_event(event_id)
		event_key = event["_id"]
		return progress.compute_team_gains(
			self._storage.list_snapshots(event_key, SnapshotKind.BASELINE),
			self._storage.list_snapshots(event_key, SnapshotKind.CURRENT),
		)

	def progress(self, event_id: Any) -> Dict[str, Any]:
		teams = self.team_progress(event_id)
		return {"eventId": event_id, "teams": [team.to_dict() for team in teams]}

	def check_xp_tasks(self, event_id: Any) -> Dict[str, Any]:
		event = self._load_event(event_id)
		event_key = event["_id"]

		task_docs = self._storage.list_tasks(event_key, xp_only=True)
		tasks = [task for task in (progress.XPTask.from_document(doc) for doc in task_docs) if task]
		if not tasks:
			return {"message": "No XP-based tasks found", "completedTasks": []}

		points = {task.task_id: task.points for task in tasks}
		completions = progress.match_xp_tasks(tasks, self.team_progress(event_key))

		applied = []
		for completion in completions:
			credited = self._storage.apply_task_completion(
				task_id=completion.task_id,
				team_id=completion.team_id,
				points=points.get(completion.task_id, 0),
			)
			if not credited:
				continue
			applied.append(completion)
			self._notify(
				event_key,
				{
					"type": "task-completed",
					"eventId": str(event_key),
					"taskId": str(completion.task_id),
					"teamId": str(completion.team_id),
					"skill": completion.skill,
					"gained": completion.gained,
					"required": completion.required,
				},
			)

		logger.info("Checked %s XP tasks for event %s, auto-completed %s", len(tasks), event_key, len(applied))
		return {
			"message": f"Checked {len(tasks)} XP tasks, auto-completed {len(applied)}",
			"completedTasks": [completion.to_dict() for completion in applied],
		}

	def run_scheduled_refresh(self, event_id: Any) -> RefreshOutcome:
		"""Job body for the schedule registry."""

		try:
			looked_up, _ = self._capture_missing_baselines(event_id)
		except TrackingError as exc:
			logger.warning("Skipping late baselines for event %s: %s", event_id, exc)
			looked_up = 0
		if looked_up:
			self._refresher.pause()
		outcome = self._refresher.refresh(event_id)
		if outcome.success and settings.auto_check_xp_tasks:
			self.check_xp_tasks(event_id)
		return outcome

	def update_group(self, group_id: Optional[int] = None) -> Dict[str, int]:
		group_id = group_id or settings.wom_group_id
		if not group_id:
			raise TrackingError("No Wise Old Man group configured (WOM_GROUP_ID)")
		if not settings.wom_group_verification_code:
			raise TrackingError("WOM_GROUP_VERIFICATION_CODE is required to update a group")
		return self._gateway.batch_update_group(group_id, settings.wom_group_verification_code)

	def _notify(self, event_id: Any, payload: Dict[str, Any]) -> None:
		try:
			self._notifier.notify(str(event_id), payload)
		except Exception:
			logger.exception("Notifier failed for event %s", event_id)
