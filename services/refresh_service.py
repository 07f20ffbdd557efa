"""Refresh the current player snapshots of a tracked event from Wise Old Man."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from config.settings import settings
from utils.logger import get_logger
from utils.notifier import Notifier, NullNotifier
from utils.snapshots import PlayerSnapshot, PlayerStats, SnapshotKind, from_stats
from utils.storage import MongoStorage, storage as default_storage
from utils.wom_client import WiseOldManClient, WiseOldManError


logger = get_logger(__name__)


@dataclass(slots=True)
class RefreshOutcome:
	success: bool
	players_updated: int = 0
	error: Optional[str] = None
	failed_players: List[str] = field(default_factory=list)

	@classmethod
	def failure(cls, error: str) -> "RefreshOutcome":
		return cls(success=False, error=error)

	def as_dict(self) -> Dict[str, Any]:
		data: Dict[str, Any] = {"success": self.success, "playersUpdated": self.players_updated}
		if self.error:
			data["error"] = self.error
		if self.failed_players:
			data["failedPlayers"] = list(self.failed_players)
		return data


class RefreshService:
	"""One refresh pass per call: paced WOM fetches, then write-new-then-delete-old."""

	def __init__(
		self,
		*,
		gateway: Optional[WiseOldManClient] = None,
		storage: Optional[MongoStorage] = None,
		notifier: Optional[Notifier] = None,
		sleep: Callable[[float], None] = time.sleep,
		clock: Callable[[], datetime] = lambda: datetime.now(UTC),
		max_retries: Optional[int] = None,
	) -> None:
		self._gateway = gateway or WiseOldManClient()
		self._storage = storage or default_storage
		self._notifier = notifier or NullNotifier()
		self._sleep = sleep
		self._clock = clock
		self._max_retries = settings.max_retries if max_retries is None else max_retries
		self._player_delay = settings.player_delay_seconds
		self._retry_delay = settings.retry_delay_seconds

	def refresh(self, event_id: Any) -> RefreshOutcome:
		now = self._clock()
		event = self._storage.get_event(event_id)
		if event is None:
			return RefreshOutcome.failure("Event not found")
		if not event.get("tracking_enabled"):
			return RefreshOutcome.failure("Event tracking not active")

		event_key = event["_id"]
		baselines = self._storage.list_snapshots(event_key, SnapshotKind.BASELINE)
		if not baselines:
			return RefreshOutcome.failure("No baseline snapshots found")

		old_currents = self._storage.list_snapshots(event_key, SnapshotKind.CURRENT)
		members_by_rsn = _group_by_player(baselines)
		logger.info("Refreshing %s unique players for event %s", len(members_by_rsn), event_key)

		stats_by_rsn, failed = self.collect_stats(list(members_by_rsn))

		staged: List[PlayerSnapshot] = []
		for rsn, stats in stats_by_rsn.items():
			for baseline in members_by_rsn[rsn]:
				staged.append(
					from_stats(
						stats,
						event_id=event_key,
						team_id=baseline.team_id,
						user_id=baseline.user_id,
						kind=SnapshotKind.CURRENT,
						captured_at=now,
						rsn=baseline.rsn,
					)
				)

		if not staged:
			logger.warning("Refresh for event %s updated no players (%s failed)", event_key, len(failed))
			return RefreshOutcome(
				success=False,
				error="No players could be updated",
				failed_players=failed,
			)

		# Commit errors propagate; old snapshots are untouched until the new batch exists.
		self._storage.insert_snapshots(staged, written_at=now)

		replaced_users = {snapshot.user_id for snapshot in staged}
		stale_ids = [snapshot.snapshot_id for snapshot in old_currents if snapshot.user_id in replaced_users]
		deleted = self._storage.delete_snapshots(stale_ids)

		outcome = RefreshOutcome(success=True, players_updated=len(stats_by_rsn), failed_players=failed)
		logger.info(
			"Refresh completed for event %s: %s players updated, %s failed, %s snapshots written, %s replaced",
			event_key,
			outcome.players_updated,
			len(failed),
			len(staged),
			deleted,
		)
		self._notify(
			event_key,
			{
				"type": "snapshots-refreshed",
				"eventId": str(event_key),
				"playersUpdated": outcome.players_updated,
				"timestamp": now.isoformat(),
			},
		)
		return outcome

	def pause(self) -> None:
		"""Wait one player delay, for callers chaining two fetch loops."""

		self._sleep(self._player_delay)

	def collect_stats(self, usernames: Sequence[str]) -> Tuple[Dict[str, PlayerStats], List[str]]:
		"""Fetch players one at a time, pausing between them to stay under the WOM rate limit.

		Returns the stats keyed by the requested name plus the names that failed.
		"""

		fetched: Dict[str, PlayerStats] = {}
		failed: List[str] = []
		total = len(usernames)
		for index, username in enumerate(usernames, start=1):
			logger.info("Updating %s (%s/%s)", username, index, total)
			stats = self._fetch_with_retry(username)
			if stats is None:
				failed.append(username)
			else:
				fetched[username] = stats

			if index < total:
				self._sleep(self._player_delay)
		return fetched, failed

	def _fetch_with_retry(self, username: str) -> Optional[PlayerStats]:
		attempts = self._max_retries + 1
		for attempt in range(1, attempts + 1):
			try:
				stats = self._gateway.update_and_fetch(username)
			except WiseOldManError as exc:
				logger.warning(
					"Failed to update %s (attempt %s/%s): %s",
					username,
					attempt,
					attempts,
					exc,
				)
				if attempt < attempts:
					self._sleep(self._retry_delay)
				continue
			except (AttributeError, KeyError, TypeError, ValueError):
				# Malformed payloads will not change on retry
				logger.exception("Unusable stats for %s; skipping player", username)
				return None

			if stats is None:
				logger.warning("Skipping %s: player not found on Wise Old Man", username)
			return stats

		logger.error("Giving up on %s after %s attempts", username, attempts)
		return None

	def _notify(self, event_id: Any, payload: Dict[str, Any]) -> None:
		try:
			self._notifier.notify(str(event_id), payload)
		except Exception:
			logger.exception("Notifier failed for event %s", event_id)


def _group_by_player(baselines: Sequence[PlayerSnapshot]) -> Dict[str, List[PlayerSnapshot]]:
	"""Map each player name to the baselines sharing it, in discovery order."""

	grouped: Dict[str, List[PlayerSnapshot]] = {}
	for baseline in baselines:
		members = grouped.setdefault(baseline.rsn, [])
		if all(member.user_id != baseline.user_id or member.team_id != baseline.team_id for member in members):
			members.append(baseline)
	return grouped
