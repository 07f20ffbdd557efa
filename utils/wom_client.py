"""Thin wrapper around the Wise Old Man v2 REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from config.settings import settings
from utils.logger import get_logger
from utils.snapshots import PlayerStats, normalize_skills


logger = get_logger(__name__)


class WiseOldManError(RuntimeError):
	"""Raised on transport failures or unexpected WOM responses."""

	def __init__(self, message: str, *, status_code: int | None = None) -> None:
		super().__init__(message)
		self.status_code = status_code


class WiseOldManRateLimited(WiseOldManError):
	"""Raised when WOM answers 429."""


def _parse_timestamp(value: Any) -> Optional[datetime]:
	if not value:
		return None
	try:
		return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
	except ValueError:
		return None


def _stats_from_payload(player: Dict[str, Any], snapshot: Dict[str, Any], username: str) -> PlayerStats:
	skills = (snapshot.get("data") or {}).get("skills") or {}
	return PlayerStats(
		rsn=player.get("displayName") or player.get("username") or username,
		player_id=player.get("id"),
		snapshot_time=_parse_timestamp(snapshot.get("createdAt")),
		skills=normalize_skills(skills),
	)


class WiseOldManClient:
	"""Stateless transport adapter; pacing and retries belong to the caller."""

	def __init__(
		self,
		*,
		base_url: str | None = None,
		session: requests.Session | None = None,
		timeout: float | None = None,
	) -> None:
		self._base_url = (base_url or settings.wom_api_base_url).rstrip("/")
		self._timeout = timeout if timeout is not None else settings.wom_timeout_seconds
		self._session = session or requests.Session()
		self._session.headers.update({"User-Agent": settings.wom_user_agent, "Accept": "application/json"})
		if settings.wom_api_key:
			self._session.headers["x-api-key"] = settings.wom_api_key

	def _url(self, path: str) -> str:
		return f"{self._base_url}{path}"

	def _request(
		self,
		method: str,
		path: str,
		*,
		allow_not_found: bool = False,
		**kwargs: Any,
	) -> Any:
		try:
			response = self._session.request(method, self._url(path), timeout=self._timeout, **kwargs)
		except requests.Timeout as exc:
			raise WiseOldManError(f"{method} {path} timed out after {self._timeout}s") from exc
		except requests.RequestException as exc:
			raise WiseOldManError(f"{method} {path} failed: {exc}") from exc

		if response.status_code == 404 and allow_not_found:
			return None
		if response.status_code == 429:
			raise WiseOldManRateLimited(f"{method} {path} was rate limited", status_code=429)
		if response.status_code >= 400:
			raise WiseOldManError(
				f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
				status_code=response.status_code,
			)

		try:
			return response.json()
		except ValueError as exc:
			raise WiseOldManError(f"{method} {path} returned invalid JSON") from exc

	def search_player(self, username: str) -> Optional[Dict[str, Any]]:
		return self._request("GET", f"/players/{quote(username)}", allow_not_found=True)

	def update_player(self, username: str) -> Optional[Dict[str, Any]]:
		"""Ask WOM to re-read the player's hiscores; returns the refreshed player details."""

		return self._request("POST", f"/players/{quote(username)}", allow_not_found=True)

	def latest_snapshot(self, username: str) -> Optional[Dict[str, Any]]:
		snapshots = self._request(
			"GET",
			f"/players/{quote(username)}/snapshots",
			params={"limit": 1},
			allow_not_found=True,
		)
		if not snapshots:
			return None
		return snapshots[0]

	def update_and_fetch(self, username: str) -> Optional[PlayerStats]:
		"""Trigger an update then read the newest snapshot; ``None`` if WOM has no such player."""

		player = self.update_player(username)
		if player is None:
			logger.info("WOM does not know player %s", username)
			return None

		snapshot = player.get("latestSnapshot") or self.latest_snapshot(username)
		if not snapshot:
			logger.info("WOM has no snapshot for player %s yet", username)
			return None
		try:
			return _stats_from_payload(player, snapshot, username)
		except (AttributeError, KeyError, TypeError, ValueError) as exc:
			raise WiseOldManError(f"Unexpected snapshot payload for {username}: {exc}") from exc

	def batch_update_group(self, group_id: int, verification_code: str) -> Dict[str, int]:
		"""Queue an update for every member of a WOM group."""

		payload = self._request(
			"POST",
			f"/groups/{int(group_id)}/update-all",
			json={"verificationCode": verification_code},
		)
		count = int((payload or {}).get("count", 0))
		logger.info("Queued WOM update for %s members of group %s", count, group_id)
		return {"count": count}

	def close(self) -> None:
		self._session.close()

	def __enter__(self) -> "WiseOldManClient":
		return self

	def __exit__(self, exc_type, exc_val, exc_tb) -> None:
		self.close()
