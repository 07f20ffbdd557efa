"""MongoDB persistence helpers."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from bson import ObjectId
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from config.settings import settings
from utils.logger import get_logger
from utils.snapshots import PlayerSnapshot, SnapshotKind


logger = get_logger(__name__)


def _id_candidates(value: Any) -> List[Any]:
	"""Match both string ids and their ObjectId form (ids arrive as URL strings)."""

	if isinstance(value, str) and ObjectId.is_valid(value):
		return [value, ObjectId(value)]
	return [value]


class MongoStorage:
	"""Encapsulate MongoDB access for events, teams, tasks and player snapshots."""

	EVENTS_COLLECTION = settings.mongo_events_collection
	TEAMS_COLLECTION = settings.mongo_teams_collection
	USERS_COLLECTION = settings.mongo_users_collection
	TASKS_COLLECTION = settings.mongo_tasks_collection
	SNAPSHOTS_COLLECTION = settings.mongo_snapshots_collection

	def __init__(self) -> None:
		self._client = self._init_client()
		self._db = self._client[settings.mongo_db]
		self._ensure_indexes()

	def _init_client(self) -> MongoClient:
		if settings.use_mock_db:
			return self._build_mock_client()

		try:
			client = MongoClient(settings.mongo_uri, serverSelectionTimeoutMS=5000)
			client.admin.command("ping")
			return client
		except PyMongoError as exc:
			logger.warning(
				"Failed to connect to MongoDB at %s (%s). Falling back to in-memory mongomock.",
				settings.mongo_uri,
				exc,
			)
			return self._build_mock_client()

	@staticmethod
	def _build_mock_client() -> MongoClient:
		try:
			import mongomock

			logger.info("Using mongomock in-memory database")
			return mongomock.MongoClient()
		except ImportError as exc:  # pragma: no cover - defensive branch
			raise RuntimeError(
				"mongomock must be installed to use the in-memory fallback database"
			) from exc

	def _ensure_indexes(self) -> None:
		self._collection(self.SNAPSHOTS_COLLECTION).create_index(
			[
				("event_id", ASCENDING),
				("snapshot_type", ASCENDING),
				("user_id", ASCENDING),
			],
			name="snapshot_lookup",
		)
		self._collection(self.TEAMS_COLLECTION).create_index([("event_id", ASCENDING)], name="teams_by_event")
		self._collection(self.TASKS_COLLECTION).create_index([("event_id", ASCENDING)], name="tasks_by_event")

	def _collection(self, name: str) -> Collection:
		return self._db[name]

	# Events

	def get_event(self, event_id: Any) -> Optional[Dict[str, Any]]:
		return self._collection(self.EVENTS_COLLECTION).find_one({"_id": {"$in": _id_candidates(event_id)}})

	def list_schedulable_events(self) -> List[Dict[str, Any]]:
		"""Events carrying a refresh schedule; status and tracking flags are left to the caller."""

		cursor = self._collection(self.EVENTS_COLLECTION).find({"refresh_schedule": {"$ne": None}})
		return list(cursor)

	def update_event(self, event_id: Any, fields: Dict[str, Any]) -> bool:
		fields = dict(fields)
		fields.setdefault("updated_at", datetime.now(UTC))
		result = self._collection(self.EVENTS_COLLECTION).update_one(
			{"_id": {"$in": _id_candidates(event_id)}},
			{"$set": fields},
		)
		return result.matched_count > 0

	# Teams, users and tasks

	def list_teams(self, event_id: Any) -> List[Dict[str, Any]]:
		return list(self._collection(self.TEAMS_COLLECTION).find({"event_id": event_id}))

	def users_by_ids(self, user_ids: Iterable[Any]) -> Dict[Any, Dict[str, Any]]:
		user_ids = list(user_ids)
		if not user_ids:
			return {}
		cursor = self._collection(self.USERS_COLLECTION).find({"_id": {"$in": user_ids}})
		return {user["_id"]: user for user in cursor}

	def list_tasks(self, event_id: Any, *, xp_only: bool = False) -> List[Dict[str, Any]]:
		query: Dict[str, Any] = {"event_id": event_id}
		if xp_only:
			query["is_xp_task"] = True
		return list(self._collection(self.TASKS_COLLECTION).find(query))

	def apply_task_completion(self, *, task_id: Any, team_id: Any, points: int) -> bool:
		"""Credit ``team_id`` for ``task_id`` once; returns False if it was already credited."""

		now = datetime.now(UTC)
		result = self._collection(self.TASKS_COLLECTION).update_one(
			{"_id": task_id, "completed_by_team_ids": {"$ne": team_id}},
			{"$addToSet": {"completed_by_team_ids": team_id}, "$set": {"updated_at": now}},
		)
		if result.modified_count == 0:
			return False

		self._collection(self.TEAMS_COLLECTION).update_one(
			{"_id": team_id},
			{
				"$addToSet": {"completed_task_ids": task_id},
				"$inc": {"score": int(points or 0)},
				"$set": {"updated_at": now},
			},
		)
		return True

	# Player snapshots

	def list_snapshots(
		self,
		event_id: Any,
		kind: Optional[SnapshotKind] = None,
		*,
		user_id: Any = None,
	) -> List[PlayerSnapshot]:
		query: Dict[str, Any] = {"event_id": event_id}
		if kind is not None:
			query["snapshot_type"] = kind.value
		if user_id is not None:
			query["user_id"] = user_id
		cursor = self._collection(self.SNAPSHOTS_COLLECTION).find(query).sort("_id", ASCENDING)
		return [PlayerSnapshot.from_document(doc) for doc in cursor]

	def insert_snapshots(
		self,
		snapshots: Sequence[PlayerSnapshot],
		*,
		written_at: Optional[datetime] = None,
	) -> List[PlayerSnapshot]:
		"""Write ``snapshots`` in one batch, removing any partial write on failure."""

		if not snapshots:
			return []
		written_at = written_at or datetime.now(UTC)
		docs = []
		for snapshot in snapshots:
			doc = snapshot.to_document(written_at=written_at)
			doc["_id"] = ObjectId()
			docs.append(doc)

		collection = self._collection(self.SNAPSHOTS_COLLECTION)
		try:
			collection.insert_many(docs, ordered=True)
		except PyMongoError:
			collection.delete_many({"_id": {"$in": [doc["_id"] for doc in docs]}})
			logger.error("Snapshot batch write failed; rolled back %s documents", len(docs))
			raise

		logger.debug("Stored %s snapshots", len(docs))
		return [snapshot.with_id(doc["_id"]) for snapshot, doc in zip(snapshots, docs)]

	def delete_snapshots(self, snapshot_ids: Iterable[Any]) -> int:
		snapshot_ids = list(snapshot_ids)
		if not snapshot_ids:
			return 0
		result = self._collection(self.SNAPSHOTS_COLLECTION).delete_many({"_id": {"$in": snapshot_ids}})
		logger.debug("Deleted %s snapshots", result.deleted_count)
		return result.deleted_count


storage = MongoStorage()
