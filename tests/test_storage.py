from datetime import UTC, datetime

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from utils.snapshots import PlayerSnapshot, SnapshotKind, normalize_skills


CAPTURED = datetime(2025, 10, 1, 12, tzinfo=UTC)


class _HalfWritingCollection:
	"""Writes the first document of a batch and then fails."""

	def __init__(self, inner) -> None:
		self._inner = inner

	def insert_many(self, docs, ordered=True):
		self._inner.insert_one(docs[0])
		raise PyMongoError("connection reset during insert_many")

	def __getattr__(self, name):
		return getattr(self._inner, name)


def _snapshot(user_id, experience, kind=SnapshotKind.CURRENT):
	return PlayerSnapshot(
		event_id="evt1",
		team_id="team-a",
		user_id=user_id,
		rsn=user_id.title(),
		kind=kind,
		captured_at=CAPTURED,
		skills=normalize_skills({"Mining": {"experience": experience, "level": 10}}),
	)


def test_store_and_retrieve_snapshot(storage):
	stored = storage.insert_snapshots([_snapshot("alice", 500, SnapshotKind.BASELINE)])

	assert isinstance(stored[0].snapshot_id, ObjectId)
	loaded = storage.list_snapshots("evt1", SnapshotKind.BASELINE)
	assert len(loaded) == 1
	assert loaded[0].snapshot_id == stored[0].snapshot_id
	assert loaded[0].skills["mining"].experience == 500
	assert loaded[0].skills["mining"].level == 10
	assert loaded[0].captured_at == CAPTURED
	assert storage.list_snapshots("evt1", SnapshotKind.CURRENT) == []


def test_list_snapshots_filters_by_user(storage):
	storage.insert_snapshots([_snapshot("alice", 1), _snapshot("bob", 2)])

	only_bob = storage.list_snapshots("evt1", SnapshotKind.CURRENT, user_id="bob")

	assert [snapshot.user_id for snapshot in only_bob] == ["bob"]


def test_insert_failure_rolls_back_partial_batch(storage, monkeypatch):
	real_collection = storage._collection

	def _collection(name):
		inner = real_collection(name)
		if name == storage.SNAPSHOTS_COLLECTION:
			return _HalfWritingCollection(inner)
		return inner

	monkeypatch.setattr(storage, "_collection", _collection)

	with pytest.raises(PyMongoError):
		storage.insert_snapshots([_snapshot("alice", 1), _snapshot("bob", 2)])

	monkeypatch.undo()
	assert storage.list_snapshots("evt1") == []


def test_delete_snapshots_returns_count(storage):
	stored = storage.insert_snapshots([_snapshot("alice", 1), _snapshot("bob", 2)])

	assert storage.delete_snapshots([stored[0].snapshot_id]) == 1
	assert storage.delete_snapshots([]) == 0
	assert [snapshot.user_id for snapshot in storage.list_snapshots("evt1")] == ["bob"]


def test_list_schedulable_events_only_returns_scheduled_events(storage, seed):
	seed.event("evt1", refresh_schedule="*/30 * * * *")
	seed.event("evt2")
	seed.event("evt3", refresh_schedule="0 * * * *", tracking_enabled=False)

	ids = sorted(event["_id"] for event in storage.list_schedulable_events())

	assert ids == ["evt1", "evt3"]


def test_get_event_accepts_string_object_id(storage, seed):
	object_id = ObjectId()
	seed.event(object_id)

	assert storage.get_event(str(object_id))["_id"] == object_id
	assert storage.get_event("missing") is None


def test_update_event_sets_fields(storage, seed):
	seed.event()

	assert storage.update_event("evt1", {"tracking_enabled": False}) is True
	assert storage.update_event("nope", {"tracking_enabled": False}) is False
	event = storage.get_event("evt1")
	assert event["tracking_enabled"] is False
	assert "updated_at" in event


def test_apply_task_completion_is_idempotent(storage, seed):
	seed.team("team-a", score=3)
	seed.task("task-1", "mining", 10000, points=7)

	assert storage.apply_task_completion(task_id="task-1", team_id="team-a", points=7) is True
	assert storage.apply_task_completion(task_id="task-1", team_id="team-a", points=7) is False

	team = storage.list_teams("evt1")[0]
	assert team["score"] == 10
	assert team["completed_task_ids"] == ["task-1"]
	task = storage.list_tasks("evt1", xp_only=True)[0]
	assert task["completed_by_team_ids"] == ["team-a"]


def test_users_by_ids_maps_ids_to_documents(storage, seed):
	seed.user("u1", "Alpha")
	seed.user("u2", None)

	users = storage.users_by_ids(["u1", "u2", "u3"])

	assert set(users) == {"u1", "u2"}
	assert users["u1"]["rsn"] == "Alpha"
	assert storage.users_by_ids([]) == {}
