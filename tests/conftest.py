import os
from datetime import UTC, datetime

import pytest

os.environ["USE_MOCK_DB"] = "1"

from utils.snapshots import PlayerSnapshot, PlayerStats, SnapshotKind, normalize_skills
from utils.storage import MongoStorage
from utils.wom_client import WiseOldManError


class DummyGateway:
	"""Stands in for WiseOldManClient; ``failures`` counts errors to raise before answering."""

	def __init__(self, stats=None, failures=None) -> None:
		self.stats = dict(stats or {})
		self.failures = dict(failures or {})
		self.calls: list[str] = []
		self.group_calls: list[tuple] = []

	def update_and_fetch(self, username: str):
		self.calls.append(username)
		remaining = self.failures.get(username, 0)
		if remaining:
			self.failures[username] = remaining - 1
			raise WiseOldManError(f"HTTP 503 for {username}", status_code=503)
		skills = self.stats.get(username)
		if skills is None:
			return None
		return PlayerStats(rsn=username, player_id=None, snapshot_time=None, skills=normalize_skills(skills))

	def batch_update_group(self, group_id: int, verification_code: str):
		self.group_calls.append((group_id, verification_code))
		return {"count": 3}


class Seeder:
	def __init__(self, storage: MongoStorage) -> None:
		self.storage = storage

	def event(self, event_id="evt1", **fields):
		doc = {
			"_id": event_id,
			"name": "Autumn Bingo",
			"status": "active",
			"creator_id": "owner",
			"tracking_enabled": True,
			"refresh_schedule": None,
		}
		doc.update(fields)
		self.storage._collection(self.storage.EVENTS_COLLECTION).insert_one(doc)
		return doc

	def user(self, user_id, rsn=None):
		doc = {"_id": user_id, "username": user_id, "rsn": rsn}
		self.storage._collection(self.storage.USERS_COLLECTION).insert_one(doc)
		return doc

	def team(self, team_id, event_id="evt1", member_ids=(), score=0):
		doc = {
			"_id": team_id,
			"event_id": event_id,
			"name": team_id.title(),
			"score": score,
			"member_ids": list(member_ids),
			"completed_task_ids": [],
		}
		self.storage._collection(self.storage.TEAMS_COLLECTION).insert_one(doc)
		return doc

	def task(self, task_id, skill, amount, event_id="evt1", points=5, completed_by=()):
		doc = {
			"_id": task_id,
			"event_id": event_id,
			"title": f"Gain {amount} {skill} XP",
			"points": points,
			"is_xp_task": True,
			"xp_requirement": {"skill": skill, "amount": amount},
			"completed_by_team_ids": list(completed_by),
		}
		self.storage._collection(self.storage.TASKS_COLLECTION).insert_one(doc)
		return doc

	def snapshot(
		self,
		user_id,
		rsn,
		skills,
		kind=SnapshotKind.BASELINE,
		team_id="team-a",
		event_id="evt1",
		captured_at=None,
	):
		snapshot = PlayerSnapshot(
			event_id=event_id,
			team_id=team_id,
			user_id=user_id,
			rsn=rsn,
			kind=kind,
			captured_at=captured_at or datetime(2025, 10, 1, 12, tzinfo=UTC),
			skills=normalize_skills(skills),
		)
		return self.storage.insert_snapshots([snapshot])[0]


@pytest.fixture
def storage():
	return MongoStorage()


@pytest.fixture
def seed(storage):
	return Seeder(storage)


@pytest.fixture
def make_gateway():
	return DummyGateway

