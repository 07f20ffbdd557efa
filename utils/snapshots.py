"""Player snapshot records and their MongoDB document mapping."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class SnapshotKind(str, Enum):
	BASELINE = "baseline"
	CURRENT = "current"


@dataclass(frozen=True, slots=True)
class SkillStat:
	experience: int
	level: int

	def to_document(self) -> Dict[str, int]:
		return {"experience": self.experience, "level": self.level}


Skills = Dict[str, SkillStat]


def normalize_skills(raw: Mapping[str, Any] | None) -> Skills:
	"""Lowercase skill names and coerce each entry into a :class:`SkillStat`.

	Accepts both stored documents (``{"experience": .., "level": ..}``) and
	ready-made :class:`SkillStat` values.
	"""

	skills: Skills = {}
	for name, value in (raw or {}).items():
		if isinstance(value, SkillStat):
			stat = value
		else:
			stat = SkillStat(
				experience=int(value.get("experience") or 0),
				level=int(value.get("level") or 0),
			)
		skills[str(name).strip().lower()] = stat
	return skills


@dataclass(frozen=True, slots=True)
class PlayerStats:
	"""Latest stats for one player as reported by Wise Old Man."""

	rsn: str
	player_id: Optional[int]
	snapshot_time: Optional[datetime]
	skills: Skills = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PlayerSnapshot:
	event_id: Any
	team_id: Any
	user_id: Any
	rsn: str
	kind: SnapshotKind
	captured_at: datetime
	skills: Skills = field(default_factory=dict)
	snapshot_id: Any = None

	@property
	def member_key(self) -> tuple:
		return (self.team_id, self.user_id)

	def with_id(self, snapshot_id: Any) -> "PlayerSnapshot":
		return replace(self, snapshot_id=snapshot_id)

	def to_document(self, *, written_at: Optional[datetime] = None) -> Dict[str, Any]:
		written_at = written_at or self.captured_at
		return {
			"event_id": self.event_id,
			"team_id": self.team_id,
			"user_id": self.user_id,
			"rsn": self.rsn,
			"snapshot_type": self.kind.value,
			"captured_at": self.captured_at,
			"skills": {name: stat.to_document() for name, stat in self.skills.items()},
			"created_at": written_at,
			"updated_at": written_at,
		}

	@classmethod
	def from_document(cls, doc: Mapping[str, Any]) -> "PlayerSnapshot":
		captured_at = doc.get("captured_at")
		# mongomock and pymongo hand datetimes back naive unless tz_aware is set
		if isinstance(captured_at, datetime) and captured_at.tzinfo is None:
			captured_at = captured_at.replace(tzinfo=UTC)
		return cls(
			event_id=doc.get("event_id"),
			team_id=doc.get("team_id"),
			user_id=doc.get("user_id"),
			rsn=doc.get("rsn", ""),
			kind=SnapshotKind(doc.get("snapshot_type", SnapshotKind.CURRENT.value)),
			captured_at=captured_at,
			skills=normalize_skills(doc.get("skills")),
			snapshot_id=doc.get("_id"),
		)


def from_stats(
	stats: PlayerStats,
	*,
	event_id: Any,
	team_id: Any,
	user_id: Any,
	kind: SnapshotKind,
	captured_at: datetime,
	rsn: Optional[str] = None,
) -> PlayerSnapshot:
	"""Build an uncommitted snapshot for one team member from fetched stats."""

	return PlayerSnapshot(
		event_id=event_id,
		team_id=team_id,
		user_id=user_id,
		rsn=rsn or stats.rsn,
		kind=kind,
		captured_at=captured_at,
		skills=dict(stats.skills),
	)
