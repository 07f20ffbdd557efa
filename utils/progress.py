"""Utilities for diffing baseline and current player snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from utils.snapshots import PlayerSnapshot


@dataclass(frozen=True, slots=True)
class SkillGain:
	base_xp: int
	current_xp: int
	gain: int


@dataclass(slots=True)
class MemberProgress:
	user_id: Any
	rsn: str
	gains: Dict[str, SkillGain] = field(default_factory=dict)


@dataclass(slots=True)
class TeamProgress:
	team_id: Any
	total_gains: Dict[str, int] = field(default_factory=dict)
	members: List[MemberProgress] = field(default_factory=list)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"teamId": self.team_id,
			"totalGains": dict(self.total_gains),
			"members": [
				{
					"userId": member.user_id,
					"rsn": member.rsn,
					"gains": {
						skill: {"baseXP": gain.base_xp, "currentXP": gain.current_xp, "gain": gain.gain}
						for skill, gain in member.gains.items()
					},
				}
				for member in self.members
			],
		}


@dataclass(frozen=True, slots=True)
class XPTask:
	task_id: Any
	skill: str
	amount: int
	points: int = 0
	completed_by_team_ids: Tuple[Any, ...] = ()

	@classmethod
	def from_document(cls, doc: Mapping[str, Any]) -> Optional["XPTask"]:
		"""Return ``None`` for tasks without a usable skill + amount requirement."""

		requirement = doc.get("xp_requirement") or {}
		skill = str(requirement.get("skill") or "").strip().lower()
		amount = requirement.get("amount")
		if not skill or amount is None:
			return None
		return cls(
			task_id=doc.get("_id"),
			skill=skill,
			amount=int(amount),
			points=int(doc.get("points") or 0),
			completed_by_team_ids=tuple(doc.get("completed_by_team_ids") or ()),
		)


@dataclass(frozen=True, slots=True)
class TaskCompletion:
	task_id: Any
	team_id: Any
	skill: str
	gained: int
	required: int

	def to_dict(self) -> Dict[str, Any]:
		return {
			"taskId": self.task_id,
			"teamId": self.team_id,
			"skill": self.skill,
			"gained": self.gained,
			"required": self.required,
		}


MemberKey = Tuple[Any, Any]


def _latest_by_member(snapshots: Iterable[PlayerSnapshot]) -> Dict[MemberKey, PlayerSnapshot]:
	latest: Dict[MemberKey, PlayerSnapshot] = {}
	for snapshot in snapshots:
		key = snapshot.member_key
		existing = latest.get(key)
		if existing is None or snapshot.captured_at >= existing.captured_at:
			latest[key] = snapshot
	return latest


def compute_member_gains(baseline: PlayerSnapshot, current: PlayerSnapshot) -> MemberProgress:
	"""Per-skill gain for one member; regressions are kept as negative gains."""

	member = MemberProgress(user_id=baseline.user_id, rsn=baseline.rsn)
	for skill, base in baseline.skills.items():
		latest = current.skills.get(skill.lower())
		current_xp = latest.experience if latest is not None else base.experience
		member.gains[skill.lower()] = SkillGain(
			base_xp=base.experience,
			current_xp=current_xp,
			gain=current_xp - base.experience,
		)
	return member


def compute_team_gains(
	baselines: Iterable[PlayerSnapshot],
	currents: Iterable[PlayerSnapshot],
) -> List[TeamProgress]:
	"""Pair snapshots by (team, user) and aggregate skill gains per team.

	Members without a current snapshot are skipped; they have no progress yet.
	"""

	current_by_member = _latest_by_member(currents)
	teams: Dict[Any, TeamProgress] = {}

	for key, baseline in _latest_by_member(baselines).items():
		current = current_by_member.get(key)
		if current is None:
			continue

		team = teams.get(baseline.team_id)
		if team is None:
			team = teams[baseline.team_id] = TeamProgress(team_id=baseline.team_id)

		member = compute_member_gains(baseline, current)
		for skill, gain in member.gains.items():
			team.total_gains[skill] = team.total_gains.get(skill, 0) + gain.gain
		team.members.append(member)

	return list(teams.values())


def match_xp_tasks(tasks: Iterable[XPTask], teams: Iterable[TeamProgress]) -> List[TaskCompletion]:
	"""Return one completion per (task, team) whose requirement is met and not yet credited."""

	teams = list(teams)
	completions: List[TaskCompletion] = []
	for task in tasks:
		credited = set(task.completed_by_team_ids)
		for team in teams:
			if team.team_id in credited:
				continue
			gained = team.total_gains.get(task.skill.lower(), 0)
			if gained >= task.amount:
				completions.append(
					TaskCompletion(
						task_id=task.task_id,
						team_id=team.team_id,
						skill=task.skill.lower(),
						gained=gained,
						required=task.amount,
					)
				)
	return completions
