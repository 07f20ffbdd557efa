from datetime import UTC, datetime, timedelta

from utils import progress
from utils.snapshots import PlayerSnapshot, SnapshotKind, normalize_skills


BASE_TIME = datetime(2025, 10, 1, 12, tzinfo=UTC)


def _snapshot(user_id, skills, kind, team_id="team-a", captured_at=BASE_TIME):
	return PlayerSnapshot(
		event_id="evt1",
		team_id=team_id,
		user_id=user_id,
		rsn=user_id.title(),
		kind=kind,
		captured_at=captured_at,
		skills=normalize_skills(skills),
	)


def _baseline(user_id, skills, **kwargs):
	return _snapshot(user_id, skills, SnapshotKind.BASELINE, **kwargs)


def _current(user_id, skills, **kwargs):
	return _snapshot(user_id, skills, SnapshotKind.CURRENT, **kwargs)


def test_gain_is_current_minus_baseline():
	teams = progress.compute_team_gains(
		[_baseline("alice", {"attack": {"experience": 1000, "level": 40}})],
		[_current("alice", {"attack": {"experience": 1500, "level": 41}})],
	)

	assert len(teams) == 1
	member = teams[0].members[0]
	assert member.gains["attack"] == progress.SkillGain(base_xp=1000, current_xp=1500, gain=500)
	assert teams[0].total_gains == {"attack": 500}


def test_team_totals_sum_members_and_skip_members_without_current():
	baselines = [
		_baseline("alice", {"mining": {"experience": 100, "level": 5}}),
		_baseline("bob", {"mining": {"experience": 200, "level": 6}}),
		_baseline("carol", {"mining": {"experience": 300, "level": 7}}),
		_baseline("dan", {"mining": {"experience": 50, "level": 2}}, team_id="team-b"),
	]
	currents = [
		_current("alice", {"mining": {"experience": 1100, "level": 20}}),
		_current("bob", {"mining": {"experience": 700, "level": 15}}),
		_current("dan", {"mining": {"experience": 80, "level": 3}}, team_id="team-b"),
	]

	teams = {team.team_id: team for team in progress.compute_team_gains(baselines, currents)}

	assert teams["team-a"].total_gains == {"mining": 1500}
	assert [member.user_id for member in teams["team-a"].members] == ["alice", "bob"]
	assert teams["team-b"].total_gains == {"mining": 30}


def test_negative_gain_is_reported_as_is():
	# Stat rollbacks on the remote side can make current lower than baseline.
	teams = progress.compute_team_gains(
		[_baseline("alice", {"fishing": {"experience": 5000, "level": 50}})],
		[_current("alice", {"fishing": {"experience": 4200, "level": 49}})],
	)

	assert teams[0].total_gains == {"fishing": -800}
	assert teams[0].members[0].gains["fishing"].gain == -800


def test_skill_keys_are_case_normalized():
	teams = progress.compute_team_gains(
		[_baseline("alice", {"Woodcutting": {"experience": 10, "level": 1}})],
		[_current("alice", {"WOODCUTTING": {"experience": 25, "level": 2}})],
	)

	assert teams[0].total_gains == {"woodcutting": 15}


def test_skill_missing_from_current_counts_as_unchanged():
	teams = progress.compute_team_gains(
		[_baseline("alice", {"attack": {"experience": 10, "level": 1}, "magic": {"experience": 90, "level": 3}})],
		[_current("alice", {"attack": {"experience": 30, "level": 2}})],
	)

	assert teams[0].members[0].gains["magic"] == progress.SkillGain(base_xp=90, current_xp=90, gain=0)


def test_latest_current_wins_when_duplicates_coexist():
	teams = progress.compute_team_gains(
		[_baseline("alice", {"attack": {"experience": 0, "level": 1}})],
		[
			_current("alice", {"attack": {"experience": 100, "level": 2}}, captured_at=BASE_TIME),
			_current("alice", {"attack": {"experience": 400, "level": 5}}, captured_at=BASE_TIME + timedelta(hours=1)),
		],
	)

	assert teams[0].total_gains == {"attack": 400}


def test_to_dict_uses_api_field_names():
	team = progress.compute_team_gains(
		[_baseline("alice", {"attack": {"experience": 1000, "level": 40}})],
		[_current("alice", {"attack": {"experience": 1500, "level": 41}})],
	)[0]

	assert team.to_dict() == {
		"teamId": "team-a",
		"totalGains": {"attack": 500},
		"members": [
			{
				"userId": "alice",
				"rsn": "Alice",
				"gains": {"attack": {"baseXP": 1000, "currentXP": 1500, "gain": 500}},
			}
		],
	}


def test_match_xp_tasks_emits_completion_for_team_meeting_requirement():
	task = progress.XPTask.from_document(
		{"_id": "task-1", "points": 10, "xp_requirement": {"skill": "Mining", "amount": 10000}}
	)
	teams = [
		progress.TeamProgress(team_id="team-a", total_gains={"mining": 12000}),
		progress.TeamProgress(team_id="team-b", total_gains={"mining": 9999}),
	]

	completions = progress.match_xp_tasks([task], teams)

	assert completions == [
		progress.TaskCompletion(task_id="task-1", team_id="team-a", skill="mining", gained=12000, required=10000)
	]


def test_match_xp_tasks_skips_already_credited_teams():
	task = progress.XPTask(task_id="task-1", skill="mining", amount=10000, completed_by_team_ids=("team-a",))
	teams = [progress.TeamProgress(team_id="team-a", total_gains={"mining": 50000})]

	assert progress.match_xp_tasks([task], teams) == []


def test_negative_gain_never_meets_requirement():
	task = progress.XPTask(task_id="task-1", skill="fishing", amount=1)
	teams = [progress.TeamProgress(team_id="team-a", total_gains={"fishing": -300})]

	assert progress.match_xp_tasks([task], teams) == []


def test_task_without_requirement_is_ignored():
	assert progress.XPTask.from_document({"_id": "t", "xp_requirement": None}) is None
	assert progress.XPTask.from_document({"_id": "t", "xp_requirement": {"skill": "attack"}}) is None
