"""Command-line entry point for BingoTrack."""

from __future__ import annotations

import argparse
import json

from services.tracking_service import TrackingError, TrackingService
from utils.logger import get_logger, set_level
from utils.notifier import EventBroadcaster
from utils.scheduler import ScheduleRegistry, next_run_time
from web.app import MongoJSONProvider, create_app


logger = get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="BingoTrack XP tracking for clan bingo events")
	parser.add_argument("--log-level", help="Override LOG_LEVEL for this run")
	subparsers = parser.add_subparsers(dest="command")

	for name, help_text in (
		("refresh", "Refresh current snapshots for an event now"),
		("baselines", "Capture baselines for members who joined late"),
		("progress", "Print team XP gains"),
		("check-tasks", "Auto-complete XP tasks whose requirement is met"),
	):
		sub = subparsers.add_parser(name, help=help_text)
		sub.add_argument("event_id")

	for name, help_text in (
		("start-tracking", "Capture baselines and enable tracking"),
		("end-tracking", "Take a final snapshot and disable tracking"),
	):
		sub = subparsers.add_parser(name, help=help_text)
		sub.add_argument("event_id")
		sub.add_argument("--user", help="Acting user id (must be the event creator)")

	next_parser = subparsers.add_parser("next-run", help="Show the next fire time of a cron expression")
	next_parser.add_argument("expression")

	group_parser = subparsers.add_parser("update-group", help="Queue a WOM update for the whole clan group")
	group_parser.add_argument("--group-id", type=int, help="Defaults to WOM_GROUP_ID")

	subparsers.add_parser("schedule", help="Run the refresh scheduler in the foreground")

	web_parser = subparsers.add_parser("web", help="Start the Flask API with the scheduler")
	web_parser.add_argument("--host", default="127.0.0.1")
	web_parser.add_argument("--port", type=int, default=3000)
	web_parser.add_argument("--debug", action="store_true")
	web_parser.add_argument("--no-scheduler", action="store_true", help="Serve the API without scheduled refreshes")

	return parser


def _print(data: object) -> None:
	print(json.dumps(data, indent=2, default=MongoJSONProvider.default))


def main() -> None:
	parser = _build_parser()
	args = parser.parse_args()

	if args.log_level:
		set_level(args.log_level)

	if not args.command:
		parser.print_help()
		return

	if args.command == "next-run":
		upcoming = next_run_time(args.expression)
		if upcoming is None:
			parser.exit(1, f"Invalid recurrence expression: {args.expression}\n")
		print(upcoming.isoformat())
		return

	broadcaster = EventBroadcaster() if args.command == "web" else None
	tracking = TrackingService(notifier=broadcaster)

	try:
		if args.command == "refresh":
			_print(tracking.refresh(args.event_id).as_dict())
			return

		if args.command == "baselines":
			_print({"created": tracking.capture_late_baselines(args.event_id)})
			return

		if args.command == "progress":
			_print(tracking.progress(args.event_id))
			return

		if args.command == "check-tasks":
			_print(tracking.check_xp_tasks(args.event_id))
			return

		if args.command == "start-tracking":
			_print(tracking.start_tracking(args.event_id, requested_by=args.user))
			return

		if args.command == "end-tracking":
			_print(tracking.end_tracking(args.event_id, requested_by=args.user))
			return

		if args.command == "update-group":
			_print(tracking.update_group(args.group_id))
			return
	except TrackingError as exc:
		parser.exit(1, f"{exc}\n")

	if args.command == "schedule":
		registry = ScheduleRegistry(tracking.run_scheduled_refresh)
		registry.start()
		registry.block()
		return

	if args.command == "web":
		registry = None
		if not args.no_scheduler:
			registry = ScheduleRegistry(tracking.run_scheduled_refresh)
			registry.start()
		app = create_app(tracking, registry=registry, broadcaster=broadcaster)
		try:
			# The reloader would fork a second scheduler
			app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False, threaded=True)
		finally:
			if registry is not None:
				registry.stop()
		return

	parser.print_help()


if __name__ == "__main__":  # pragma: no cover - manual execution
	main()
