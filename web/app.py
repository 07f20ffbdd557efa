"""Flask application exposing the BingoTrack tracking API."""

from __future__ import annotations

import json
import queue
from datetime import datetime
from typing import Any, Optional

from bson import ObjectId
from flask import Flask, Response, jsonify, request, stream_with_context
from flask.json.provider import DefaultJSONProvider
from pymongo.errors import PyMongoError

from services.tracking_service import TrackingError, TrackingService
from utils.notifier import EventBroadcaster
from utils.scheduler import ScheduleRegistry, next_run_time
from utils.wom_client import WiseOldManError


class MongoJSONProvider(DefaultJSONProvider):
	"""Serialise ObjectId and datetimes coming straight out of MongoDB."""

	@staticmethod
	def default(o: Any) -> Any:
		if isinstance(o, ObjectId):
			return str(o)
		if isinstance(o, datetime):
			return o.isoformat()
		return DefaultJSONProvider.default(o)


def _iso_or_none(value: Optional[datetime]) -> Optional[str]:
	return value.isoformat() if value else None


def create_app(
	tracking: TrackingService | None = None,
	registry: ScheduleRegistry | None = None,
	broadcaster: EventBroadcaster | None = None,
) -> Flask:
	app = Flask(__name__)
	app.json = MongoJSONProvider(app)
	tracking_provider = tracking or TrackingService(notifier=broadcaster)
	stream_timeout = 15.0

	def _error(message: str, status: int):
		return jsonify({"status": "error", "message": message}), status

	def _requested_by() -> Any:
		payload = request.get_json(silent=True) or {}
		return payload.get("user_id") or request.headers.get("X-User-Id")

	@app.route("/api/health")
	def health():
		return jsonify({"status": "ok", "message": "BingoTrack API is running"})

	@app.route("/api/events/<event_id>/tracking/start", methods=["POST"])
	def api_start_tracking(event_id: str):
		try:
			data = tracking_provider.start_tracking(event_id, requested_by=_requested_by())
			return jsonify({"status": "ok", "message": "Event tracking started", **data})
		except TrackingError as exc:
			return _error(str(exc), exc.status_code)

	@app.route("/api/events/<event_id>/tracking/end", methods=["POST"])
	def api_end_tracking(event_id: str):
		try:
			data = tracking_provider.end_tracking(event_id, requested_by=_requested_by())
			return jsonify({"status": "ok", "message": "Event tracking ended", **data})
		except TrackingError as exc:
			return _error(str(exc), exc.status_code)

	@app.route("/api/events/<event_id>/refresh", methods=["POST"])
	def api_refresh(event_id: str):
		try:
			outcome = tracking_provider.refresh(event_id)
		except PyMongoError:
			app.logger.exception("Snapshot commit failed for event %s", event_id)
			return _error("Could not save refreshed snapshots; try again later.", 500)
		if not outcome.success:
			return jsonify({"status": "error", "message": outcome.error, **outcome.as_dict()}), 400
		return jsonify({"status": "ok", "message": "Snapshots refreshed", **outcome.as_dict()})

	@app.route("/api/events/<event_id>/baselines", methods=["POST"])
	def api_late_baselines(event_id: str):
		try:
			created = tracking_provider.capture_late_baselines(event_id)
			return jsonify({"status": "ok", "created": created})
		except TrackingError as exc:
			return _error(str(exc), exc.status_code)

	@app.route("/api/events/<event_id>/progress")
	def api_progress(event_id: str):
		try:
			return jsonify({"status": "ok", **tracking_provider.progress(event_id)})
		except TrackingError as exc:
			return _error(str(exc), exc.status_code)

	@app.route("/api/events/<event_id>/check-xp-tasks", methods=["POST"])
	def api_check_xp_tasks(event_id: str):
		try:
			return jsonify({"status": "ok", **tracking_provider.check_xp_tasks(event_id)})
		except TrackingError as exc:
			return _error(str(exc), exc.status_code)

	@app.route("/api/events/<event_id>/stream")
	def api_event_stream(event_id: str):
		if broadcaster is None:
			return _error("Live updates are not enabled on this server.", 404)

		channel = broadcaster.subscribe(event_id)

		def generate():
			try:
				yield ": connected\n\n"
				while True:
					try:
						payload = channel.get(timeout=stream_timeout)
					except queue.Empty:
						yield ": keep-alive\n\n"
						continue
					name = payload.get("type", "message")
					yield f"event: {name}\ndata: {json.dumps(payload, default=str)}\n\n"
			finally:
				broadcaster.unsubscribe(event_id, channel)

		return Response(stream_with_context(generate()), mimetype="text/event-stream")

	@app.route("/api/schedules")
	def api_schedules():
		if registry is None:
			return jsonify({"status": "ok", "running": False, "schedules": []})
		schedules = []
		for event_id in registry.list_active():
			entry = registry.entry(event_id)
			if entry is None:
				continue
			schedules.append(
				{
					"eventId": event_id,
					"expression": entry.expression,
					"nextRunTime": _iso_or_none(next_run_time(entry.expression)),
				}
			)
		return jsonify({"status": "ok", "running": registry.running, "schedules": schedules})

	@app.route("/api/schedules/reload", methods=["POST"])
	def api_reload_schedules():
		if registry is None:
			return _error("Scheduler is not running in this process.", 409)
		active = registry.reload()
		return jsonify({"status": "ok", "active": active})

	@app.route("/api/schedules/next-run")
	def api_next_run():
		expression = (request.args.get("expression") or "").strip()
		if not expression:
			return _error("The expression parameter is required.", 400)
		upcoming = next_run_time(expression)
		if upcoming is None:
			return _error("Invalid recurrence expression.", 400)
		return jsonify({"status": "ok", "expression": expression, "nextRunTime": upcoming.isoformat()})

	@app.route("/api/groups/update", methods=["POST"])
	def api_update_group():
		payload = request.get_json(silent=True) or {}
		raw_group = payload.get("group_id")
		try:
			group_id = int(raw_group) if raw_group is not None else None
		except (TypeError, ValueError):
			return _error("Invalid group id.", 400)
		try:
			result = tracking_provider.update_group(group_id)
			return jsonify({"status": "ok", **result})
		except TrackingError as exc:
			return _error(str(exc), exc.status_code)
		except WiseOldManError as exc:
			app.logger.error("WOM group update failed: %s", exc)
			return _error(f"Wise Old Man rejected the group update: {exc}", 502)

	return app
