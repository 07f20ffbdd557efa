"""Real-time notification channel for event subscribers."""

from __future__ import annotations

import queue
from collections import defaultdict
from threading import Lock
from typing import Any, Dict, List, Protocol

from utils.logger import get_logger


logger = get_logger(__name__)


Payload = Dict[str, Any]


class Notifier(Protocol):
	def notify(self, event_id: str, payload: Payload) -> None:
		...


class NullNotifier:
	"""Used when no live transport is attached."""

	def notify(self, event_id: str, payload: Payload) -> None:
		return None


class EventBroadcaster:
	"""In-process pub/sub: one queue per subscriber, grouped by event id."""

	def __init__(self, *, max_queue_size: int = 100) -> None:
		self._subscribers: Dict[str, List[queue.Queue]] = defaultdict(list)
		self._lock = Lock()
		self._max_queue_size = max_queue_size

	def subscribe(self, event_id: str) -> queue.Queue:
		channel: queue.Queue = queue.Queue(maxsize=self._max_queue_size)
		with self._lock:
			self._subscribers[str(event_id)].append(channel)
		return channel

	def unsubscribe(self, event_id: str, channel: queue.Queue) -> None:
		with self._lock:
			channels = self._subscribers.get(str(event_id), [])
			if channel in channels:
				channels.remove(channel)
			if not channels:
				self._subscribers.pop(str(event_id), None)

	def subscriber_count(self, event_id: str) -> int:
		with self._lock:
			return len(self._subscribers.get(str(event_id), []))

	def notify(self, event_id: str, payload: Payload) -> None:
		with self._lock:
			channels = list(self._subscribers.get(str(event_id), []))
		for channel in channels:
			try:
				channel.put_nowait(payload)
			except queue.Full:
				logger.warning("Dropping %s notification for a slow subscriber of event %s", payload.get("type"), event_id)
