"""
Real-time notifier.

Fans participant state changes out to two logical channels: the owning
student's channel and the supervisor channel of the exam. Delivery is
best-effort and at-most-once; publishing never blocks and never retries.
A client that missed an event re-fetches the participant, whose phase can
always be recomputed from durable state.

Mutations run in FastAPI's threadpool while subscribers live on the event
loop, so delivery is handed to each subscriber's loop with
``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .models import utcnow
from .participants import ParticipantSnapshot

logger = logging.getLogger(__name__)


def student_channel(student_id: int) -> str:
	return f"student:{student_id}"


def supervisor_channel(exam_id: int) -> str:
	return f"supervisor:{exam_id}"


@dataclass(frozen=True)
class ParticipantChangedEvent:
	participant: ParticipantSnapshot
	reason: str
	artifact_stored: Optional[bool] = None
	timestamp: datetime = field(default_factory=utcnow)

	@property
	def channels(self) -> List[str]:
		return [student_channel(self.participant.student_id), supervisor_channel(self.participant.exam_id)]

	def to_dict(self) -> Dict[str, Any]:
		p = self.participant.to_dict()
		return {
			"type": "participant_changed",
			"reason": self.reason,
			"participant_id": p["id"],
			"exam_id": p["exam_id"],
			"student_id": p["student_id"],
			"status": p["status"],
			"question_code": p["question_code"],
			"start_time": p["start_time"],
			"recording_start_time": p["recording_start_time"],
			"submit_time": p["submit_time"],
			"artifact_stored": self.artifact_stored if self.artifact_stored is not None else bool(p["artifact_ref"]),
			"timestamp": self.timestamp.isoformat(),
		}

	def to_json(self) -> str:
		return json.dumps(self.to_dict())


class Subscription:
	"""One observer of one channel, backed by a bounded asyncio queue."""

	def __init__(self, notifier: "Notifier", channel: str, loop: asyncio.AbstractEventLoop, maxsize: int) -> None:
		self.notifier = notifier
		self.channel = channel
		self.loop = loop
		self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
		self.dropped = 0

	def _offer(self, payload: Dict[str, Any]) -> None:
		try:
			self.queue.put_nowait(payload)
		except asyncio.QueueFull:
			self.dropped += 1
			logger.warning("Notification queue full on %s; dropped %s", self.channel, payload.get("reason"))

	async def get(self) -> Dict[str, Any]:
		return await self.queue.get()

	def close(self) -> None:
		self.notifier.unsubscribe(self)


class Notifier:
	def __init__(self, queue_size: int = 100) -> None:
		self._lock = threading.Lock()
		self._subscriptions: Dict[str, Set[Subscription]] = defaultdict(set)
		self._queue_size = queue_size
		self.published = 0

	def subscribe(self, channel: str, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
		"""Register an observer; must be called from the observer's event loop unless ``loop`` is given."""
		sub = Subscription(self, channel, loop or asyncio.get_running_loop(), self._queue_size)
		with self._lock:
			self._subscriptions[channel].add(sub)
		logger.debug("Subscribed to %s", channel)
		return sub

	def unsubscribe(self, sub: Subscription) -> None:
		with self._lock:
			subs = self._subscriptions.get(sub.channel)
			if subs is not None:
				subs.discard(sub)
				if not subs:
					del self._subscriptions[sub.channel]

	def subscriber_count(self, channel: str) -> int:
		with self._lock:
			return len(self._subscriptions.get(channel, ()))

	def publish(self, event: ParticipantChangedEvent) -> int:
		"""Hand ``event`` to every subscriber of its channels. Returns the number of deliveries scheduled."""
		payload = event.to_dict()
		self.published += 1
		with self._lock:
			targets = [sub for channel in event.channels for sub in self._subscriptions.get(channel, ())]
		scheduled = 0
		for sub in targets:
			try:
				sub.loop.call_soon_threadsafe(sub._offer, payload)
				scheduled += 1
			except RuntimeError:
				# Subscriber's loop is gone; forget it
				logger.warning("Dropping subscriber on %s: event loop closed", sub.channel)
				self.unsubscribe(sub)
		logger.debug("Published %s for participant %s to %d subscriber(s)", event.reason, event.participant.id, scheduled)
		return scheduled
