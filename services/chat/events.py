"""In-process notification channel from a session controller to its consumers."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

MESSAGE_APPENDED = "message.appended"
MESSAGE_CHUNK = "message.chunk"
MESSAGE_FINALIZED = "message.finalized"
MESSAGE_EDITED = "message.edited"
MESSAGE_DELETED = "message.deleted"
LOG_TRUNCATED = "log.truncated"
GENERATION_STARTED = "generation.started"
GENERATION_STOPPED = "generation.stopped"
SETTINGS_UPDATED = "settings.updated"
SESSION_DELETED = "session.deleted"


@dataclass
class ChatEvent:
	type: str
	session_id: str
	payload: Dict[str, Any] = field(default_factory=dict)
	created_at: float = field(default_factory=lambda: time.time())

	def to_dict(self) -> Dict[str, Any]:
		return {"type": self.type, "session_id": self.session_id, **self.payload}


class EventChannel:
	"""Fan events out to any number of subscriber queues.

	Publishing never blocks; a subscriber whose queue is full loses the event
	and a warning is logged.
	"""

	def __init__(self, maxsize: int = 0) -> None:
		self._maxsize = maxsize
		self._subscribers: List[asyncio.Queue] = []

	def subscribe(self) -> asyncio.Queue:
		queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
		self._subscribers.append(queue)
		return queue

	def unsubscribe(self, queue: asyncio.Queue) -> None:
		if queue in self._subscribers:
			self._subscribers.remove(queue)

	@property
	def subscriber_count(self) -> int:
		return len(self._subscribers)

	def publish(self, event: ChatEvent) -> None:
		for queue in list(self._subscribers):
			try:
				queue.put_nowait(event)
			except asyncio.QueueFull:
				logger.warning("Dropping %s event for session %s: subscriber queue full", event.type, event.session_id)
