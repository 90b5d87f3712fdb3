"""Fire-and-forget, per-session serialized persistence of chat state."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Protocol, Set

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
	async def save_session(self, session_id: str, messages: List[Dict[str, Any]], settings: Dict[str, Any]) -> None:
		...


class SessionWriter:
	"""Queue snapshot writes so that, per session, they never overlap and the newest wins.

	Each `schedule()` call takes a snapshot and gets a version number. Writes
	for one session run one at a time under a lock; a write whose version has
	been overtaken by a newer schedule is skipped once it gets the lock, so the
	last issued snapshot is the one left in the store. Failures are logged and
	otherwise ignored.
	"""

	def __init__(self, store: SessionStore) -> None:
		self._store = store
		self._locks: Dict[str, asyncio.Lock] = {}
		self._versions: Dict[str, int] = {}
		self._pending: Dict[str, int] = {}
		self._tasks: Set[asyncio.Task] = set()

	def schedule(self, session_id: str, messages: List[Dict[str, Any]], settings: Dict[str, Any]) -> asyncio.Task:
		version = self._versions.get(session_id, 0) + 1
		self._versions[session_id] = version
		self._pending[session_id] = self._pending.get(session_id, 0) + 1
		task = asyncio.get_running_loop().create_task(self._write(session_id, version, messages, settings))
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)
		task.add_done_callback(lambda _: self._release(session_id))
		return task

	async def _write(self, session_id: str, version: int, messages: List[Dict[str, Any]], settings: Dict[str, Any]) -> bool:
		lock = self._locks.setdefault(session_id, asyncio.Lock())
		async with lock:
			if version < self._versions.get(session_id, 0):
				return False
			try:
				await self._store.save_session(session_id, messages, settings)
			except Exception:
				logger.exception("Failed to save session %s", session_id)
				return False
			return True

	def invalidate(self, session_id: str) -> None:
		"""Mark every pending write for `session_id` stale, e.g. before deleting it."""
		if session_id in self._pending:
			self._versions[session_id] += 1

	def pending(self, session_id: str) -> bool:
		return session_id in self._pending

	def _release(self, session_id: str) -> None:
		# per-session bookkeeping only lives while a write is outstanding
		remaining = self._pending.get(session_id, 0) - 1
		if remaining > 0:
			self._pending[session_id] = remaining
			return
		self._pending.pop(session_id, None)
		self._versions.pop(session_id, None)
		self._locks.pop(session_id, None)

	async def flush(self) -> None:
		"""Wait for every scheduled write to finish."""
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)
