"""In-memory registry of live session controllers backed by the session DAL."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from dal.session_dal import SessionDAL
from models.chat_models import SessionRecord
from services.chat.persistence import SessionWriter
from services.chat.session_controller import SessionController
from services.chat.stream_gateway import StreamGateway

logger = logging.getLogger(__name__)


class SessionRegistry:
	"""Create, load, and discard session controllers."""

	def __init__(self, dal: SessionDAL, gateway: StreamGateway, **controller_options: Any) -> None:
		self.dal = dal
		self.gateway = gateway
		self.writer = SessionWriter(dal)
		self._options = controller_options
		self._sessions: Dict[str, SessionController] = {}
		self._lock = asyncio.Lock()

	def create(self) -> SessionController:
		"""Start a new, empty session. It is stored once its first message is added."""
		controller = self._build(SessionRecord(session_id=uuid4().hex))
		self._sessions[controller.session_id] = controller
		return controller

	def peek(self, session_id: str) -> Optional[SessionController]:
		return self._sessions.get(session_id)

	async def get(self, session_id: str) -> SessionController:
		"""Return the live controller for `session_id`, loading or creating it as needed.

		An id that the store does not know starts an empty session.
		"""
		controller = self._sessions.get(session_id)
		if controller is not None:
			return controller
		async with self._lock:
			controller = self._sessions.get(session_id)
			if controller is None:
				self._evict_idle()
				record = await self.load(session_id)
				controller = self._build(record)
				self._sessions[session_id] = controller
		return controller

	async def get_existing(self, session_id: str) -> Optional[SessionController]:
		"""Return the controller for a live or stored session; None if neither exists."""
		controller = self._sessions.get(session_id)
		if controller is not None:
			return controller
		async with self._lock:
			controller = self._sessions.get(session_id)
			if controller is None:
				await self.writer.flush()
				record = await self.dal.load_session(session_id)
				if record is None:
					return None
				self._evict_idle()
				controller = self._build(record)
				self._sessions[session_id] = controller
		return controller

	def release(self, session_id: str) -> bool:
		"""Forget a live controller that is idle and unobserved. Its state is already stored."""
		controller = self._sessions.get(session_id)
		if controller is None or not _idle(controller):
			return False
		del self._sessions[session_id]
		return True

	async def load(self, session_id: str) -> SessionRecord:
		"""Read a session from the store, falling back to an empty one."""
		await self.writer.flush()
		try:
			record = await self.dal.load_session(session_id)
		except Exception:
			logger.exception("Failed to load session %s; starting empty", session_id)
			record = None
		return record or SessionRecord(session_id=session_id)

	async def discard(self, session_id: str) -> bool:
		"""Stop and forget a live session and delete its stored record."""
		controller = self._sessions.pop(session_id, None)
		if controller is not None:
			await controller.close(deleted=True)
		self.writer.invalidate(session_id)
		await self.writer.flush()
		deleted = await self.dal.delete_session(session_id)
		return deleted or controller is not None

	async def discard_all(self) -> int:
		for session_id in list(self._sessions):
			controller = self._sessions.pop(session_id)
			await controller.close(deleted=True)
			self.writer.invalidate(session_id)
		await self.writer.flush()
		return await self.dal.delete_all_sessions()

	async def shutdown(self) -> None:
		"""Stop every live generation and wait for pending writes."""
		for controller in list(self._sessions.values()):
			await controller.close()
		await self.writer.flush()
		self._sessions.clear()

	def _build(self, record: SessionRecord) -> SessionController:
		return SessionController.from_record(record, self.gateway, writer=self.writer, **self._options)

	def _evict_idle(self) -> None:
		for session_id, controller in list(self._sessions.items()):
			if _idle(controller):
				del self._sessions[session_id]


def _idle(controller: SessionController) -> bool:
	return not controller.is_generating and controller.events.subscriber_count == 0
