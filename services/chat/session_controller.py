"""Turn management for one chat session.

The controller owns the message log and the current stream handle. Every
mutation goes through the public operations below; fragments from the
generation source are applied by a background task only while the handle
that requested them is still active.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, Dict, Iterable, List, Optional, Set

from models.chat_models import (
	Attachment,
	Message,
	Sender,
	SessionRecord,
	SessionSettings,
	StreamHandle,
	StreamState,
	WebSearchMode,
)
from services.chat import events as ev
from services.chat.cancel_token import GenerationCancelled
from services.chat.events import ChatEvent, EventChannel
from services.chat.history import format_history
from services.chat.persistence import SessionWriter
from services.chat.stream_gateway import StreamGateway

logger = logging.getLogger(__name__)

CANCELLED_TEXT = "AI Message Cancelled"
SEND_FAILURE_TEXT = "Sorry, I couldn't get a response. Please try again."
EDIT_FAILURE_TEXT = "Sorry, I couldn't generate a response. Please try again."
REGENERATE_FAILURE_TEXT = "Sorry, I couldn't regenerate the response. Please try again."
DEFAULT_REASONING_BUDGET = 8192


class SessionClosed(RuntimeError):
	"""Raised when an operation targets a session that has been closed or deleted."""


class SessionController:
	"""Own one session's message log and its single active generation."""

	def __init__(
		self,
		session_id: str,
		gateway: StreamGateway,
		*,
		messages: Optional[Iterable[Message]] = None,
		settings: Optional[SessionSettings] = None,
		writer: Optional[SessionWriter] = None,
		events: Optional[EventChannel] = None,
		reasoning_budget: int = DEFAULT_REASONING_BUDGET,
		generation_timeout: Optional[float] = None,
	) -> None:
		self.session_id = session_id
		self.settings = settings or SessionSettings()
		self.events = events or EventChannel()
		self.reasoning_budget = reasoning_budget
		self.generation_timeout = generation_timeout
		self.current_stream: Optional[StreamHandle] = None
		self._gateway = gateway
		self._writer = writer
		self._messages: List[Message] = list(messages or [])
		self._tasks: Set[asyncio.Task] = set()
		self.closed = False
		self._deleted = False

	@classmethod
	def from_record(cls, record: SessionRecord, gateway: StreamGateway, **kwargs: Any) -> "SessionController":
		return cls(record.session_id, gateway, messages=record.messages, settings=record.settings, **kwargs)

	@property
	def messages(self) -> List[Message]:
		return list(self._messages)

	@property
	def initialized(self) -> bool:
		"""False until the first message is added, and again once the log is emptied."""
		return bool(self._messages)

	@property
	def is_generating(self) -> bool:
		return self.current_stream is not None and self.current_stream.active

	@property
	def generation_budget(self) -> int:
		return self.reasoning_budget if self.settings.reasoning_enabled else 0

	def get_message(self, message_id: str) -> Message:
		return self._messages[self._index_of(message_id)]

	def snapshot(self) -> Dict[str, Any]:
		handle = self.current_stream
		return {
			"id": self.session_id,
			"messages": [m.to_dict() for m in self._messages],
			"settings": self.settings.to_dict(),
			"generating": self.is_generating,
			"streaming_message_id": handle.message_id if handle is not None and handle.active else None,
		}

	# -- turn operations ---------------------------------------------------

	def send(self, prompt_text: str, attachments: Optional[Iterable[Attachment]] = None) -> StreamHandle:
		"""Append a user turn plus an empty reply and start streaming into the reply."""
		self._ensure_open()
		attachments = tuple(attachments or ())
		if not prompt_text.strip() and not attachments:
			raise ValueError("A prompt or an attachment is required.")
		self._supersede()
		history = format_history(self._messages)
		self._append(Message(sender=Sender.USER, text=prompt_text, attachments=attachments))
		return self._start(history, prompt_text, SEND_FAILURE_TEXT)

	def edit_user_message(self, message_id: str, new_text: str) -> StreamHandle:
		"""Rewrite a user turn, drop everything after it, and answer it again."""
		self._ensure_open()
		index = self._index_of(message_id)
		message = self._messages[index]
		if not message.is_user:
			raise ValueError("Only user messages can be edited.")
		if not new_text.strip():
			raise ValueError("Edited message text is required.")
		self._supersede()
		message.text = new_text
		self._publish(ev.MESSAGE_EDITED, message_id=message_id, text=new_text)
		self._truncate(index + 1)
		history = format_history(self._messages[:index])
		return self._start(history, new_text, EDIT_FAILURE_TEXT)

	def regenerate(self, assistant_message_id: str) -> StreamHandle:
		"""Replace a reply (and everything after it) with a fresh one for the same prompt."""
		self._ensure_open()
		index = self._index_of(assistant_message_id)
		if self._messages[index].is_user:
			raise ValueError("Only assistant replies can be regenerated.")
		if index == 0 or not self._messages[index - 1].is_user:
			raise ValueError("Reply has no preceding user message to regenerate from.")
		self._supersede()
		prompt = self._messages[index - 1].text
		history = format_history(self._messages[:index - 1])
		self._truncate(index)
		return self._start(history, prompt, REGENERATE_FAILURE_TEXT)

	def delete_message(self, message_id: str) -> List[str]:
		"""Remove a user turn with all later turns, or a single reply. Returns removed ids."""
		self._ensure_open()
		index = self._index_of(message_id)
		if self._messages[index].is_user:
			removed = self._messages[index:]
			del self._messages[index:]
		else:
			removed = [self._messages.pop(index)]
		removed_ids = [m.id for m in removed]

		handle = self.current_stream
		if handle is not None and handle.message_id in removed_ids and handle.settle(StreamState.CANCELLED):
			self._publish(ev.GENERATION_STOPPED, stream_id=handle.id, message_id=handle.message_id, state=handle.state.value)
		if not self._messages:
			self.current_stream = None

		self._publish(ev.MESSAGE_DELETED, message_ids=removed_ids, remaining=len(self._messages))
		self._persist()
		return removed_ids

	def stop(self) -> bool:
		"""Cancel the active generation, if any. Takes effect before any further fragment."""
		handle = self.current_stream
		if handle is None or not handle.active:
			return False
		self._cancel(handle)
		self._persist()
		return True

	def update_settings(
		self,
		*,
		reasoning_enabled: Optional[bool] = None,
		web_search_mode: Optional[str] = None,
	) -> SessionSettings:
		"""Apply both fields or neither; an unknown search mode raises ValueError."""
		self._ensure_open()
		mode = WebSearchMode(web_search_mode) if web_search_mode is not None else self.settings.web_search_mode
		if reasoning_enabled is not None:
			self.settings.reasoning_enabled = bool(reasoning_enabled)
		self.settings.web_search_mode = mode
		self._publish(ev.SETTINGS_UPDATED, settings=self.settings.to_dict())
		self._persist()
		return self.settings

	async def wait(self) -> None:
		"""Wait until every stream task started by this controller has unwound."""
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)

	async def close(self, *, deleted: bool = False) -> None:
		"""Refuse further operations, stop the active generation and wait for it.

		With `deleted=True` nothing more is persisted and subscribers receive a
		`session.deleted` event.
		"""
		self.closed = True
		self._deleted = self._deleted or deleted
		self.stop()
		await self.wait()
		if deleted:
			self._publish(ev.SESSION_DELETED)

	# -- internals ---------------------------------------------------------

	def _ensure_open(self) -> None:
		if self.closed:
			raise SessionClosed(f"Session {self.session_id} is closed")

	def _index_of(self, message_id: str) -> int:
		for index, message in enumerate(self._messages):
			if message.id == message_id:
				return index
		raise KeyError(f"Message {message_id} not found")

	def _find(self, message_id: str) -> Optional[Message]:
		for message in self._messages:
			if message.id == message_id:
				return message
		return None

	def _append(self, message: Message) -> None:
		self._messages.append(message)
		self._publish(ev.MESSAGE_APPENDED, message=message.to_dict())

	def _truncate(self, length: int) -> None:
		if length >= len(self._messages):
			return
		removed_ids = [m.id for m in self._messages[length:]]
		del self._messages[length:]
		self._publish(ev.LOG_TRUNCATED, message_ids=removed_ids, remaining=len(self._messages))

	def _supersede(self) -> None:
		handle = self.current_stream
		if handle is not None and handle.active:
			logger.info("Superseding generation %s in session %s", handle.id, self.session_id)
			self._cancel(handle)

	def _start(self, history: List[Dict[str, str]], prompt: str, failure_text: str) -> StreamHandle:
		reply = Message(sender=Sender.ASSISTANT)
		self._append(reply)
		handle = StreamHandle(message_id=reply.id, failure_text=failure_text)
		self.current_stream = handle
		if self.generation_timeout:
			handle.token.cancel_after(self.generation_timeout)
		self._publish(ev.GENERATION_STARTED, stream_id=handle.id, message_id=reply.id)
		self._persist()

		task = asyncio.get_running_loop().create_task(self._run(handle, history, prompt, self.generation_budget))
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)
		return handle

	async def _run(self, handle: StreamHandle, history: List[Dict[str, str]], prompt: str, budget: int) -> None:
		fragments = self._gateway.generate(history, prompt, handle.token, budget)
		try:
			async with aclosing(fragments):
				async for fragment in fragments:
					if not handle.active:
						break
					message = self._find(handle.message_id)
					message.text += fragment
					self._publish(ev.MESSAGE_CHUNK, message_id=message.id, fragment=fragment)
		except GenerationCancelled:
			if handle.active:
				self._cancel(handle)
				self._persist()
		except asyncio.CancelledError:
			if handle.active:
				self._cancel(handle)
				self._persist()
			raise
		except Exception as exc:
			if handle.active:
				logger.warning("Generation %s in session %s failed: %s", handle.id, self.session_id, exc)
				self._fail(handle)
		else:
			if handle.settle(StreamState.COMPLETED):
				self._finalize(handle)
				self._persist()
		finally:
			handle.token.clear_timeout()

	def _cancel(self, handle: StreamHandle) -> None:
		handle.settle(StreamState.CANCELLED)
		message = self._find(handle.message_id)
		if message is not None:
			if not message.text.strip():
				message.text = CANCELLED_TEXT
			message.cancelled = True
		self._finalize(handle)

	def _fail(self, handle: StreamHandle) -> None:
		handle.settle(StreamState.ERRORED)
		message = self._find(handle.message_id)
		if message is not None:
			message.text = handle.failure_text
			message.cancelled = True
		self._finalize(handle)
		self._persist()

	def _finalize(self, handle: StreamHandle) -> None:
		message = self._find(handle.message_id)
		if message is not None:
			self._publish(ev.MESSAGE_FINALIZED, message_id=message.id, text=message.text, cancelled=message.cancelled)
		self._publish(ev.GENERATION_STOPPED, stream_id=handle.id, message_id=handle.message_id, state=handle.state.value)

	def _publish(self, event_type: str, **payload: Any) -> None:
		self.events.publish(ChatEvent(type=event_type, session_id=self.session_id, payload=payload))

	def _persist(self) -> None:
		if self._writer is None or self._deleted:
			return
		self._writer.schedule(
			self.session_id,
			[m.to_dict() for m in self._messages],
			self.settings.to_dict(),
		)
