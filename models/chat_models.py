"""Chat domain models: messages, attachments, settings, and stream handles."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from services.chat.cancel_token import CancelToken


class Sender(str, Enum):
	USER = "user"
	ASSISTANT = "assistant"


class WebSearchMode(str, Enum):
	AUTO = "auto"
	ON = "on"
	OFF = "off"


class StreamState(str, Enum):
	"""Lifecycle of one generation request."""

	ACTIVE = "active"
	COMPLETED = "completed"
	CANCELLED = "cancelled"
	ERRORED = "errored"


def new_id() -> str:
	return uuid4().hex


@dataclass(frozen=True)
class Attachment:
	"""A file attached to a user message; `content_ref` is a data URL or other reference."""

	name: str
	content_ref: str

	def to_dict(self) -> Dict[str, str]:
		return {"name": self.name, "content_ref": self.content_ref}


@dataclass
class Message:
	"""One turn in the conversation log."""

	sender: Sender
	text: str = ""
	attachments: Tuple[Attachment, ...] = ()
	cancelled: bool = False
	id: str = field(default_factory=new_id)
	created_at: float = field(default_factory=lambda: time.time())

	@property
	def is_user(self) -> bool:
		return self.sender is Sender.USER

	def to_dict(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"sender": self.sender.value,
			"text": self.text,
			"attachments": [a.to_dict() for a in self.attachments],
			"cancelled": self.cancelled,
			"created_at": self.created_at,
		}

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "Message":
		"""Build a message from its stored form.

		Raises ValueError (or KeyError/TypeError) on malformed input; callers at
		the persistence boundary decide how to recover.
		"""
		if not isinstance(data, dict):
			raise ValueError("Message record must be an object.")
		sender = Sender(data.get("sender"))
		text = data.get("text") or ""
		if not isinstance(text, str):
			raise ValueError("Message text must be a string.")
		attachments = tuple(
			Attachment(name=str(item["name"]), content_ref=str(item["content_ref"]))
			for item in (data.get("attachments") or [])
		)
		return cls(
			id=str(data.get("id") or new_id()),
			sender=sender,
			text=text,
			attachments=attachments if sender is Sender.USER else (),
			cancelled=bool(data.get("cancelled")) and sender is Sender.ASSISTANT,
			created_at=float(data.get("created_at") or time.time()),
		)


@dataclass
class SessionSettings:
	"""Per-session generation settings."""

	reasoning_enabled: bool = False
	web_search_mode: WebSearchMode = WebSearchMode.AUTO

	def to_dict(self) -> Dict[str, Any]:
		return {
			"reasoning_enabled": self.reasoning_enabled,
			"web_search_mode": self.web_search_mode.value,
		}

	@classmethod
	def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SessionSettings":
		"""Validate a stored settings object, substituting defaults for bad fields.

		Accepts the older camelCase keys (`isReasonModeActive`, `searchUIMode`).
		"""
		if not isinstance(data, dict):
			return cls()
		reasoning = data.get("reasoning_enabled", data.get("isReasonModeActive"))
		mode = data.get("web_search_mode", data.get("searchUIMode"))
		try:
			search_mode = WebSearchMode(mode)
		except ValueError:
			search_mode = WebSearchMode.AUTO
		return cls(
			reasoning_enabled=reasoning if isinstance(reasoning, bool) else False,
			web_search_mode=search_mode,
		)


@dataclass
class StreamHandle:
	"""One outstanding (or settled) generation for a session."""

	message_id: str
	token: CancelToken = field(default_factory=CancelToken)
	failure_text: str = "Sorry, I couldn't get a response. Please try again."
	state: StreamState = StreamState.ACTIVE
	id: str = field(default_factory=new_id)

	@property
	def active(self) -> bool:
		return self.state is StreamState.ACTIVE

	def settle(self, state: StreamState) -> bool:
		"""Move an active handle to a terminal state. Terminal handles never change."""
		if not self.active or state is StreamState.ACTIVE:
			return False
		self.state = state
		if state is StreamState.CANCELLED:
			self.token.cancel()
		return True


@dataclass
class SessionRecord:
	"""A persisted session as read back from the store."""

	session_id: str
	messages: List[Message] = field(default_factory=list)
	settings: SessionSettings = field(default_factory=SessionSettings)
	created_at: Optional[int] = None
	updated_at: Optional[int] = None


@dataclass
class SessionSummary:
	"""Row of the session list."""

	session_id: str
	title: str
	last_modified: int

	def to_dict(self) -> Dict[str, Any]:
		return {"id": self.session_id, "title": self.title, "last_modified": self.last_modified}
