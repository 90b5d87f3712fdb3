"""Build the history payload handed to the generation source."""

from __future__ import annotations

from typing import Dict, Iterable, List

from models.chat_models import Message, Sender

ROLE_FOR_SENDER = {Sender.USER: "user", Sender.ASSISTANT: "model"}


def format_history(messages: Iterable[Message]) -> List[Dict[str, str]]:
	"""Map log entries to `{role, text}` turns.

	Cancelled messages and messages without text are skipped; attachments are
	never replayed.
	"""
	return [
		{"role": ROLE_FOR_SENDER[msg.sender], "text": msg.text}
		for msg in messages
		if not msg.cancelled and msg.text.strip()
	]
