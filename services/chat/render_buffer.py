"""Incremental display state for a single message.

While a reply streams, each newly arrived suffix is split into whitespace and
word runs; every word becomes a freshly keyed unit so a client can animate it
in, and earlier units are never rebuilt. Once the message is finalized the
whole text is parsed once into structured markup that replaces the units.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from services.chat.markup import Node, parse_markup

_RUNS = re.compile(r"(\s+)")


@dataclass(frozen=True)
class DisplayUnit:
	"""One streamed run of text. Whitespace units carry no animation key."""

	text: str
	key: Optional[str] = None

	def to_dict(self):
		return {"key": self.key, "text": self.text}


@dataclass
class RenderUpdate:
	"""What changed in one `update()` call."""

	message_id: str
	new_units: List[DisplayUnit]
	final: Optional[List[Node]] = None
	reset: bool = False


class RenderBuffer:
	"""Two-regime renderer scoped to one message id at a time."""

	def __init__(self, render_final: Callable[[str], List[Node]] = parse_markup) -> None:
		self._render_final = render_final
		self.message_id: Optional[str] = None
		self.processed_length = 0
		self.unit_count = 0
		self._units: List[DisplayUnit] = []
		self._final: Optional[List[Node]] = None
		self._final_text: Optional[str] = None
		self._streamed = ""

	@property
	def units(self) -> Tuple[DisplayUnit, ...]:
		return tuple(self._units)

	@property
	def final(self) -> Optional[List[Node]]:
		return self._final

	def reset(self, message_id: Optional[str] = None) -> None:
		self.message_id = message_id
		self.processed_length = 0
		self.unit_count = 0
		self._units = []
		self._final = None
		self._final_text = None
		self._streamed = ""

	def update(self, message_id: str, text: str, *, finalized: bool = False, streaming: bool = True) -> RenderUpdate:
		"""Feed the current full text of `message_id`.

		`streaming=False` is for messages that never stream (user turns); they
		go straight to their final form.
		"""
		reset = message_id != self.message_id
		if reset:
			self.reset(message_id)

		if not streaming:
			self.processed_length = len(text)
			return RenderUpdate(message_id, [], final=self._finalize(text), reset=reset)

		if not text:
			if self._units or self.processed_length:
				self.reset(message_id)
				reset = True
			return RenderUpdate(message_id, [], reset=reset)

		if finalized and not text.startswith(self._streamed):
			new_units = []
		else:
			new_units = self._ingest(text)

		final = None
		if finalized:
			# a replacement text (failure or cancel placeholder) is not a continuation
			# of what was streamed; only the final parse covers it
			self.processed_length = len(text)
			final = self._finalize(text)
		return RenderUpdate(message_id, new_units, final=final, reset=reset)

	def _ingest(self, text: str) -> List[DisplayUnit]:
		if len(text) <= self.processed_length:
			return []
		suffix = text[self.processed_length:]
		new_units = []
		for run in _RUNS.split(suffix):
			if not run:
				continue
			if run.isspace():
				unit = DisplayUnit(text=run)
			else:
				unit = DisplayUnit(text=run, key=f"{self.message_id}-word-{self.unit_count}")
			self.unit_count += 1
			new_units.append(unit)
		self._units.extend(new_units)
		self.processed_length = len(text)
		self._streamed = text
		return new_units

	def _finalize(self, text: str) -> List[Node]:
		if self._final is not None and self._final_text == text:
			return self._final
		self._final = self._render_final(text)
		self._final_text = text
		return self._final
