"""Load the system instruction that prefixes every generation request."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import aiofiles

logger = logging.getLogger(__name__)


class SystemPromptLoader:
	"""Read the system prompt file once and cache the result.

	A missing or unreadable file means "no system prompt": `get()` returns None
	and generation proceeds without one. `read()` surfaces the error instead,
	for callers that need to report it.
	"""

	def __init__(self, path: Path | str) -> None:
		self.path = Path(path)
		self._loaded = False
		self._prompt: Optional[str] = None
		self._lock = asyncio.Lock()

	async def read(self) -> str:
		"""Return the file contents, raising OSError if it cannot be read."""
		async with aiofiles.open(self.path, "r", encoding="utf-8") as fh:
			return await fh.read()

	async def get(self) -> Optional[str]:
		if self._loaded:
			return self._prompt
		async with self._lock:
			if not self._loaded:
				try:
					text = (await self.read()).strip()
					self._prompt = text or None
					logger.info("System prompt loaded from %s", self.path)
				except OSError as exc:
					logger.warning("Failed to load system prompt from %s; it will not be used. %s", self.path, exc)
					self._prompt = None
				self._loaded = True
		return self._prompt
