"""Cooperative cancellation shared between the session controller and a gateway."""
from __future__ import annotations

import asyncio
from typing import Optional


class GenerationCancelled(Exception):
	"""Raised by a gateway when its cancel token has been triggered."""


class GenerationFailed(Exception):
	"""Raised by a gateway for any source-side failure that is not a cancellation."""


class CancelToken:
	"""A one-way flag; once cancelled it stays cancelled."""

	def __init__(self) -> None:
		self._cancelled = False
		self._event: Optional[asyncio.Event] = None
		self._timer: Optional[asyncio.TimerHandle] = None

	@property
	def cancelled(self) -> bool:
		return self._cancelled

	def cancel(self) -> None:
		if self._cancelled:
			return
		self._cancelled = True
		if self._event is not None:
			self._event.set()
		self.clear_timeout()

	def raise_if_cancelled(self) -> None:
		if self._cancelled:
			raise GenerationCancelled("Generation cancelled.")

	async def wait(self) -> None:
		"""Suspend until the token is cancelled."""
		if self._cancelled:
			return
		if self._event is None:
			self._event = asyncio.Event()
		await self._event.wait()

	def cancel_after(self, seconds: float) -> None:
		"""Layer a wall-clock timeout onto the token. Requires a running loop."""
		self.clear_timeout()
		if self._cancelled:
			return
		self._timer = asyncio.get_running_loop().call_later(seconds, self.cancel)

	def clear_timeout(self) -> None:
		if self._timer is not None:
			self._timer.cancel()
			self._timer = None
