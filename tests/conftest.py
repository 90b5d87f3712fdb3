import asyncio
from typing import Any, Dict, List, Optional

import pytest

from services.chat.cancel_token import GenerationFailed


class ScriptedGateway:
    """Gateway double that yields a fixed list of fragments.

    With `gated=True` each fragment waits for a permit from `release()`; a
    cancelled token interrupts the wait unless `ignore_cancel` is set, in
    which case the gateway keeps yielding like a source that never checks it.
    """

    def __init__(self, fragments=("Hello", " world"), *, gated=False, ignore_cancel=False, fail=False):
        self.fragments = list(fragments)
        self.gated = gated
        self.ignore_cancel = ignore_cancel
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []
        self._permits: Optional[asyncio.Semaphore] = None

    @property
    def permits(self) -> asyncio.Semaphore:
        if self._permits is None:
            self._permits = asyncio.Semaphore(0)
        return self._permits

    def release(self, count: int = 1) -> None:
        for _ in range(count):
            self.permits.release()

    async def generate(self, history, prompt, cancel_token, generation_budget=None):
        self.calls.append({"history": list(history), "prompt": prompt, "budget": generation_budget})
        for fragment in self.fragments:
            if self.gated:
                await self._wait_for_permit(cancel_token)
            if not self.ignore_cancel:
                cancel_token.raise_if_cancelled()
            yield fragment
        if self.fail:
            raise GenerationFailed("backend unavailable")

    async def _wait_for_permit(self, cancel_token) -> None:
        if self.ignore_cancel:
            await self.permits.acquire()
            return
        permit = asyncio.ensure_future(self.permits.acquire())
        cancelled = asyncio.ensure_future(cancel_token.wait())
        done, pending = await asyncio.wait({permit, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if permit in done and cancelled in done:
            self.permits.release()


class RecordingStore:
    """In-memory stand-in for SessionDAL.save_session."""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.saves: List[Dict[str, Any]] = []

    async def save_session(self, session_id, messages, settings):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("disk full")
        self.saves.append({"session_id": session_id, "messages": messages, "settings": settings})


async def next_event(queue: asyncio.Queue, event_type: str, timeout: float = 1.0):
    """Pop events until one of `event_type` arrives."""
    while True:
        event = await asyncio.wait_for(queue.get(), timeout)
        if event.type == event_type:
            return event


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def db_dir(tmp_path):
    return tmp_path / "db"
