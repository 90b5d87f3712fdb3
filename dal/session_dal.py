"""Async Data Access Layer for the SESSION table.

Each chat session is one flat row: the message log and the settings are
stored as JSON text. Provides SessionDAL with the load/save/list/delete
operations the session controller and routes rely on.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Iterable, List, Optional, Sequence

from models.chat_models import Message, SessionRecord, SessionSettings, SessionSummary
from utils.database_init import AsyncDatabaseInitializer

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50


def session_title(messages: Sequence[Any]) -> str:
    """Derive a list title from the first stored message."""
    if not messages:
        return "Empty Chat"
    first = messages[0]
    text = first.get("text") if isinstance(first, dict) else None
    if isinstance(text, str) and text.strip():
        text = text.strip()
        return text[:TITLE_LENGTH] + ("..." if len(text) > TITLE_LENGTH else "")
    return "Chat (media/no text)"


class SessionDAL:
    """Data access layer for SESSION records.

    The constructor accepts an `AsyncDatabaseInitializer` (or any object
    exposing an async `connection()` context manager that yields an
    `aiosqlite.Connection`).
    """

    _COLUMNS = ("id", "messages", "settings", "created_at", "updated_at")
    _COLUMN_LIST = ", ".join(_COLUMNS)

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    async def load_session(self, session_id: str) -> Optional[SessionRecord]:
        """Return the stored session, or None if there is no row for `session_id`.

        A row that cannot be decoded yields an empty log with default settings.
        """
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM SESSION WHERE id = ?",
                (session_id,),
            )
            row = await cur.fetchone()
        return self._row_to_record(row) if row else None

    async def save_session(
        self,
        session_id: str,
        messages: Iterable[Message | dict],
        settings: SessionSettings | dict,
    ) -> None:
        """Insert or replace the row for `session_id`."""
        now = int(time.time())
        message_dicts = [m.to_dict() if isinstance(m, Message) else m for m in messages]
        settings_dict = settings.to_dict() if isinstance(settings, SessionSettings) else settings

        async with self._db.connection() as conn:
            await conn.execute(
                """
                INSERT INTO SESSION (id, messages, settings, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    messages = excluded.messages,
                    settings = excluded.settings,
                    updated_at = excluded.updated_at
                """,
                (session_id, json.dumps(message_dicts), json.dumps(settings_dict), now, now),
            )
            await conn.commit()

    async def list_sessions(self) -> List[SessionSummary]:
        """Return every session, most recently modified first."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "SELECT id, messages, updated_at FROM SESSION ORDER BY updated_at DESC, rowid DESC"
            )
            rows = await cur.fetchall()

        summaries = []
        for session_id, raw_messages, updated_at in rows:
            try:
                messages = _decode_messages(json.loads(raw_messages or "[]"))
            except ValueError as exc:
                logger.error(f"Skipping session {session_id} in list: {exc}")
                continue
            summaries.append(SessionSummary(session_id=session_id, title=session_title(messages), last_modified=updated_at))
        return summaries

    async def delete_session(self, session_id: str) -> bool:
        """Delete SESSION row by id. Returns True if a row was deleted."""
        async with self._db.connection() as conn:
            await conn.execute("DELETE FROM SESSION WHERE id = ?", (session_id,))
            await conn.commit()
            cur = await conn.execute("SELECT changes()")
            changed = await cur.fetchone()
            return bool(changed and changed[0] > 0)

    async def delete_all_sessions(self) -> int:
        """Delete every session and return how many rows were removed."""
        async with self._db.connection() as conn:
            await conn.execute("DELETE FROM SESSION")
            await conn.commit()
            cur = await conn.execute("SELECT changes()")
            deleted = await cur.fetchone()
            return int(deleted[0]) if deleted and deleted[0] is not None else 0

    @staticmethod
    def _row_to_record(row: Sequence[Any]) -> SessionRecord:
        """Convert a DB row tuple into a SessionRecord, recovering from bad data."""
        session_id = row[0]
        try:
            messages = [Message.from_dict(item) for item in _decode_messages(json.loads(row[1] or "[]"))]
            settings = SessionSettings.from_dict(json.loads(row[2] or "{}"))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Malformed session record {session_id}; starting with an empty log. {exc}")
            messages, settings = [], SessionSettings()
        return SessionRecord(
            session_id=session_id,
            messages=messages,
            settings=settings,
            created_at=row[3],
            updated_at=row[4],
        )


def _decode_messages(payload: Any) -> List[Any]:
    """Accept either the bare message list or an object wrapping it."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("messages"), list):
        return payload["messages"]
    raise ValueError("Stored messages are not a list.")
