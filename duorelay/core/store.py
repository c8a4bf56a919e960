"""
MessageStore - SQLite-backed message log for the relay
-------------------------------------------------------

One table, ``messages``, append-only apart from the ``status`` column which
moves from ``pending`` to ``delivered`` exactly once. Rows are never deleted.

Every public call is atomic: the statement and its commit run under one lock,
so a concurrent reader never sees a half-applied write. Any sqlite failure is
re-raised as :class:`StorageError`.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import List, Optional

import aiosqlite

from .errors import StorageError
from .types import Identity, Message, Status

log = logging.getLogger("duorelay.store")

MEMORY = ":memory:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages(
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    sender    TEXT NOT NULL,
    receiver  TEXT NOT NULL,
    content   TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    status    TEXT NOT NULL CHECK (status IN ('pending', 'delivered')),
    CHECK (sender <> receiver)
);
CREATE INDEX IF NOT EXISTS idx_messages_inbox
    ON messages(receiver, status, timestamp, id);
"""


class MessageStore:
    """Durable message log with mutable delivery status."""

    def __init__(self, path: str = MEMORY) -> None:
        self.path = path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self._db is not None:
            return
        if self.path != MEMORY:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.path)
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open message store at {self.path}: {exc}") from exc
        log.info("Message store ready at %s", self.path)

    async def close(self) -> None:
        if self._db is None:
            return
        db, self._db = self._db, None
        await db.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def append(
        self,
        sender: Identity,
        receiver: Identity,
        content: str,
        timestamp: int,
        status: Status,
    ) -> int:
        """Insert a new message and return its id."""

        db = self._require_open()
        async with self._lock:
            try:
                cur = await db.execute(
                    "INSERT INTO messages(sender, receiver, content, timestamp, status) VALUES(?,?,?,?,?)",
                    (Identity(sender).value, Identity(receiver).value, content, timestamp, Status(status).value),
                )
                message_id = cur.lastrowid
                await cur.close()
                await db.commit()
            except sqlite3.Error as exc:
                await self._rollback(db)
                raise StorageError(f"append failed: {exc}") from exc
        return int(message_id)

    async def set_delivered(self, message_id: int) -> bool:
        """Mark a pending message delivered.

        Returns False when the row was already delivered (or does not exist);
        the transition never runs backwards.
        """

        db = self._require_open()
        async with self._lock:
            try:
                cur = await db.execute(
                    "UPDATE messages SET status=? WHERE id=? AND status=?",
                    (Status.DELIVERED.value, message_id, Status.PENDING.value),
                )
                changed = cur.rowcount
                await cur.close()
                await db.commit()
            except sqlite3.Error as exc:
                await self._rollback(db)
                raise StorageError(f"set_delivered({message_id}) failed: {exc}") from exc
        if not changed:
            log.debug("Message %s was not pending; status left unchanged", message_id)
        return changed > 0

    async def pending_for(self, receiver: Identity) -> List[Message]:
        """Snapshot of ``receiver``'s pending inbox, oldest first."""

        db = self._require_open()
        async with self._lock:
            try:
                async with db.execute(
                    "SELECT id, sender, receiver, content, timestamp, status FROM messages "
                    "WHERE receiver=? AND status=? ORDER BY timestamp ASC, id ASC",
                    (Identity(receiver).value, Status.PENDING.value),
                ) as cur:
                    rows = await cur.fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"pending_for({receiver}) failed: {exc}") from exc
        return [_row_to_message(r) for r in rows]

    async def get(self, message_id: int) -> Optional[Message]:
        db = self._require_open()
        async with self._lock:
            try:
                async with db.execute(
                    "SELECT id, sender, receiver, content, timestamp, status FROM messages WHERE id=?",
                    (message_id,),
                ) as cur:
                    row = await cur.fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"get({message_id}) failed: {exc}") from exc
        return _row_to_message(row) if row else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_open(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("message store is not open")
        return self._db

    @staticmethod
    async def _rollback(db: aiosqlite.Connection) -> None:
        try:
            await db.rollback()
        except sqlite3.Error:
            log.exception("Rollback failed")


def _row_to_message(row) -> Message:
    return Message(
        id=row[0],
        sender=Identity(row[1]),
        receiver=Identity(row[2]),
        content=row[3],
        timestamp=row[4],
        status=Status(row[5]),
    )


__all__ = ["MessageStore", "MEMORY"]
