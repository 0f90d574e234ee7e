"""SQLite-backed message store for the mail scheduler.

This module provides the MessageStore class that owns every durable read
and write performed by the engine:

- Message CRUD (create, fetch, list, whitelisted field updates, soft delete)
- The due-work query used by the scheduler loop
- Conditional status updates that implement the dispatch claim
- Per-status rollups for the stats aggregator
- Retention sweep and crash recovery of abandoned claims

The store performs single-record operations only and provides no
cross-record transactions. Correctness under concurrent access relies on
compare-and-set updates (``UPDATE ... WHERE status IN (...)``): a status
change succeeds only when exactly one row still matched the expected
status, so two writers racing for the same message cannot both win.

Example:
    Basic usage of the store::

        store = MessageStore("/data/mail_scheduler.db")
        await store.init_db()

        msg = await store.create_message({
            "subject": "Follow up",
            "body": "Hi Ann, ...",
            "recipient_email": "ann@example.com",
            "recipient_name": "Ann",
            "sender_user_id": "u1",
            "sender_email": "rep@example.com",
            "sender_name": "Rep",
        })
        await store.schedule_message(msg["id"], now_ts + 600)
        due = await store.find_due_for_dispatch(now_ts=now_ts + 600)
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from .models import ALL_STATUSES, DEFAULT_MAX_RETRIES, MessageStatus

MESSAGE_COLUMNS = (
    "id",
    "subject",
    "body",
    "recipient_email",
    "recipient_name",
    "recipient_contact_id",
    "sender_user_id",
    "sender_email",
    "sender_name",
    "email_type",
    "status",
    "scheduled_ts",
    "sent_ts",
    "retry_count",
    "max_retries",
    "last_error",
    "provider_message_id",
    "provider_thread_id",
    "metadata",
    "is_active",
    "created_ts",
    "updated_ts",
)

# Columns a caller may change through update_fields(); status transitions
# go through the dedicated conditional methods instead.
UPDATABLE_COLUMNS = frozenset(
    {
        "subject",
        "body",
        "recipient_email",
        "recipient_name",
        "recipient_contact_id",
        "sender_email",
        "sender_name",
        "email_type",
        "metadata",
    }
)

JSON_COLUMNS = ("last_error", "metadata")


def _now() -> int:
    return int(time.time())


class MessageStore:
    """Async SQLite persistence for message records.

    Each operation opens and closes its own connection, making the store
    safe to share between the scheduler loop and any number of concurrent
    request handlers.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:" for
            an in-memory database.
    """

    def __init__(self, db_path: str = "/data/mail_scheduler.db"):
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the schema, adding columns missing from older databases.

        This method is idempotent.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    recipient_email TEXT NOT NULL,
                    recipient_name TEXT NOT NULL,
                    recipient_contact_id TEXT,
                    sender_user_id TEXT NOT NULL,
                    sender_email TEXT NOT NULL,
                    sender_name TEXT NOT NULL,
                    email_type TEXT NOT NULL DEFAULT 'custom',
                    status TEXT NOT NULL DEFAULT 'draft',
                    scheduled_ts INTEGER,
                    sent_ts INTEGER,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    last_error TEXT,
                    provider_message_id TEXT,
                    provider_thread_id TEXT,
                    metadata TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_ts INTEGER NOT NULL,
                    updated_ts INTEGER NOT NULL
                )
                """
            )
            # Migrations for existing databases
            try:
                await db.execute("ALTER TABLE messages ADD COLUMN email_type TEXT NOT NULL DEFAULT 'custom'")
            except aiosqlite.OperationalError:
                pass
            try:
                await db.execute("ALTER TABLE messages ADD COLUMN provider_thread_id TEXT")
            except aiosqlite.OperationalError:
                pass

            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_due ON messages(status, is_active, scheduled_ts)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender_user_id, status)"
            )
            await db.commit()

    # Decoding ------------------------------------------------------------------
    @staticmethod
    def _decode_row(row: Sequence[Any], cols: Sequence[str]) -> Dict[str, Any]:
        """Convert a raw row into a message dict, decoding JSON columns."""
        data = dict(zip(cols, row))
        for field in JSON_COLUMNS:
            raw = data.get(field)
            data[field] = json.loads(raw) if raw else None
        if data.get("metadata") is None:
            data["metadata"] = {}
        data["is_active"] = bool(data.get("is_active", 1))
        return data

    async def _fetch(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Run a single write statement and return the affected row count."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    # CRUD ----------------------------------------------------------------------
    async def create_message(self, data: Dict[str, Any], *, now_ts: Optional[int] = None) -> Dict[str, Any]:
        """Insert a new message in ``draft`` status.

        Args:
            data: Message fields (see :class:`~async_mail_scheduler.models.MessageCreate`).
                ``id`` is generated when missing.
            now_ts: Creation timestamp, defaults to the current time.

        Returns:
            The stored message.

        Raises:
            aiosqlite.IntegrityError: If a message with the same id exists.
        """
        ts = now_ts if now_ts is not None else _now()
        msg_id = data.get("id") or uuid.uuid4().hex
        email_type = data.get("email_type") or "custom"
        if hasattr(email_type, "value"):
            email_type = email_type.value
        max_retries = data.get("max_retries")
        await self._execute(
            """
            INSERT INTO messages (
                id, subject, body, recipient_email, recipient_name, recipient_contact_id,
                sender_user_id, sender_email, sender_name, email_type, status,
                retry_count, max_retries, metadata, is_active, created_ts, updated_ts
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, 1, ?, ?)
            """,
            (
                msg_id,
                data["subject"],
                data["body"],
                data["recipient_email"],
                data["recipient_name"],
                data.get("recipient_contact_id"),
                data["sender_user_id"],
                data["sender_email"],
                data["sender_name"],
                email_type,
                MessageStatus.DRAFT.value,
                DEFAULT_MAX_RETRIES if max_retries is None else int(max_retries),
                json.dumps(data.get("metadata") or {}),
                ts,
                ts,
            ),
        )
        created = await self.get_message(msg_id)
        if created is None:
            raise RuntimeError(f"Message {msg_id} was not stored")
        return created

    async def get_message(self, msg_id: str, *, include_inactive: bool = False) -> Optional[Dict[str, Any]]:
        """Fetch a message by id, or None when missing or soft-deleted."""
        query = "SELECT * FROM messages WHERE id=?"
        if not include_inactive:
            query += " AND is_active=1"
        rows = await self._fetch(query, (msg_id,))
        return rows[0] if rows else None

    async def list_messages(
        self,
        *,
        status: Optional[str] = None,
        sender_user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return active messages, newest first."""
        query = "SELECT * FROM messages WHERE is_active=1"
        params: List[Any] = []
        if status:
            query += " AND status=?"
            params.append(status)
        if sender_user_id:
            query += " AND sender_user_id=?"
            params.append(sender_user_id)
        query += " ORDER BY created_ts DESC, id ASC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        return await self._fetch(query, params)

    async def update_fields(
        self, msg_id: str, fields: Dict[str, Any], *, now_ts: Optional[int] = None
    ) -> bool:
        """Update whitelisted content fields of a non-terminal message.

        Args:
            msg_id: Message to update.
            fields: Column/value pairs; only :data:`UPDATABLE_COLUMNS` are allowed.
            now_ts: Update timestamp, defaults to the current time.

        Returns:
            True if the message was found in ``draft`` or ``scheduled`` and updated.

        Raises:
            ValueError: If ``fields`` names a column that cannot be updated.
        """
        if not fields:
            return False
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        set_parts = []
        values: List[Any] = []
        for key, value in fields.items():
            set_parts.append(f"{key} = ?")
            values.append(json.dumps(value or {}) if key == "metadata" else value)
        set_parts.append("updated_ts = ?")
        values.append(now_ts if now_ts is not None else _now())
        values.append(msg_id)
        rowcount = await self._execute(
            f"""
            UPDATE messages SET {', '.join(set_parts)}
            WHERE id=? AND is_active=1 AND status IN ('draft', 'scheduled')
            """,
            values,
        )
        return rowcount > 0

    async def soft_delete_message(self, msg_id: str, *, now_ts: Optional[int] = None) -> bool:
        """Flag a message inactive so that every query ignores it."""
        rowcount = await self._execute(
            "UPDATE messages SET is_active=0, updated_ts=? WHERE id=? AND is_active=1",
            (now_ts if now_ts is not None else _now(), msg_id),
        )
        return rowcount > 0

    # Due work ------------------------------------------------------------------
    async def find_due_for_dispatch(
        self, *, now_ts: Optional[int] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Return scheduled messages whose send time has passed.

        Messages are ordered oldest ``scheduled_ts`` first so earlier-queued
        work is never starved by later arrivals.
        """
        query = """
            SELECT * FROM messages
            WHERE status = 'scheduled'
              AND is_active = 1
              AND scheduled_ts IS NOT NULL
              AND scheduled_ts <= ?
            ORDER BY scheduled_ts ASC, created_ts ASC, id ASC
        """
        params: List[Any] = [now_ts if now_ts is not None else _now()]
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        return await self._fetch(query, params)

    async def count_due(self, *, now_ts: Optional[int] = None) -> int:
        """Return how many active messages are due for dispatch."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT COUNT(*) FROM messages
                WHERE status = 'scheduled' AND is_active = 1
                  AND scheduled_ts IS NOT NULL AND scheduled_ts <= ?
                """,
                (now_ts if now_ts is not None else _now(),),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def count_by_status(self, sender_user_id: Optional[str] = None) -> Dict[str, int]:
        """Return the number of active messages per status.

        Every known status is present in the result, with zero when absent.
        """
        query = "SELECT status, COUNT(*) FROM messages WHERE is_active = 1"
        params: List[Any] = []
        if sender_user_id:
            query += " AND sender_user_id = ?"
            params.append(sender_user_id)
        query += " GROUP BY status"
        counts = {status: 0 for status in ALL_STATUSES}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                for status, count in await cur.fetchall():
                    counts[status] = int(count)
        return counts

    # Status transitions --------------------------------------------------------
    async def claim_message(
        self,
        msg_id: str,
        from_statuses: Iterable[str],
        *,
        now_ts: Optional[int] = None,
        due_by_ts: Optional[int] = None,
    ) -> bool:
        """Atomically move a message to ``sending`` if it is in ``from_statuses``.

        Args:
            msg_id: Message to claim.
            from_statuses: Statuses the message may be claimed from.
            now_ts: Claim timestamp, defaults to the current time.
            due_by_ts: When given, the claim also requires
                ``scheduled_ts <= due_by_ts``, so a message rescheduled since
                it was read is left alone.

        Returns:
            True if this caller won the claim, False if the message was
            missing, inactive, not yet due, or already moved by someone else.
        """
        statuses = sorted({str(getattr(s, "value", s)) for s in from_statuses})
        if not statuses:
            return False
        placeholders = ",".join("?" for _ in statuses)
        query = f"""
            UPDATE messages
            SET status = 'sending', updated_ts = ?
            WHERE id = ? AND is_active = 1 AND status IN ({placeholders})
            """
        params: List[Any] = [now_ts if now_ts is not None else _now(), msg_id, *statuses]
        if due_by_ts is not None:
            query += " AND scheduled_ts IS NOT NULL AND scheduled_ts <= ?"
            params.append(due_by_ts)
        rowcount = await self._execute(query, params)
        return rowcount == 1

    async def mark_sent(
        self,
        msg_id: str,
        sent_ts: int,
        *,
        provider_message_id: Optional[str] = None,
        provider_thread_id: Optional[str] = None,
    ) -> bool:
        """Record a successful delivery of a claimed message.

        Status and ``sent_ts`` are written by the same statement.
        """
        rowcount = await self._execute(
            """
            UPDATE messages
            SET status = 'sent', sent_ts = ?, provider_message_id = ?, provider_thread_id = ?, updated_ts = ?
            WHERE id = ? AND status = 'sending'
            """,
            (sent_ts, provider_message_id, provider_thread_id, sent_ts, msg_id),
        )
        return rowcount == 1

    async def record_failure(
        self,
        msg_id: str,
        error: Dict[str, Any],
        *,
        now_ts: int,
        reschedule_ts: Optional[int] = None,
    ) -> bool:
        """Record a failed attempt of a claimed message.

        Increments ``retry_count`` and overwrites ``last_error``. When
        ``reschedule_ts`` is given the message returns to ``scheduled`` at
        that time, otherwise it becomes ``failed``.
        """
        if reschedule_ts is not None:
            rowcount = await self._execute(
                """
                UPDATE messages
                SET status = 'scheduled', scheduled_ts = ?, retry_count = retry_count + 1,
                    last_error = ?, updated_ts = ?
                WHERE id = ? AND status = 'sending'
                """,
                (reschedule_ts, json.dumps(error), now_ts, msg_id),
            )
        else:
            rowcount = await self._execute(
                """
                UPDATE messages
                SET status = 'failed', retry_count = retry_count + 1, last_error = ?, updated_ts = ?
                WHERE id = ? AND status = 'sending'
                """,
                (json.dumps(error), now_ts, msg_id),
            )
        return rowcount == 1

    async def schedule_message(
        self, msg_id: str, scheduled_ts: int, *, now_ts: Optional[int] = None
    ) -> bool:
        """Attach a send time to a ``draft`` or ``scheduled`` message."""
        rowcount = await self._execute(
            """
            UPDATE messages
            SET status = 'scheduled', scheduled_ts = ?, updated_ts = ?
            WHERE id = ? AND is_active = 1 AND status IN ('draft', 'scheduled')
            """,
            (scheduled_ts, now_ts if now_ts is not None else _now(), msg_id),
        )
        return rowcount == 1

    async def cancel_message(self, msg_id: str, *, now_ts: Optional[int] = None) -> bool:
        """Cancel a message that is still ``scheduled``."""
        rowcount = await self._execute(
            """
            UPDATE messages
            SET status = 'cancelled', updated_ts = ?
            WHERE id = ? AND is_active = 1 AND status = 'scheduled'
            """,
            (now_ts if now_ts is not None else _now(), msg_id),
        )
        return rowcount == 1

    # Maintenance ---------------------------------------------------------------
    async def deactivate_terminal_before(self, cutoff_ts: int, *, now_ts: Optional[int] = None) -> int:
        """Soft-delete terminal messages created before ``cutoff_ts``.

        Returns:
            Number of messages flagged inactive.
        """
        return await self._execute(
            """
            UPDATE messages
            SET is_active = 0, updated_ts = ?
            WHERE is_active = 1
              AND status IN ('sent', 'failed', 'cancelled')
              AND created_ts < ?
            """,
            (now_ts if now_ts is not None else _now(), cutoff_ts),
        )

    async def release_stale_claims(self, claimed_before_ts: int, *, now_ts: Optional[int] = None) -> int:
        """Return abandoned claims to the queue.

        A message left in ``sending`` since before ``claimed_before_ts``
        belongs to a dispatch that never finished (process crash). It is
        rescheduled for immediate dispatch, which may deliver it twice.

        Returns:
            Number of messages released.
        """
        ts = now_ts if now_ts is not None else _now()
        return await self._execute(
            """
            UPDATE messages
            SET status = 'scheduled', scheduled_ts = ?, updated_ts = ?
            WHERE is_active = 1 AND status = 'sending' AND updated_ts < ?
            """,
            (ts, ts, claimed_before_ts),
        )
