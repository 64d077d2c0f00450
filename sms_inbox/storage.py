# --------------------------------------------------
# storage.py
# --------------------------------------------------
# This file provides the Storage class which encapsulates
# all SQLite database interactions used by the FastAPI app.
#
# Responsibilities:
#   ✔ Message store (idempotent insert via PRIMARY KEY content hash)
#       - filtered listing, prefix lookup, search, conversations
#   ✔ Contacts (upsert semantics)
#   ✔ Users and device directory (tokens, push tokens, last seen)
#   ✔ Gateway message queue
#       - message + recipients inserted in one transaction
#       - pending poll for a device (FIFO / LIFO), expiry of stale sends
#       - device-reported state updates (permissive, no transition rules)
#   ✔ Webhook subscribers
#
# Every call opens its own aiosqlite connection; SQLite
# serializes writers, so no locking happens here.
# --------------------------------------------------

import json
import logging
from typing import Optional, Tuple, List, Dict, Any

import aiosqlite

from .errors import AmbiguousError, NotFoundError, ValidationError
from .ids import utc_now

logger = logging.getLogger(__name__)


def _message_from_row(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "phone_number": row["phone_number"],
        "text": row["text"],
        "direction": row["direction"],
        "timestamp": row["timestamp"],
        "read": bool(row["read"]),
        "sim_number": row["sim_number"],
        "gateway_message_id": row["gateway_message_id"],
    }


def _gateway_message_from_row(row) -> Dict[str, Any]:
    data = dict(row)
    data["phone_numbers"] = json.loads(row["phone_numbers"])
    data["is_encrypted"] = bool(row["is_encrypted"])
    data["with_delivery_report"] = bool(row["with_delivery_report"])
    return data


def _single(rows: list, what: str) -> Any:
    if not rows:
        raise NotFoundError(f"{what} not found")
    if len(rows) > 1:
        raise AmbiguousError("Ambiguous ID prefix, be more specific")
    return rows[0]


class Storage:
    """
    A thin abstraction over SQLite. Methods return plain dicts
    (or lists of dicts) so routes can serialize them directly.
    """

    def __init__(self, db_path: str):
        """
        db_path should be a filesystem path (e.g. /data/messages.db).
        If your DATABASE_URL includes sqlite:/// prefix,
        caller strips it before constructing Storage.
        """
        self.db_path = db_path

    # --------------------------------------------------
    # Low-level helpers
    # --------------------------------------------------
    async def _fetchall(self, query: str, params: tuple = ()) -> list:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(query, params)
            return await cur.fetchall()

    async def _fetchone(self, query: str, params: tuple = ()):
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(query, params)
            return await cur.fetchone()

    async def _execute(self, query: str, params: tuple = ()) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(query, params)
            await db.commit()
            return cur.rowcount

    async def ping(self) -> bool:
        try:
            await self._fetchone("SELECT 1")
            return True
        except aiosqlite.Error:
            return False

    # --------------------------------------------------
    # Messages
    # --------------------------------------------------
    async def insert_message(self, msg: Dict[str, Any]) -> bool:
        """
        Insert a message. Returns False when the content-hash id
        already exists (duplicate delivery), True otherwise.
        """
        query = """
        INSERT INTO messages (
            id, phone_number, text, direction, timestamp, read, sim_number, gateway_message_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            msg["id"],
            msg["phone_number"],
            msg["text"],
            msg["direction"],
            msg["timestamp"],
            1 if msg.get("read") else 0,
            msg.get("sim_number", 1),
            msg.get("gateway_message_id"),
        )
        try:
            await self._execute(query, params)
            return True
        except aiosqlite.IntegrityError:
            return False

    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM messages WHERE id = ?", (message_id,))
        return _message_from_row(row) if row else None

    async def get_message_by_prefix(self, prefix: str) -> Dict[str, Any]:
        """
        Resolve a full id or an id prefix.
        Zero matches -> NotFoundError, several -> AmbiguousError.
        """
        rows = await self._fetchall(
            "SELECT * FROM messages WHERE substr(id, 1, length(?)) = ? LIMIT 2",
            (prefix, prefix),
        )
        return _message_from_row(_single(rows, "Message"))

    async def list_messages(
        self,
        direction: Optional[str] = None,
        unread: Optional[bool] = None,
        phone: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Filters:
          - direction -> "in" / "out"
          - unread    -> True: read = 0, False: read = 1
          - phone     -> exact match on phone_number
          - Ordered   -> timestamp DESC (newest first)
        """
        where = []
        params: list[Any] = []

        if direction:
            where.append("direction = ?")
            params.append(direction)

        if unread is not None:
            where.append("read = ?")
            params.append(0 if unread else 1)

        if phone:
            where.append("phone_number = ?")
            params.append(phone)

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        rows = await self._fetchall(
            f"SELECT * FROM messages {where_sql} ORDER BY timestamp DESC LIMIT ? OFFSET ?",
            tuple(params) + (limit, offset),
        )
        return [_message_from_row(r) for r in rows]

    async def search(self, q: str) -> List[Dict[str, Any]]:
        """Case-insensitive substring search over message text, newest first."""
        rows = await self._fetchall(
            "SELECT * FROM messages WHERE instr(lower(text), lower(?)) > 0 ORDER BY timestamp DESC",
            (q,),
        )
        return [_message_from_row(r) for r in rows]

    async def set_read(self, message_id: str, read: bool):
        await self._execute(
            "UPDATE messages SET read = ? WHERE id = ?", (1 if read else 0, message_id)
        )

    async def delete_message(self, message_id: str):
        await self._execute("DELETE FROM messages WHERE id = ?", (message_id,))

    async def get_conversations(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall("""
            SELECT
                m.phone_number,
                c.name,
                COUNT(*) AS message_count,
                SUM(CASE WHEN m.read = 0 AND m.direction = 'in' THEN 1 ELSE 0 END) AS unread_count,
                MAX(m.timestamp) AS last_message_at,
                (SELECT text FROM messages m2
                  WHERE m2.phone_number = m.phone_number
                  ORDER BY m2.timestamp DESC LIMIT 1) AS last_message
            FROM messages m
            LEFT JOIN contacts c ON m.phone_number = c.phone_number
            GROUP BY m.phone_number
            ORDER BY last_message_at DESC
        """)
        return [dict(r) for r in rows]

    async def get_conversation(self, phone: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM messages WHERE phone_number = ? ORDER BY timestamp ASC",
            (phone,),
        )
        return [_message_from_row(r) for r in rows]

    async def mark_conversation_read(self, phone: str):
        # Outbound rows are always read already.
        await self._execute(
            "UPDATE messages SET read = 1 WHERE phone_number = ? AND direction = 'in'",
            (phone,),
        )

    async def counts(self) -> Tuple[int, int]:
        """(unread_count, total_messages)"""
        row = await self._fetchone(
            "SELECT COALESCE(SUM(CASE WHEN read = 0 THEN 1 ELSE 0 END), 0), COUNT(*) FROM messages"
        )
        return row[0], row[1]

    # --------------------------------------------------
    # Contacts
    # --------------------------------------------------
    async def list_contacts(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall("SELECT phone_number, name FROM contacts ORDER BY name")
        return [dict(r) for r in rows]

    async def get_contact(self, phone: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone(
            "SELECT phone_number, name FROM contacts WHERE phone_number = ?", (phone,)
        )
        return dict(row) if row else None

    async def upsert_contact(self, phone: str, name: str):
        await self._execute(
            "INSERT OR REPLACE INTO contacts (phone_number, name) VALUES (?, ?)",
            (phone, name),
        )

    async def delete_contact(self, phone: str):
        await self._execute("DELETE FROM contacts WHERE phone_number = ?", (phone,))

    # --------------------------------------------------
    # Users
    # --------------------------------------------------
    async def create_user(self, user_id: str, login: str, password_hash: str) -> bool:
        """False when a user with this id (or login) already exists."""
        now = utc_now()
        try:
            await self._execute(
                "INSERT INTO users (id, login, password_hash, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (user_id, login, password_hash, now, now),
            )
            return True
        except aiosqlite.IntegrityError:
            return False

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return dict(row) if row else None

    async def get_user_by_login(self, login: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM users WHERE login = ?", (login,))
        return dict(row) if row else None

    async def update_user_password(self, user_id: str, password_hash: str):
        await self._execute(
            "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
            (password_hash, utc_now(), user_id),
        )

    # --------------------------------------------------
    # Devices
    # --------------------------------------------------
    async def create_device(
        self,
        device_id: str,
        user_id: str,
        auth_token: str,
        name: str = "",
        push_token: Optional[str] = None,
    ):
        now = utc_now()
        await self._execute(
            """
            INSERT INTO devices (id, user_id, name, push_token, auth_token, last_seen, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (device_id, user_id, name, push_token, auth_token, now, now, now),
        )

    async def get_device(self, device_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM devices WHERE id = ?", (device_id,))
        return dict(row) if row else None

    async def get_device_by_token(self, token: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM devices WHERE auth_token = ?", (token,))
        return dict(row) if row else None

    async def list_devices(self, user_id: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM devices WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
        )
        return [dict(r) for r in rows]

    async def get_active_device(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Most recently seen device of the user, re-evaluated on every call."""
        row = await self._fetchone(
            "SELECT * FROM devices WHERE user_id = ? ORDER BY last_seen DESC, rowid DESC LIMIT 1",
            (user_id,),
        )
        return dict(row) if row else None

    async def touch_device(self, device_id: str):
        await self._execute(
            "UPDATE devices SET last_seen = ? WHERE id = ?", (utc_now(), device_id)
        )

    async def update_device_push_token(self, device_id: str, push_token: Optional[str]):
        await self._execute(
            "UPDATE devices SET push_token = ?, updated_at = ? WHERE id = ?",
            (push_token, utc_now(), device_id),
        )

    async def update_device_name(self, device_id: str, name: str):
        await self._execute(
            "UPDATE devices SET name = ?, updated_at = ? WHERE id = ?",
            (name, utc_now(), device_id),
        )

    async def delete_device(self, device_id: str):
        await self._execute("DELETE FROM devices WHERE id = ?", (device_id,))

    # --------------------------------------------------
    # Gateway message queue
    # --------------------------------------------------
    async def enqueue_gateway_message(
        self,
        message_id: str,
        user_id: str,
        phone_numbers: List[str],
        text: str,
        device_id: Optional[str] = None,
        sim_number: int = 1,
        is_encrypted: bool = False,
        with_delivery_report: bool = False,
        valid_until: Optional[str] = None,
    ):
        """
        Insert a gateway message and one recipient row per phone
        number (same order) inside a single transaction. The message
        is never visible without its recipients. Repeated numbers
        collapse to their first occurrence. At least one non-blank
        number is required.
        """
        phone_numbers = list(dict.fromkeys(phone_numbers))
        if not phone_numbers or any(not p.strip() for p in phone_numbers):
            raise ValidationError("phoneNumbers must contain at least one non-empty number")
        now = utc_now()
        async with aiosqlite.connect(self.db_path) as db:
            try:
                await db.execute(
                    """
                    INSERT INTO gateway_messages (
                        id, device_id, user_id, state, phone_numbers, text, sim_number,
                        is_encrypted, with_delivery_report, valid_until, created_at, updated_at
                    )
                    VALUES (?, ?, ?, 'Pending', ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message_id,
                        device_id,
                        user_id,
                        json.dumps(phone_numbers),
                        text,
                        sim_number,
                        1 if is_encrypted else 0,
                        1 if with_delivery_report else 0,
                        valid_until,
                        now,
                        now,
                    ),
                )
                await db.executemany(
                    "INSERT INTO message_recipients (message_id, phone_number) VALUES (?, ?)",
                    [(message_id, phone) for phone in phone_numbers],
                )
                await db.commit()
            except aiosqlite.Error:
                await db.rollback()
                raise

    async def get_gateway_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM gateway_messages WHERE id = ?", (message_id,))
        return _gateway_message_from_row(row) if row else None

    async def get_gateway_message_by_prefix(self, prefix: str) -> Dict[str, Any]:
        rows = await self._fetchall(
            "SELECT * FROM gateway_messages WHERE substr(id, 1, length(?)) = ? LIMIT 2",
            (prefix, prefix),
        )
        return _gateway_message_from_row(_single(rows, "Gateway message"))

    async def expire_pending_messages(self, now: Optional[str] = None) -> int:
        """
        Fail every pending message whose valid_until has passed.
        Recipients still pending get error "expired".
        """
        now = now or utc_now()
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                "SELECT id FROM gateway_messages "
                "WHERE state = 'Pending' AND valid_until IS NOT NULL AND valid_until < ?",
                (now,),
            )
            expired = [r[0] for r in await cur.fetchall()]
            if not expired:
                return 0

            marks = ",".join("?" for _ in expired)
            await db.execute(
                f"UPDATE gateway_messages SET state = 'Failed', updated_at = ? WHERE id IN ({marks})",
                (now, *expired),
            )
            await db.execute(
                f"UPDATE message_recipients SET state = 'Failed', error = 'expired' "
                f"WHERE state = 'Pending' AND message_id IN ({marks})",
                tuple(expired),
            )
            await db.commit()

        logger.info({"msg": "gateway_messages_expired", "count": len(expired)})
        return len(expired)

    async def list_pending_messages(self, device_id: str, order: str = "FIFO") -> List[Dict[str, Any]]:
        """
        Pending messages addressed to this device or to no device yet.
        FIFO -> oldest first, LIFO -> newest first.
        """
        await self.expire_pending_messages()
        direction = "DESC" if order == "LIFO" else "ASC"
        rows = await self._fetchall(
            f"""
            SELECT * FROM gateway_messages
            WHERE (device_id = ? OR device_id IS NULL) AND state = 'Pending'
            ORDER BY created_at {direction}, rowid {direction}
            """,
            (device_id,),
        )
        return [_gateway_message_from_row(r) for r in rows]

    async def update_gateway_message_state(
        self, message_id: str, state: str, device_id: Optional[str] = None
    ):
        """Set the message state; a device id also claims the message."""
        if device_id:
            await self._execute(
                "UPDATE gateway_messages SET state = ?, device_id = ?, updated_at = ? WHERE id = ?",
                (state, device_id, utc_now(), message_id),
            )
        else:
            await self._execute(
                "UPDATE gateway_messages SET state = ?, updated_at = ? WHERE id = ?",
                (state, utc_now(), message_id),
            )

    async def list_gateway_messages(
        self,
        user_id: str,
        state: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        where = ["user_id = ?"]
        params: list[Any] = [user_id]
        if state:
            where.append("state = ?")
            params.append(state)

        rows = await self._fetchall(
            f"""
            SELECT * FROM gateway_messages
            WHERE {' AND '.join(where)}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            tuple(params) + (limit, offset),
        )
        return [_gateway_message_from_row(r) for r in rows]

    async def get_message_recipients(self, message_id: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM message_recipients WHERE message_id = ? ORDER BY id", (message_id,)
        )
        return [dict(r) for r in rows]

    async def update_recipient_state(
        self, message_id: str, phone_number: str, state: str, error: Optional[str] = None
    ):
        await self._execute(
            "UPDATE message_recipients SET state = ?, error = ? WHERE message_id = ? AND phone_number = ?",
            (state, error, message_id, phone_number),
        )

    # --------------------------------------------------
    # Webhook subscribers
    # --------------------------------------------------
    async def create_webhook(
        self, webhook_id: str, user_id: str, url: str, event: str, device_id: Optional[str] = None
    ):
        await self._execute(
            "INSERT INTO gateway_webhooks (id, user_id, device_id, url, event) VALUES (?, ?, ?, ?, ?)",
            (webhook_id, user_id, device_id, url, event),
        )

    async def list_webhooks(self, user_id: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM gateway_webhooks WHERE user_id = ? ORDER BY event, rowid", (user_id,)
        )
        return [dict(r) for r in rows]

    async def get_webhook(self, webhook_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM gateway_webhooks WHERE id = ?", (webhook_id,))
        return dict(row) if row else None

    async def delete_webhook(self, webhook_id: str):
        await self._execute("DELETE FROM gateway_webhooks WHERE id = ?", (webhook_id,))

    async def list_webhooks_by_event(self, event: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM gateway_webhooks WHERE event = ? ORDER BY rowid", (event,)
        )
        return [dict(r) for r in rows]
