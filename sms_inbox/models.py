# --------------------------------------------------
# models.py
# --------------------------------------------------
# This module initializes the SQLite schema used by
# the FastAPI backend.
#
# Tables:
#   messages            inbound/outbound SMS, id = content hash
#   contacts            phone_number -> display name
#   users               the single tenant (fixed id)
#   devices             registered Android senders
#   gateway_messages    queued send requests awaiting a device
#   message_recipients  one delivery leg per phone number
#   gateway_webhooks    subscriber URLs per event
#
# Schema is created automatically at startup if missing.
# --------------------------------------------------

import os

import aiosqlite

PROCESSING_STATES = ("Pending", "Processed", "Sent", "Delivered", "Failed")

_STATE_CHECK = "CHECK(state IN (%s))" % ",".join(f"'{s}'" for s in PROCESSING_STATES)

SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        phone_number TEXT NOT NULL,
        text TEXT NOT NULL,
        direction TEXT NOT NULL CHECK(direction IN ('in', 'out')),
        timestamp TEXT NOT NULL,
        read INTEGER NOT NULL DEFAULT 0,
        sim_number INTEGER NOT NULL DEFAULT 1,
        gateway_message_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_phone ON messages(phone_number)",
    "CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_messages_read ON messages(read)",
    """
    CREATE TABLE IF NOT EXISTS contacts (
        phone_number TEXT PRIMARY KEY,
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        login TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS devices (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        name TEXT NOT NULL DEFAULT '',
        push_token TEXT,
        auth_token TEXT NOT NULL UNIQUE,
        last_seen TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_devices_user_id ON devices(user_id)",
    f"""
    CREATE TABLE IF NOT EXISTS gateway_messages (
        id TEXT PRIMARY KEY,
        device_id TEXT,
        user_id TEXT NOT NULL REFERENCES users(id),
        state TEXT NOT NULL DEFAULT 'Pending' {_STATE_CHECK},
        phone_numbers TEXT NOT NULL,
        text TEXT NOT NULL,
        sim_number INTEGER NOT NULL DEFAULT 1,
        is_encrypted INTEGER NOT NULL DEFAULT 0,
        with_delivery_report INTEGER NOT NULL DEFAULT 0,
        valid_until TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_gw_messages_device_state ON gateway_messages(device_id, state)",
    "CREATE INDEX IF NOT EXISTS idx_gw_messages_user ON gateway_messages(user_id)",
    f"""
    CREATE TABLE IF NOT EXISTS message_recipients (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT NOT NULL REFERENCES gateway_messages(id),
        phone_number TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT 'Pending' {_STATE_CHECK},
        error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_recipients_message ON message_recipients(message_id)",
    """
    CREATE TABLE IF NOT EXISTS gateway_webhooks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        device_id TEXT,
        url TEXT NOT NULL,
        event TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_gw_webhooks_event ON gateway_webhooks(event)",
]


async def init_db(db_path: str):
    """
    Initialize SQLite database and ensure the
    required schema is created.

    Args:
        db_path (str): Filesystem path to SQLite DB
                       (e.g. "/data/messages.db")

    Behavior:
        - Creates the parent directory if needed
        - Applies table / index creation SQL
        - Enables WAL mode
        - Commits once
    """
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA journal_mode=WAL;")
        for statement in SCHEMA_SQL:
            await db.execute(statement)
        await db.commit()
