import aiosqlite
from aiosqlitepool import SQLiteConnectionPool
import os
from datetime import datetime, timezone
from litestar.types.protocols import Logger


DEFAULT_CONVERSATION_TYPES = [
    # code, name, total_steps, allows_final_free_text_step, thank_you_message
    ("service_satisfaction", "Service satisfaction", 6, 1, None),
    ("quick_feedback", "Quick feedback", 3, 0, "Thanks, your feedback has been recorded."),
]

DEFAULT_STEPS = [
    ("service_satisfaction", 1, "How satisfied are you with the overall service?"),
    ("service_satisfaction", 2, "How would you rate the technician's punctuality?"),
    ("service_satisfaction", 3, "How would you rate the technician's friendliness?"),
    ("service_satisfaction", 4, "How well was your problem solved?"),
    ("service_satisfaction", 5, "How clear was the communication during the visit?"),
    ("service_satisfaction", 6, "How likely are you to recommend us?"),
    ("quick_feedback", 1, "How was your experience today?"),
    ("quick_feedback", 2, "How easy was it to reach us?"),
    ("quick_feedback", 3, "How likely are you to use the service again?"),
]


def utcnow() -> str:
    """Timestamps are stored as ISO-8601 UTC text so they compare lexically."""
    return datetime.now(timezone.utc).isoformat()


async def init_database(db_pool: SQLiteConnectionPool) -> None:
    async with db_pool.connection() as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS conversation_types (
                code TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                total_steps INTEGER NOT NULL CHECK (total_steps > 0),
                allows_final_free_text_step INTEGER NOT NULL DEFAULT 0,
                thank_you_message TEXT
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS conversation_steps (
                conversation_type TEXT NOT NULL REFERENCES conversation_types(code),
                step_index INTEGER NOT NULL CHECK (step_index > 0),
                prompt_text TEXT NOT NULL,
                PRIMARY KEY (conversation_type, step_index)
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                identity TEXT NOT NULL,
                conversation_type TEXT NOT NULL REFERENCES conversation_types(code),
                current_step INTEGER NOT NULL DEFAULT 0 CHECK (current_step >= 0),
                total_steps INTEGER NOT NULL CHECK (total_steps > 0),
                allows_final_free_text_step INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                auxiliary_payload TEXT,
                comment TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                warned_at TEXT,
                CHECK (current_step <= total_steps)
            )
        """)
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_conversations_identity_status
            ON conversations(identity, status)
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS conversation_answers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL REFERENCES conversations(id),
                step_index INTEGER NOT NULL,
                value INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (conversation_id, step_index)
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                identity TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                payload TEXT,
                seq INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                identity TEXT NOT NULL,
                direction TEXT NOT NULL CHECK (direction IN ('in', 'out')),
                body TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_identity
            ON messages(identity)
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS processed_messages (
                message_id TEXT PRIMARY KEY,
                identity TEXT NOT NULL,
                received_at TEXT NOT NULL
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS tickets (
                id TEXT PRIMARY KEY,
                identity TEXT NOT NULL,
                status TEXT NOT NULL,
                summary TEXT NOT NULL DEFAULT '',
                updated_at TEXT NOT NULL
            )
        """)
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_tickets_identity
            ON tickets(identity, updated_at)
        """)

        await db.executemany(
            "INSERT OR IGNORE INTO conversation_types "
            "(code, name, total_steps, allows_final_free_text_step, thank_you_message) "
            "VALUES (?, ?, ?, ?, ?)",
            DEFAULT_CONVERSATION_TYPES,
        )
        await db.executemany(
            "INSERT OR IGNORE INTO conversation_steps (conversation_type, step_index, prompt_text) "
            "VALUES (?, ?, ?)",
            DEFAULT_STEPS,
        )
        await db.commit()  # type: ignore


async def create_db_pool(db_path: str, logger: Logger, timeout: float = 5.0) -> SQLiteConnectionPool:
    os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    logger.info("Creating connection pool for database at %s", db_path)

    async def sqlite_connection() -> aiosqlite.Connection:
        # timeout bounds how long a writer waits on another connection's lock
        conn = await aiosqlite.connect(db_path, timeout=timeout)
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        return conn

    db_pool = SQLiteConnectionPool(connection_factory=sqlite_connection)  # type: ignore
    await init_database(db_pool)
    logger.info("Database initialized")
    return db_pool
