import time
from datetime import datetime
from typing import List, Optional, Tuple
from aiosqlitepool import SQLiteConnectionPool

from tally.database.manager import utcnow
from tally.schemas.conversation import Session

IDLE_STATE = "idle"

_last_seq = 0


def next_session_seq() -> int:
    """Ordering stamp for session writes, strictly increasing within the process."""
    global _last_seq
    _last_seq = max(time.time_ns(), _last_seq + 1)
    return _last_seq


async def get_session(db_pool: SQLiteConnectionPool, identity: str) -> Session:
    """Load the dispatch session for an identity; identities without one are idle."""
    async with db_pool.connection() as db:
        cursor = await db.execute(
            "SELECT state, payload, updated_at FROM sessions WHERE identity = ?",
            (identity,),
        )
        row = await cursor.fetchone()

    if row is None:
        return Session(identity=identity, state=IDLE_STATE)

    state, payload, updated_at = row
    return Session(
        identity=identity,
        state=state,
        payload=payload,
        updated_at=datetime.fromisoformat(updated_at),
    )


async def update_session(
    db_pool: SQLiteConnectionPool,
    identity: str,
    state: str,
    payload: Optional[str] = None,
    seq: Optional[int] = None,
) -> bool:
    """Write the session unless a write stamped later already landed.

    ``seq`` should be taken when the transition is decided, not when the
    write runs, so a delayed or retried write cannot move the session back.
    Returns whether the row was written.
    """
    if seq is None:
        seq = next_session_seq()
    async with db_pool.connection() as db:
        cursor = await db.execute(
            """
            INSERT INTO sessions (identity, state, payload, seq, updated_at) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(identity) DO UPDATE SET
                state = excluded.state,
                payload = excluded.payload,
                seq = excluded.seq,
                updated_at = excluded.updated_at
            WHERE excluded.seq > sessions.seq
            """,
            (identity, state, payload, seq, utcnow()),
        )
        written = cursor.rowcount > 0
        await db.commit()  # type: ignore
    return written


async def reset_sessions(db_pool: SQLiteConnectionPool, identities: List[str]) -> None:
    if not identities:
        return
    placeholders = ",".join("?" * len(identities))
    async with db_pool.connection() as db:
        await db.execute(
            f"UPDATE sessions SET state = ?, payload = NULL, seq = ?, updated_at = ? "
            f"WHERE identity IN ({placeholders})",
            [IDLE_STATE, next_session_seq(), utcnow()] + identities,
        )
        await db.commit()  # type: ignore


async def save_message(
    db_pool: SQLiteConnectionPool, identity: str, direction: str, body: str
) -> None:
    """Append a line to the conversation transcript."""
    async with db_pool.connection() as db:
        await db.execute(
            "INSERT INTO messages (identity, direction, body, created_at) VALUES (?, ?, ?, ?)",
            (identity, direction, body, utcnow()),
        )
        await db.commit()  # type: ignore


async def load_recent_messages(
    db_pool: SQLiteConnectionPool, identity: str, limit: int
) -> List[Tuple[str, str]]:
    """Last ``limit`` transcript lines as (direction, body), oldest first."""
    async with db_pool.connection() as db:
        cursor = await db.execute(
            "SELECT direction, body FROM messages WHERE identity = ? ORDER BY id DESC LIMIT ?",
            (identity, limit),
        )
        rows = await cursor.fetchall()
    return [(row[0], row[1]) for row in reversed(rows)]


async def register_message(db_pool: SQLiteConnectionPool, message_id: str, identity: str) -> bool:
    """Record a channel message id; False if it was already registered."""
    async with db_pool.connection() as db:
        cursor = await db.execute(
            "INSERT OR IGNORE INTO processed_messages (message_id, identity, received_at) "
            "VALUES (?, ?, ?)",
            (message_id, identity, utcnow()),
        )
        inserted = cursor.rowcount == 1
        await db.commit()  # type: ignore
    return inserted


async def release_message(db_pool: SQLiteConnectionPool, message_id: str) -> None:
    """Forget a registered message id so a redelivery is processed again."""
    async with db_pool.connection() as db:
        await db.execute("DELETE FROM processed_messages WHERE message_id = ?", (message_id,))
        await db.commit()  # type: ignore
