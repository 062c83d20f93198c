from datetime import datetime
from typing import Any, List, Optional, Sequence
from aiosqlitepool import SQLiteConnectionPool

from tally.database.manager import utcnow
from tally.schemas.conversation import Ticket


def _row_to_ticket(row: Sequence[Any]) -> Ticket:
    id, identity, status, summary, updated_at = row
    return Ticket(
        id=id,
        identity=identity,
        status=status,
        summary=summary,
        updated_at=datetime.fromisoformat(updated_at),
    )


async def upsert_ticket(
    db_pool: SQLiteConnectionPool, ticket_id: str, identity: str, status: str, summary: str = ""
) -> Ticket:
    now = utcnow()
    async with db_pool.connection() as db:
        await db.execute(
            """
            INSERT INTO tickets (id, identity, status, summary, updated_at) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                identity = excluded.identity,
                status = excluded.status,
                summary = excluded.summary,
                updated_at = excluded.updated_at
            """,
            (ticket_id, identity, status, summary, now),
        )
        await db.commit()  # type: ignore
    return Ticket(
        id=ticket_id,
        identity=identity,
        status=status,
        summary=summary,
        updated_at=datetime.fromisoformat(now),
    )


async def list_tickets(db_pool: SQLiteConnectionPool, identity: str, limit: int = 5) -> List[Ticket]:
    """Most recently updated tickets for an identity."""
    async with db_pool.connection() as db:
        cursor = await db.execute(
            "SELECT id, identity, status, summary, updated_at FROM tickets "
            "WHERE identity = ? ORDER BY updated_at DESC LIMIT ?",
            (identity, limit),
        )
        rows = await cursor.fetchall()
    return [_row_to_ticket(row) for row in rows]


async def get_ticket(db_pool: SQLiteConnectionPool, ticket_id: str) -> Optional[Ticket]:
    async with db_pool.connection() as db:
        cursor = await db.execute(
            "SELECT id, identity, status, summary, updated_at FROM tickets WHERE id = ?",
            (ticket_id,),
        )
        row = await cursor.fetchone()
    return _row_to_ticket(row) if row else None
