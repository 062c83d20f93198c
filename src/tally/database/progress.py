"""Durable conversation progress.

``conditional_advance`` is the single serialization point for step
advancement: its UPDATE only matches while ``current_step`` still equals the
step the caller verified, so of any number of concurrent attempts at most one
changes a row.
"""

import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from aiosqlitepool import SQLiteConnectionPool

from tally.database.manager import utcnow
from tally.database.steps import get_conversation_type
from tally.errors import CollaboratorUnavailable, UnknownConversationType
from tally.schemas.conversation import (
    OPEN_STATUSES,
    AdvanceCommit,
    ConversationRecord,
    ConversationStatus,
    StepAnswer,
)

RECORD_COLUMNS = """
    id, identity, conversation_type, current_step, total_steps,
    allows_final_free_text_step, status, auxiliary_payload, comment,
    created_at, updated_at, warned_at
"""


def _row_to_record(row: Sequence[Any]) -> ConversationRecord:
    (
        id,
        identity,
        conversation_type,
        current_step,
        total_steps,
        allows_final_free_text_step,
        status,
        auxiliary_payload,
        comment,
        created_at,
        updated_at,
        warned_at,
    ) = row
    return ConversationRecord(
        id=id,
        identity=identity,
        conversation_type=conversation_type,
        current_step=current_step,
        total_steps=total_steps,
        allows_final_free_text_step=bool(allows_final_free_text_step),
        status=ConversationStatus(status),
        auxiliary_payload=json.loads(auxiliary_payload) if auxiliary_payload else {},
        comment=comment,
        created_at=datetime.fromisoformat(created_at) if created_at else None,
        updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        warned_at=datetime.fromisoformat(warned_at) if warned_at else None,
    )


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


class ProgressStore:
    name = "progress-store"

    def __init__(self, db_pool: SQLiteConnectionPool):
        self.db_pool = db_pool

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[Any]:
        try:
            async with self.db_pool.connection() as db:
                yield db
        except sqlite3.Error as e:
            raise CollaboratorUnavailable(self.name, operation, e) from e

    async def read_progress(self, identity: str) -> Optional[ConversationRecord]:
        """Latest open conversation for an identity, or None."""
        statuses = [status.value for status in OPEN_STATUSES]
        async with self._connection("read_progress") as db:
            cursor = await db.execute(
                f"SELECT {RECORD_COLUMNS} FROM conversations "
                f"WHERE identity = ? AND status IN ({_placeholders(statuses)}) "
                "ORDER BY id DESC LIMIT 1",
                (identity, *statuses),
            )
            row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def latest(self, identity: str) -> Optional[ConversationRecord]:
        """Most recent conversation for an identity regardless of status."""
        async with self._connection("latest") as db:
            cursor = await db.execute(
                f"SELECT {RECORD_COLUMNS} FROM conversations WHERE identity = ? "
                "ORDER BY id DESC LIMIT 1",
                (identity,),
            )
            row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def create_conversation(
        self,
        identity: str,
        conversation_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ConversationRecord:
        """Start a fresh conversation instance at step 0, abandoning any open one."""
        definition = await get_conversation_type(self.db_pool, conversation_type)
        if definition is None:
            raise UnknownConversationType(conversation_type)

        now = utcnow()
        statuses = [status.value for status in OPEN_STATUSES]
        async with self._connection("create_conversation") as db:
            await db.execute(
                "UPDATE conversations SET status = ?, updated_at = ? "
                f"WHERE identity = ? AND status IN ({_placeholders(statuses)})",
                (ConversationStatus.ABANDONED.value, now, identity, *statuses),
            )
            cursor = await db.execute(
                "INSERT INTO conversations (identity, conversation_type, current_step, total_steps, "
                "allows_final_free_text_step, status, auxiliary_payload, created_at, updated_at) "
                "VALUES (?, ?, 0, ?, ?, ?, ?, ?, ?)",
                (
                    identity,
                    definition.code,
                    definition.total_steps,
                    int(definition.allows_final_free_text_step),
                    ConversationStatus.AWAITING_INPUT.value,
                    json.dumps(payload or {}),
                    now,
                    now,
                ),
            )
            conversation_id = cursor.lastrowid
            await db.commit()  # type: ignore

        return ConversationRecord(
            id=conversation_id,  # type: ignore[arg-type]
            identity=identity,
            conversation_type=definition.code,
            current_step=0,
            total_steps=definition.total_steps,
            allows_final_free_text_step=definition.allows_final_free_text_step,
            status=ConversationStatus.AWAITING_INPUT,
            auxiliary_payload=payload or {},
            created_at=datetime.fromisoformat(now),
            updated_at=datetime.fromisoformat(now),
        )

    async def conditional_advance(
        self,
        identity: str,
        from_step: int,
        answer_value: int,
        conversation_id: Optional[int] = None,
    ) -> AdvanceCommit:
        """Compare-and-swap ``current_step`` from ``from_step`` to ``from_step + 1``.

        The final-step decision (trailing free-text step or COMPLETED) is made
        inside the same UPDATE, so it is evaluated exactly once per record.
        """
        now = utcnow()
        guard = "AND id = ?" if conversation_id is not None else ""
        params: List[Any] = [
            ConversationStatus.AWAITING_INPUT.value,
            ConversationStatus.COMPLETED.value,
            now,
            identity,
            from_step,
            ConversationStatus.ACTIVE.value,
        ]
        if conversation_id is not None:
            params.append(conversation_id)

        async with self._connection("conditional_advance") as db:
            cursor = await db.execute(
                f"""
                UPDATE conversations
                SET current_step = current_step + 1,
                    status = CASE
                        WHEN current_step + 1 < total_steps THEN status
                        WHEN allows_final_free_text_step = 1 THEN ?
                        ELSE ?
                    END,
                    updated_at = ?,
                    warned_at = NULL
                WHERE identity = ?
                  AND current_step = ?
                  AND status = ?
                  AND current_step < total_steps
                  {guard}
                """,
                params,
            )
            if cursor.rowcount != 1:
                await db.rollback()  # type: ignore
                return AdvanceCommit(success=False)

            cursor = await db.execute(
                "SELECT id, current_step, status FROM conversations "
                "WHERE identity = ? AND current_step = ? AND updated_at = ? "
                "ORDER BY id DESC LIMIT 1",
                (identity, from_step + 1, now),
            )
            row = await cursor.fetchone()
            advanced_id, new_step, status = row

            try:
                await db.execute(
                    "INSERT INTO conversation_answers (conversation_id, step_index, value, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (advanced_id, new_step, answer_value, now),
                )
            except sqlite3.IntegrityError:
                # An answer for this step already exists; keep the first one
                await db.rollback()  # type: ignore
                return AdvanceCommit(success=False)

            await db.commit()  # type: ignore

        return AdvanceCommit(success=True, new_step=new_step, status=ConversationStatus(status))

    async def set_status(
        self,
        identity: str,
        status: ConversationStatus,
        expected: Sequence[ConversationStatus] = OPEN_STATUSES,
        at_step: Optional[int] = None,
    ) -> bool:
        """Move the open record to ``status`` if it is currently in ``expected``.

        Returns whether a row changed; a False result means another delivery
        already made this transition.
        """
        expected_values = [s.value for s in expected]
        step_guard = "AND current_step = ?" if at_step is not None else ""
        params: List[Any] = [status.value, utcnow(), identity, *expected_values]
        if at_step is not None:
            params.append(at_step)

        async with self._connection("set_status") as db:
            cursor = await db.execute(
                "UPDATE conversations SET status = ?, updated_at = ?, warned_at = NULL "
                f"WHERE identity = ? AND status IN ({_placeholders(expected_values)}) {step_guard}",
                params,
            )
            changed = cursor.rowcount > 0
            await db.commit()  # type: ignore
        return changed

    async def complete(self, identity: str, comment: Optional[str] = None) -> bool:
        """Close a conversation that is waiting on its trailing free-text step."""
        async with self._connection("complete") as db:
            cursor = await db.execute(
                "UPDATE conversations SET status = ?, comment = ?, updated_at = ?, warned_at = NULL "
                "WHERE identity = ? AND status = ? AND current_step = total_steps",
                (
                    ConversationStatus.COMPLETED.value,
                    comment,
                    utcnow(),
                    identity,
                    ConversationStatus.AWAITING_INPUT.value,
                ),
            )
            changed = cursor.rowcount > 0
            await db.commit()  # type: ignore
        return changed

    async def warn_idle(self, cutoff: datetime, now: datetime) -> List[str]:
        """Stamp ``warned_at`` on open conversations idle since ``cutoff`` and not yet warned.

        Returns the identities stamped by this call, so each idle stretch
        produces one warning.
        """
        statuses = [status.value for status in OPEN_STATUSES]
        async with self._connection("warn_idle") as db:
            cursor = await db.execute(
                "SELECT id, identity FROM conversations "
                f"WHERE status IN ({_placeholders(statuses)}) "
                "AND warned_at IS NULL AND updated_at < ?",
                (*statuses, cutoff.isoformat()),
            )
            rows = await cursor.fetchall()
            if not rows:
                return []

            ids = [row[0] for row in rows]
            stamp = now.isoformat()
            await db.execute(
                "UPDATE conversations SET warned_at = ? "
                f"WHERE id IN ({_placeholders(ids)}) AND warned_at IS NULL",
                (stamp, *ids),
            )
            cursor = await db.execute(
                f"SELECT identity FROM conversations WHERE id IN ({_placeholders(ids)}) AND warned_at = ?",
                (*ids, stamp),
            )
            warned = await cursor.fetchall()
            await db.commit()  # type: ignore
        return sorted({row[0] for row in warned})

    async def clear_warning(self, identity: str) -> bool:
        """Count an inbound message as activity on a warned conversation."""
        statuses = [status.value for status in OPEN_STATUSES]
        async with self._connection("clear_warning") as db:
            cursor = await db.execute(
                "UPDATE conversations SET warned_at = NULL, updated_at = ? "
                f"WHERE identity = ? AND status IN ({_placeholders(statuses)}) "
                "AND warned_at IS NOT NULL",
                (utcnow(), identity, *statuses),
            )
            changed = cursor.rowcount > 0
            await db.commit()  # type: ignore
        return changed

    async def expire_idle(self, cutoff: datetime, warned_before: datetime) -> List[str]:
        """Abandon open conversations idle since ``cutoff`` and warned before ``warned_before``.

        Conversations that were never warned are left open. Returns the
        identities whose conversation was abandoned.
        """
        statuses = [status.value for status in OPEN_STATUSES]
        async with self._connection("expire_idle") as db:
            cursor = await db.execute(
                "SELECT id, identity FROM conversations "
                f"WHERE status IN ({_placeholders(statuses)}) AND updated_at < ? "
                "AND warned_at IS NOT NULL AND warned_at < ?",
                (*statuses, cutoff.isoformat(), warned_before.isoformat()),
            )
            rows = await cursor.fetchall()
            if not rows:
                return []

            ids = [row[0] for row in rows]
            now = utcnow()
            # A reply since the SELECT cleared warned_at and keeps its conversation open
            await db.execute(
                "UPDATE conversations SET status = ?, updated_at = ? "
                f"WHERE id IN ({_placeholders(ids)}) AND status IN ({_placeholders(statuses)}) "
                "AND warned_at IS NOT NULL",
                (ConversationStatus.ABANDONED.value, now, *ids, *statuses),
            )
            cursor = await db.execute(
                f"SELECT identity FROM conversations WHERE id IN ({_placeholders(ids)}) "
                "AND status = ? AND updated_at = ?",
                (*ids, ConversationStatus.ABANDONED.value, now),
            )
            expired = await cursor.fetchall()
            await db.commit()  # type: ignore
        return sorted({row[0] for row in expired})

    async def answers(self, conversation_id: int) -> List[StepAnswer]:
        async with self._connection("answers") as db:
            cursor = await db.execute(
                "SELECT step_index, value FROM conversation_answers "
                "WHERE conversation_id = ? ORDER BY step_index",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [StepAnswer(step=row[0], value=row[1]) for row in rows]
