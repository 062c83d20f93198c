from typing import List, Optional
from aiosqlitepool import SQLiteConnectionPool

from tally.schemas.conversation import ConversationType, StepDefinition


async def get_conversation_type(
    db_pool: SQLiteConnectionPool, code: str
) -> Optional[ConversationType]:
    async with db_pool.connection() as db:
        cursor = await db.execute(
            "SELECT code, name, total_steps, allows_final_free_text_step, thank_you_message "
            "FROM conversation_types WHERE code = ?",
            (code,),
        )
        row = await cursor.fetchone()

    if row is None:
        return None

    code, name, total_steps, allows_final_free_text_step, thank_you_message = row
    return ConversationType(
        code=code,
        name=name,
        total_steps=total_steps,
        allows_final_free_text_step=bool(allows_final_free_text_step),
        thank_you_message=thank_you_message,
    )


async def list_steps(db_pool: SQLiteConnectionPool, conversation_type: str) -> List[StepDefinition]:
    """Ordered step prompts for a conversation type."""
    async with db_pool.connection() as db:
        cursor = await db.execute(
            "SELECT step_index, prompt_text FROM conversation_steps "
            "WHERE conversation_type = ? ORDER BY step_index",
            (conversation_type,),
        )
        rows = await cursor.fetchall()

    return [StepDefinition(index=row[0], prompt_text=row[1]) for row in rows]
