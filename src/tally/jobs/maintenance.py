from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from aiosqlitepool import SQLiteConnectionPool
from litestar.types.protocols import Logger
from pydantic import BaseModel

from tally.cache.conversation import ConversationCache
from tally.clients.whatsapp import Channel
from tally.database.progress import ProgressStore
from tally.database.sessions import reset_sessions, save_message
from tally.flows import messages
from tally.jobs.runner import ScheduledJobFunc, scheduled_job


class ExpiryInput(BaseModel):
    idle_hours: float
    warning_hours: float
    runs: int = 0
    warned_total: int = 0
    expired_total: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_expiry_job(
    store: ProgressStore,
    cache: ConversationCache,
    channel: Channel,
    db_pool: SQLiteConnectionPool,
    logger: Logger,
    clock: Callable[[], datetime] = _utcnow,
) -> ScheduledJobFunc:
    """Build the job that warns, then abandons, conversations nobody has touched.

    A conversation idle for ``warning_hours`` gets one "still there?" message.
    It is abandoned once idle for ``idle_hours`` and only if the warning went
    out at least ``idle_hours - warning_hours`` earlier, so the user always
    gets the promised window. Any inbound message clears the warning.
    """

    async def notify(identities: List[str], text: str, operation: str) -> int:
        sent = 0
        for identity in identities:
            try:
                await channel.send_text(identity, text)
                await save_message(db_pool, identity, "out", text)
                sent += 1
            except Exception as e:
                logger.error(f"{operation} message to {identity} failed: {e}", exc_info=True)
        return sent

    @scheduled_job("expire-idle-conversations", 2.0)
    async def expire_idle_conversations(
        job_id: str, schedule: str, input: ExpiryInput
    ) -> Optional[ExpiryInput]:
        now = clock()
        notice = timedelta(hours=input.idle_hours - input.warning_hours)

        warned = await store.warn_idle(now - timedelta(hours=input.warning_hours), now)
        if warned:
            text = messages.STILL_THERE.format(hours=input.idle_hours - input.warning_hours)
            sent = await notify(warned, text, "Idle warning")
            logger.info(f"Warned {sent}/{len(warned)} idle conversations (job {job_id})")

        expired = await store.expire_idle(now - timedelta(hours=input.idle_hours), now - notice)
        for identity in expired:
            cache.invalidate(identity)
        await reset_sessions(db_pool, expired)
        if expired:
            await notify(expired, messages.EXPIRED, "Expiry")
            logger.info(f"Expired {len(expired)} idle conversations (job {job_id})")

        return ExpiryInput(
            idle_hours=input.idle_hours,
            warning_hours=input.warning_hours,
            runs=input.runs + 1,
            warned_total=input.warned_total + len(warned),
            expired_total=input.expired_total + len(expired),
        )

    return expire_idle_conversations
