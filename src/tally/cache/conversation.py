import asyncio
import time
from dataclasses import replace
from typing import Callable, Dict, Optional, Self, Tuple

from aiosqlitepool import SQLiteConnectionPool
from litestar.types.protocols import Logger

from tally.cache.ttl import TTLCache
from tally.database.progress import ProgressStore
from tally.database.steps import get_conversation_type, list_steps
from tally.retry import retry_with_backoff
from tally.schemas.conversation import (
    CacheEntry,
    ConversationRecord,
    ConversationStatus,
    ConversationType,
    StepDefinition,
)

StepMetadata = Tuple[Optional[ConversationType], Tuple[StepDefinition, ...]]


class ConversationCache:
    """
    Read-through cache of conversation progress keyed by identity.

    Entries are a hint for routing and prompting. The advancement protocol
    re-reads the store before every commit and only calls touch() after the
    commit succeeded, so a stale entry can delay a turn but never advance one.
    Step metadata is cached separately under its own, longer TTL.
    """

    def __init__(
        self,
        store: ProgressStore,
        db_pool: SQLiteConnectionPool,
        logger: Logger,
        ttl: float = 30 * 60,
        steps_ttl: float = 60 * 60,
        sweep_interval: float = 10 * 60,
        clock: Callable[[], float] = time.monotonic,
        max_attempts: int = 3,
    ):
        self.store = store
        self.db_pool = db_pool
        self.logger = logger
        self.sweep_interval = sweep_interval
        self.max_attempts = max_attempts
        self._entries: TTLCache[str, CacheEntry] = TTLCache(ttl, clock)
        self._steps: TTLCache[str, StepMetadata] = TTLCache(steps_ttl, clock)
        self._sweep_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> Self:
        self._sweep_task = asyncio.create_task(self._sweep_periodically())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def _sweep_periodically(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                removed = self.sweep()
                if removed:
                    self.logger.debug(f"[cache] swept {removed} expired entries")
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"[cache] sweep failed: {e}")

    async def step_metadata(self, conversation_type: str) -> StepMetadata:
        cached = self._steps.get(conversation_type)
        if cached is not None:
            return cached

        definition = await get_conversation_type(self.db_pool, conversation_type)
        steps = tuple(await list_steps(self.db_pool, conversation_type))
        metadata = (definition, steps)
        self._steps.set(conversation_type, metadata)
        return metadata

    async def _entry_from(self, record: ConversationRecord) -> CacheEntry:
        definition, steps = await self.step_metadata(record.conversation_type)
        return CacheEntry(
            conversation_id=record.id,
            identity=record.identity,
            conversation_type=record.conversation_type,
            current_step=record.current_step,
            total_steps=record.total_steps,
            allows_final_free_text_step=record.allows_final_free_text_step,
            status=record.status,
            steps=steps,
            thank_you_message=definition.thank_you_message if definition else None,
        )

    def get(self, identity: str) -> Optional[CacheEntry]:
        """Cached entry only; never reads the store."""
        return self._entries.get(identity)

    async def load(self, identity: str) -> Optional[CacheEntry]:
        """Cached entry, filling from the progress store on a miss."""
        entry = self._entries.get(identity)
        if entry is not None:
            self.logger.debug(
                f"[cache] hit {entry.conversation_id}, current_step: {entry.current_step}"
            )
            return entry

        record = await retry_with_backoff(
            lambda: self.store.read_progress(identity),
            "read_progress",
            self.logger,
            max_attempts=self.max_attempts,
        )
        if record is None:
            return None

        entry = await self._entry_from(record)
        self._entries.set(identity, entry)
        self.logger.debug(
            f"[cache] set {entry.conversation_id}, current_step: {entry.current_step}, "
            f"total_steps: {entry.total_steps}"
        )
        return entry

    async def prime(self, record: ConversationRecord) -> CacheEntry:
        """Populate the entry for a freshly created record so the next turn hits."""
        entry = await self._entry_from(record)
        self._entries.set(record.identity, entry)
        return entry

    def touch(
        self,
        identity: str,
        conversation_id: int,
        new_step: int,
        status: Optional[ConversationStatus] = None,
    ) -> bool:
        """Record a committed step on the live entry for ``conversation_id``.

        A commit for an older instance never rewrites the entry of a newer one.
        """
        entry = self._entries.get(identity)
        if entry is None or entry.conversation_id != conversation_id:
            return False

        def update(current: CacheEntry) -> CacheEntry:
            return replace(current, current_step=new_step, status=status or current.status)

        return self._entries.touch(identity, update)

    def catch_up(self, identity: str, record: ConversationRecord) -> bool:
        """Move a lagging entry forward to a durable record; never moves it back."""
        entry = self._entries.get(identity)
        if entry is None or entry.conversation_id != record.id:
            return False
        if record.current_step < entry.current_step:
            return False
        if record.current_step == entry.current_step and record.status == entry.status:
            return False
        return self.touch(identity, record.id, record.current_step, record.status)

    def invalidate(self, identity: str) -> bool:
        return self._entries.invalidate(identity)

    def sweep(self) -> int:
        return self._entries.sweep() + self._steps.sweep()

    def stats(self) -> Dict[str, int]:
        return {"entries": len(self._entries), "step_definitions": len(self._steps)}
