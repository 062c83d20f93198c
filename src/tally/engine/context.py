import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from aiosqlitepool import SQLiteConnectionPool
from litestar.types.protocols import Logger

from tally.clients.whatsapp import Channel
from tally.database.sessions import next_session_seq, save_message, update_session
from tally.database.tickets import get_ticket, list_tickets
from tally.engine.advancement import AdvanceResult, StepAdvancer
from tally.engine.background import TaskTracker
from tally.retry import retry_with_backoff
from tally.schemas.conversation import (
    OPEN_STATUSES,
    CacheEntry,
    Choice,
    ConversationRecord,
    ConversationStatus,
    Session,
    Ticket,
)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0


@dataclass
class Action:
    name: str
    detail: Dict[str, Any] = field(default_factory=dict)


class ConversationContext:
    """
    Per-turn facade handed to step handlers.

    Handlers reply, read and change conversation progress, transition and log
    through this object only; they never talk to the channel client, the
    progress store, the cache or the session table directly. One context is
    built per inbound event and discarded when the turn ends.
    """

    def __init__(
        self,
        identity: str,
        session: Session,
        channel: Channel,
        db_pool: SQLiteConnectionPool,
        advancer: StepAdvancer,
        tasks: TaskTracker,
        logger: Logger,
        flow_name: str = "unknown",
        retry: RetryPolicy = RetryPolicy(),
    ):
        self.identity = identity
        self.session = session
        self.channel = channel
        self.db_pool = db_pool
        self.tasks = tasks
        self.logger = logger
        self.flow_name = flow_name
        self.retry = retry
        self.actions: List[Action] = []
        self._advancer = advancer
        self._store = advancer.store
        self._cache = advancer.cache
        self._timers: Dict[str, float] = {}
        self._last_timer: Optional[str] = None

    @property
    def state(self) -> str:
        return self.session.state

    @property
    def payload(self) -> Optional[str]:
        return self.session.payload

    async def _retrying(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await retry_with_backoff(
            operation,
            name,
            self.logger,
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay,
            max_delay=self.retry.max_delay,
        )

    # Replies

    async def reply(self, text: str) -> None:
        await self.channel.send_text(self.identity, text)
        self._record("reply", length=len(text))
        self._log_outbound(text)

    async def reply_with_options(self, title: str, body: str, choices: Sequence[Choice]) -> None:
        await self.channel.send_choice(self.identity, title, body, choices)
        self._record("reply_with_options", title=title, choices=len(choices))
        self._log_outbound(f"{title}\n{body}")

    def _log_outbound(self, body: str) -> None:
        self.spawn(save_message(self.db_pool, self.identity, "out", body), "save_message")

    # Progress

    async def begin(
        self, conversation_type: str, payload: Optional[Dict[str, Any]] = None
    ) -> ConversationRecord:
        """Create a conversation instance at step 0 and prime its cache entry."""
        record = await self._store.create_conversation(self.identity, conversation_type, payload)
        await self._cache.prime(record)
        self._record("begin", conversation_id=record.id, conversation_type=conversation_type)
        return record

    async def progress(self) -> Optional[CacheEntry]:
        """Cached progress, read through to the store on a miss."""
        return await self._cache.load(self.identity)

    async def read_progress(self) -> Optional[ConversationRecord]:
        """Authoritative progress straight from the store."""
        return await self._retrying(lambda: self._store.read_progress(self.identity), "read_progress")

    async def answer(self, answer: Union[str, int], step: Optional[int] = None) -> AdvanceResult:
        result = await self._advancer.advance(self.identity, answer, step)
        self._record("answer", outcome=result.outcome.value, step=result.step)
        return result

    async def complete(self, comment: Optional[str] = None) -> bool:
        """Close a conversation waiting on its trailing free-text step.

        False when it was already closed by another delivery.
        """
        if not await self._store.complete(self.identity, comment):
            return False
        self._cache.invalidate(self.identity)
        self._record("complete", comment=comment is not None)
        return True

    @property
    def rating_range(self) -> Tuple[int, int]:
        return self._advancer.rating_min, self._advancer.rating_max

    # Lookups

    async def tickets(self, limit: int = 5) -> List[Ticket]:
        return await self._retrying(lambda: list_tickets(self.db_pool, self.identity, limit), "list_tickets")

    async def ticket(self, ticket_id: str) -> Optional[Ticket]:
        return await self._retrying(lambda: get_ticket(self.db_pool, ticket_id), "get_ticket")

    # Session

    async def transition(
        self,
        new_state: str,
        payload: Optional[str] = None,
        status: Optional[ConversationStatus] = None,
        expected: Sequence[ConversationStatus] = OPEN_STATUSES,
        at_step: Optional[int] = None,
    ) -> bool:
        """Persist the next session state; ``payload`` is stored as given.

        With ``status`` the open conversation record moves to that status
        first, but only from ``expected`` (and ``at_step`` when given). When
        that conditional update matches nothing, another delivery already made
        this transition: nothing else is written and False is returned.
        Terminal statuses drop the cached entry, open ones update it.
        """
        if status is not None:
            if not await self._store.set_status(self.identity, status, expected, at_step):
                return False
            self._sync_cache(status)

        # Stamped before the write so a slower earlier write cannot land over it
        seq = next_session_seq()
        previous = self.session.state
        self.session.state = new_state
        self.session.payload = payload
        self._record("transition", previous=previous, state=new_state, status=status)

        await self._retrying(
            lambda: update_session(self.db_pool, self.identity, new_state, payload, seq),
            "update_session",
        )
        return True

    def _sync_cache(self, status: ConversationStatus) -> None:
        if status not in OPEN_STATUSES:
            self._cache.invalidate(self.identity)
            return
        entry = self._cache.get(self.identity)
        if entry is not None:
            self._cache.touch(self.identity, entry.conversation_id, entry.current_step, status)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        self.tasks.spawn(coro, f"{self.flow_name}:{name}")

    # Logging

    def log(self, message: str) -> None:
        self.logger.info(f"[{self.flow_name}] {message}")

    def debug(self, message: str) -> None:
        self.logger.debug(f"[{self.flow_name}] {message}")

    def warn(self, message: str) -> None:
        self.logger.warning(f"[{self.flow_name}] {message}")

    def error(self, message: str, exc: Optional[BaseException] = None) -> None:
        if exc is not None:
            detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            message = f"{message}: {detail}"
        self.logger.error(f"[{self.flow_name}] {message}")

    # Timing

    def start_timer(self, name: str) -> None:
        self._timers[name] = time.perf_counter()
        self._last_timer = name

    def stop_timer(self, name: Optional[str] = None, **labels: Any) -> Optional[float]:
        """Stop a timer (the most recent one by default) and log its duration in ms."""
        name = name or self._last_timer
        if name is None or name not in self._timers:
            return None

        elapsed_ms = (time.perf_counter() - self._timers.pop(name)) * 1000
        if name == self._last_timer:
            self._last_timer = None
        suffix = "".join(f", {key}: {value}" for key, value in labels.items())
        self.logger.info(f"[{self.flow_name}] {name} took {elapsed_ms:.1f}ms{suffix}")
        return elapsed_ms

    def _record(self, name: str, **detail: Any) -> None:
        self.actions.append(Action(name=name, detail=detail))
