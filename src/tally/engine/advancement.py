"""Exactly-once step advancement.

Per answer event:

1. Parse and range-check the answer value. Invalid values are rejected before
   any store access.
2. Load the cached entry and derive the step being answered. Steps outside
   ``[1, total_steps]`` are rejected without touching the store.
3. Verify: read the authoritative record. If it is not ACTIVE at
   ``step - 1`` for the same conversation, the event is stale or a duplicate
   and is dropped.
4. Commit: conditional advance from ``step - 1``. A failed commit means a
   concurrent delivery won between verify and commit; it is dropped the same
   way.
5. Only after a successful commit is the cache touched (or invalidated when
   the commit completed the conversation).
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from litestar.types.protocols import Logger

from tally.cache.conversation import ConversationCache
from tally.database.progress import ProgressStore
from tally.retry import retry_with_backoff
from tally.schemas.conversation import CacheEntry, ConversationStatus

RATING_CONTROL_PREFIX = "btn_rating_"

RATING_WORDS = {
    "terrible": 1,
    "awful": 1,
    "very bad": 1,
    "bad": 2,
    "poor": 2,
    "ok": 3,
    "okay": 3,
    "average": 3,
    "regular": 3,
    "good": 4,
    "great": 5,
    "very good": 5,
    "excellent": 5,
    "perfect": 5,
}

_RATING_CONTROL = re.compile(re.escape(RATING_CONTROL_PREFIX) + r"(?:\d+_)?(\d+)")


def parse_rating(answer: Union[str, int], minimum: int = 1, maximum: int = 5) -> Optional[int]:
    """Extract a rating from a control id, a number, or a rating word."""
    if isinstance(answer, int) and not isinstance(answer, bool):
        value: Optional[int] = answer
    else:
        text = str(answer).strip().lower()
        control = _RATING_CONTROL.fullmatch(text)
        if control:
            value = int(control.group(1))
        elif text.isdigit():
            value = int(text)
        else:
            value = RATING_WORDS.get(text)

    if value is None or value < minimum or value > maximum:
        return None
    return value


class AdvanceOutcome(Enum):
    ADVANCED = "advanced"
    VALIDATION_FAILED = "validation_failed"
    OUT_OF_RANGE = "out_of_range"
    NO_ACTIVE_CONVERSATION = "no_active_conversation"
    STALE_OR_DUPLICATE = "stale_or_duplicate"
    LOST_RACE = "lost_race"

    @property
    def silent(self) -> bool:
        """Outcomes absorbed without any user-facing reply."""
        return self in (AdvanceOutcome.STALE_OR_DUPLICATE, AdvanceOutcome.LOST_RACE)


@dataclass(frozen=True)
class AdvanceResult:
    outcome: AdvanceOutcome
    step: Optional[int] = None
    value: Optional[int] = None
    next_step: Optional[int] = None  # current_step after the commit
    status: Optional[ConversationStatus] = None
    entry: Optional[CacheEntry] = None


class StepAdvancer:
    def __init__(
        self,
        store: ProgressStore,
        cache: ConversationCache,
        logger: Logger,
        rating_min: int = 1,
        rating_max: int = 5,
        max_attempts: int = 3,
    ):
        self.store = store
        self.cache = cache
        self.logger = logger
        self.rating_min = rating_min
        self.rating_max = rating_max
        self.max_attempts = max_attempts

    async def advance(
        self,
        identity: str,
        answer: Union[str, int],
        step: Optional[int] = None,
    ) -> AdvanceResult:
        """Apply one answer event.

        Args:
            identity: Conversation identity
            answer: Raw answer (free text, control id, or already-parsed int)
            step: Step being answered; defaults to the cached current step + 1
        """
        value = parse_rating(answer, self.rating_min, self.rating_max)
        if value is None:
            self.logger.info(f"Invalid answer {answer!r} from {identity}")
            return AdvanceResult(outcome=AdvanceOutcome.VALIDATION_FAILED)

        entry = await self.cache.load(identity)
        if entry is None:
            return AdvanceResult(outcome=AdvanceOutcome.NO_ACTIVE_CONVERSATION, value=value)

        if step is None:
            step = entry.current_step + 1

        if step < 1 or step > entry.total_steps:
            self.logger.info(
                f"Answer for step {step} of conversation {entry.conversation_id} rejected "
                f"(total_steps: {entry.total_steps})"
            )
            return AdvanceResult(
                outcome=AdvanceOutcome.OUT_OF_RANGE, step=step, value=value, entry=entry
            )

        # Verify against the store before any side effect
        record = await retry_with_backoff(
            lambda: self.store.read_progress(identity),
            "read_progress",
            self.logger,
            max_attempts=self.max_attempts,
        )
        if (
            record is None
            or record.id != entry.conversation_id
            or record.status != ConversationStatus.ACTIVE
            or record.current_step != step - 1
        ):
            self.logger.debug(
                f"Stale or duplicate answer for step {step} of conversation {entry.conversation_id}: "
                f"store has step {record.current_step if record else None}, "
                f"status {record.status.value if record else None}"
            )
            if record is not None:
                self.cache.catch_up(identity, record)
            return AdvanceResult(
                outcome=AdvanceOutcome.STALE_OR_DUPLICATE, step=step, value=value, entry=entry
            )

        # Never retried: a repeat is a new verify-then-write cycle, not a resubmission
        commit = await self.store.conditional_advance(
            identity, step - 1, value, conversation_id=entry.conversation_id
        )
        if not commit.success or commit.new_step is None:
            self.logger.debug(
                f"Lost commit race for step {step} of conversation {entry.conversation_id}"
            )
            return AdvanceResult(
                outcome=AdvanceOutcome.LOST_RACE, step=step, value=value, entry=entry
            )

        if commit.status == ConversationStatus.COMPLETED:
            self.cache.invalidate(identity)
        else:
            self.cache.touch(identity, entry.conversation_id, commit.new_step, commit.status)

        self.logger.info(
            f"Answer {value} saved for step {step} of conversation {entry.conversation_id}, "
            f"status: {commit.status.value if commit.status else None}"
        )
        return AdvanceResult(
            outcome=AdvanceOutcome.ADVANCED,
            step=step,
            value=value,
            next_step=commit.new_step,
            status=commit.status,
            entry=entry,
        )
