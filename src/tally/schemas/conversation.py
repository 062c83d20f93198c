from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ConversationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    AWAITING_INPUT = "AWAITING_INPUT"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


OPEN_STATUSES = (ConversationStatus.ACTIVE, ConversationStatus.AWAITING_INPUT)


@dataclass(frozen=True)
class StepDefinition:
    """One scored step of a conversation type."""

    index: int  # 1-based
    prompt_text: str


@dataclass(frozen=True)
class ConversationType:
    code: str
    name: str
    total_steps: int
    allows_final_free_text_step: bool
    thank_you_message: Optional[str] = None


@dataclass
class ConversationRecord:
    """Durable progress of one conversation instance."""

    id: int
    identity: str
    conversation_type: str
    current_step: int
    total_steps: int
    allows_final_free_text_step: bool
    status: ConversationStatus
    auxiliary_payload: Dict[str, Any] = field(default_factory=dict)
    comment: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    warned_at: Optional[datetime] = None  # idle warning sent, cleared by any activity

    @property
    def awaiting_comment(self) -> bool:
        return (
            self.status == ConversationStatus.AWAITING_INPUT
            and self.current_step >= self.total_steps
        )


@dataclass(frozen=True)
class AdvanceCommit:
    """Result of a conditional advance against the progress store."""

    success: bool
    new_step: Optional[int] = None
    status: Optional[ConversationStatus] = None


@dataclass(frozen=True)
class CacheEntry:
    """Denormalized snapshot of a conversation record plus its step prompts.

    Only ``cache.conversation.ConversationCache`` creates or replaces these.
    """

    conversation_id: int
    identity: str
    conversation_type: str
    current_step: int
    total_steps: int
    allows_final_free_text_step: bool
    status: ConversationStatus
    steps: Tuple[StepDefinition, ...] = ()
    thank_you_message: Optional[str] = None

    def prompt_for(self, step: int) -> Optional[str]:
        for definition in self.steps:
            if definition.index == step:
                return definition.prompt_text
        return None


@dataclass(frozen=True)
class StepAnswer:
    step: int
    value: int


@dataclass
class Session:
    """Persisted dispatch state for an identity."""

    identity: str
    state: str
    payload: Optional[str] = None  # opaque serialized blob, passed through untouched
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class InboundEvent:
    """A single inbound channel message, reduced to what dispatch needs."""

    identity: str
    message_id: str
    text: str = ""
    control_id: Optional[str] = None


@dataclass(frozen=True)
class Choice:
    """One option of an interactive prompt; ``id`` comes back as the control id."""

    id: str
    title: str


@dataclass(frozen=True)
class Ticket:
    """A service ticket as reported by the field-service system; read by the lookup flow."""

    id: str  # TKT-XXXXXXXX
    identity: str
    status: str
    summary: str = ""
    updated_at: Optional[datetime] = None
