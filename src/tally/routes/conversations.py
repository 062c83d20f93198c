from typing import Any, Dict, List

from aiosqlitepool import SQLiteConnectionPool
from litestar import Request, delete, get, post, put
from litestar.di import Provide
from litestar.exceptions import NotFoundException, ValidationException
from litestar.status_codes import HTTP_200_OK, HTTP_201_CREATED
from pydantic import BaseModel, Field

from tally.cache.conversation import ConversationCache
from tally.database.progress import ProgressStore
from tally.database.sessions import load_recent_messages
from tally.database.tickets import upsert_ticket
from tally.dependencies import (
    get_cache,
    get_db_pool,
    get_dispatcher,
    get_registry,
    get_store,
    get_tasks,
)
from tally.engine.background import TaskTracker
from tally.engine.dispatch import Dispatcher
from tally.engine.registry import StepRegistry
from tally.errors import UnknownConversationType
from tally.flows.lookup import TICKET_ID
from tally.schemas.conversation import ConversationRecord, StepAnswer, Ticket
from tally.schemas.whatsapp import normalize_identity


TRANSCRIPT_LIMIT = 50


class InitiateConversation(BaseModel):
    identity: str = Field(min_length=1)
    conversation_type: str = "service_satisfaction"
    payload: Dict[str, Any] = {}


class TicketUpdate(BaseModel):
    identity: str = Field(min_length=1)
    status: str = Field(min_length=1)
    summary: str = ""


def record_view(record: ConversationRecord, answers: List[StepAnswer]) -> Dict[str, Any]:
    return {
        "id": record.id,
        "identity": record.identity,
        "conversation_type": record.conversation_type,
        "current_step": record.current_step,
        "total_steps": record.total_steps,
        "allows_final_free_text_step": record.allows_final_free_text_step,
        "status": record.status.value,
        "payload": record.auxiliary_payload,
        "comment": record.comment,
        "answers": [{"step": a.step, "value": a.value} for a in answers],
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
        "warned_at": record.warned_at.isoformat() if record.warned_at else None,
    }


def ticket_view(ticket: Ticket) -> Dict[str, Any]:
    return {
        "id": ticket.id,
        "identity": ticket.identity,
        "status": ticket.status,
        "summary": ticket.summary,
        "updated_at": ticket.updated_at.isoformat() if ticket.updated_at else None,
    }


@post(
    "/conversations",
    status_code=HTTP_201_CREATED,
    dependencies={"dispatcher": Provide(get_dispatcher)},
)
async def initiate_conversation(
    request: Request, dispatcher: Dispatcher, data: InitiateConversation
) -> Dict[str, Any]:
    """Create a conversation and send its invitation."""
    identity = normalize_identity(data.identity)
    if not identity:
        raise ValidationException(f"Identity {data.identity!r} contains no digits")

    try:
        record = await dispatcher.initiate(identity, data.conversation_type, data.payload)
    except UnknownConversationType as e:
        raise ValidationException(str(e)) from e

    request.logger.info(f"Initiated conversation {record.id} ({record.conversation_type})")
    return record_view(record, [])


@get(
    "/conversations/{identity:str}",
    dependencies={"store": Provide(get_store), "db_pool": Provide(get_db_pool)},
)
async def get_conversation(
    identity: str, store: ProgressStore, db_pool: SQLiteConnectionPool
) -> Dict[str, Any]:
    """Latest conversation for an identity with its answers and recent transcript."""
    identity = normalize_identity(identity)
    record = await store.latest(identity)
    if record is None:
        raise NotFoundException(f"No conversation for {identity}")

    view = record_view(record, await store.answers(record.id))
    transcript = await load_recent_messages(db_pool, identity, TRANSCRIPT_LIMIT)
    view["transcript"] = [{"direction": direction, "body": body} for direction, body in transcript]
    return view


@put("/tickets/{ticket_id:str}", dependencies={"db_pool": Provide(get_db_pool)})
async def put_ticket(
    request: Request, ticket_id: str, db_pool: SQLiteConnectionPool, data: TicketUpdate
) -> Dict[str, Any]:
    """Create or update a ticket so its owner can look it up over the channel."""
    ticket_id = ticket_id.strip().upper()
    if not TICKET_ID.fullmatch(ticket_id):
        raise ValidationException(f"Ticket id {ticket_id!r} must look like TKT-XXXXXXXX")
    identity = normalize_identity(data.identity)
    if not identity:
        raise ValidationException(f"Identity {data.identity!r} contains no digits")

    ticket = await upsert_ticket(db_pool, ticket_id, identity, data.status, data.summary)
    request.logger.info(f"Ticket {ticket.id} is now {ticket.status}")
    return ticket_view(ticket)


@get(
    "/admin/cache",
    dependencies={
        "cache": Provide(get_cache),
        "registry": Provide(get_registry),
        "tasks": Provide(get_tasks),
    },
)
async def cache_stats(
    cache: ConversationCache, registry: StepRegistry, tasks: TaskTracker
) -> Dict[str, Any]:
    return {
        "cache": cache.stats(),
        "registry": registry.stats(),
        "background": {"pending": tasks.pending, "failures": tasks.failures},
    }


@delete(
    "/admin/cache/{identity:str}",
    status_code=HTTP_200_OK,
    dependencies={"cache": Provide(get_cache)},
)
async def invalidate_cache(
    request: Request, identity: str, cache: ConversationCache
) -> Dict[str, Any]:
    identity = normalize_identity(identity)
    removed = cache.invalidate(identity)
    request.logger.info(f"Manual cache invalidation, removed: {removed}")
    return {"identity": identity, "removed": removed}
