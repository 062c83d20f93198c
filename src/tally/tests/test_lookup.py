import itertools

import pytest
import pytest_asyncio

from tally.database.sessions import IDLE_STATE, get_session
from tally.database.tickets import list_tickets, upsert_ticket
from tally.engine.advancement import StepAdvancer
from tally.engine.background import TaskTracker
from tally.engine.dispatch import Dispatcher
from tally.engine.registry import StepKind
from tally.flows import messages
from tally.flows.lookup import LOOKUP_AWAITING_TICKET, LookupFlow, parse_ticket_id
from tally.flows.survey import SurveyFlow, default_registry
from tally.schemas.conversation import InboundEvent
from tally.tests.utils import MockLogger, RecordingChannel

IDENTITY = "5215550001"
OTHER = "5215550002"
_message_ids = itertools.count(1)


@pytest_asyncio.fixture
async def dispatcher(db_pool, store, cache):
    logger = MockLogger()
    tasks = TaskTracker(logger)
    dispatcher = Dispatcher(
        default_registry(),
        SurveyFlow(),
        LookupFlow(),
        RecordingChannel(),
        db_pool,
        StepAdvancer(store, cache, logger),
        tasks,
        logger,
    )
    yield dispatcher
    await tasks.drain()


async def send(dispatcher, text="", control_id=None, identity=IDENTITY):
    event = InboundEvent(
        identity=identity,
        message_id=f"wamid.lookup.{next(_message_ids)}",
        text=text,
        control_id=control_id,
    )
    turn = await dispatcher.dispatch(event)
    await dispatcher.tasks.drain()
    return turn


async def state(dispatcher, identity=IDENTITY) -> str:
    return (await get_session(dispatcher.db_pool, identity)).state


def test_parse_ticket_id():
    assert parse_ticket_id("TKT-AB12CD34") == "TKT-AB12CD34"
    assert parse_ticket_id("  tkt-ab12cd34 ") == "TKT-AB12CD34"
    assert parse_ticket_id("ab12cd34") == "TKT-AB12CD34"
    assert parse_ticket_id("what about TKT-ZZ99ZZ99 please") == "TKT-ZZ99ZZ99"
    assert parse_ticket_id("TKT-123") is None
    assert parse_ticket_id("hello") is None


@pytest.mark.asyncio
async def test_list_tickets_newest_first(db_pool):
    await upsert_ticket(db_pool, "TKT-AAAAAAAA", IDENTITY, "Open")
    await upsert_ticket(db_pool, "TKT-BBBBBBBB", IDENTITY, "Scheduled")
    await upsert_ticket(db_pool, "TKT-CCCCCCCC", OTHER, "Open")

    tickets = await list_tickets(db_pool, IDENTITY)

    assert [t.id for t in tickets] == ["TKT-BBBBBBBB", "TKT-AAAAAAAA"]
    assert await list_tickets(db_pool, IDENTITY, limit=1) == tickets[:1]


@pytest.mark.asyncio
async def test_status_lists_tickets_then_shows_detail(dispatcher, db_pool):
    await upsert_ticket(db_pool, "TKT-AB12CD34", IDENTITY, "Scheduled", "Technician visit on Tuesday")

    turn = await send(dispatcher, "Status")
    assert turn.route.kind == StepKind.IDLE
    assert await state(dispatcher) == LOOKUP_AWAITING_TICKET
    listing = dispatcher.channel.texts[-1][1]
    assert listing.startswith(messages.TICKETS_TITLE)
    assert "- TKT-AB12CD34: Scheduled" in listing

    turn = await send(dispatcher, "ab12cd34")
    assert turn.route.kind == StepKind.LOOKUP_TICKET
    assert await state(dispatcher) == IDLE_STATE
    [(_, title, body, choices)] = dispatcher.channel.choices
    assert title == "TKT-AB12CD34"
    assert "Status: Scheduled" in body
    assert "Technician visit on Tuesday" in body
    assert choices == [messages.LOOKUP_AGAIN]


@pytest.mark.asyncio
async def test_lookup_button_starts_lookup(dispatcher, db_pool):
    await upsert_ticket(db_pool, "TKT-AB12CD34", IDENTITY, "Open")

    turn = await send(dispatcher, "See my tickets", messages.LOOKUP_CONTROL)

    assert turn.route.kind == StepKind.LOOKUP_START
    assert await state(dispatcher) == LOOKUP_AWAITING_TICKET


@pytest.mark.asyncio
async def test_no_tickets(dispatcher):
    await send(dispatcher, "tickets")

    assert dispatcher.channel.texts == [(IDENTITY, messages.NO_TICKETS)]
    assert await state(dispatcher) == IDLE_STATE


@pytest.mark.asyncio
async def test_invalid_missing_and_foreign_tickets_keep_waiting(dispatcher, db_pool):
    await upsert_ticket(db_pool, "TKT-AB12CD34", IDENTITY, "Open")
    await upsert_ticket(db_pool, "TKT-FFFFFFFF", OTHER, "Open", "Not for this user")
    await send(dispatcher, "status")

    await send(dispatcher, "the blue one")
    assert dispatcher.channel.texts[-1][1] == messages.INVALID_TICKET

    await send(dispatcher, "TKT-00000000")
    assert dispatcher.channel.texts[-1][1] == messages.TICKET_NOT_FOUND.format(ticket_id="TKT-00000000")

    await send(dispatcher, "TKT-FFFFFFFF")
    assert dispatcher.channel.texts[-1][1] == messages.TICKET_NOT_YOURS.format(ticket_id="TKT-FFFFFFFF")
    assert "Not for this user" not in "".join(text for _, text in dispatcher.channel.texts)
    assert any("does not own" in m for m in dispatcher.logger.messages("warning"))

    assert await state(dispatcher) == LOOKUP_AWAITING_TICKET


@pytest.mark.asyncio
async def test_exit_leaves_lookup(dispatcher, db_pool):
    await upsert_ticket(db_pool, "TKT-AB12CD34", IDENTITY, "Open")
    await send(dispatcher, "status")

    await send(dispatcher, "done")

    assert dispatcher.channel.texts[-1][1] == messages.LOOKUP_DONE
    assert await state(dispatcher) == IDLE_STATE


@pytest.mark.asyncio
async def test_list_word_relists_while_waiting(dispatcher, db_pool):
    await upsert_ticket(db_pool, "TKT-AB12CD34", IDENTITY, "Open")
    await send(dispatcher, "status")

    await send(dispatcher, "list")

    assert len(dispatcher.channel.texts) == 2
    assert dispatcher.channel.texts[-1][1].startswith(messages.TICKETS_TITLE)
    assert await state(dispatcher) == LOOKUP_AWAITING_TICKET
