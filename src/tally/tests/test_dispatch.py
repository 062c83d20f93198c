import itertools
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from tally.database.sessions import IDLE_STATE, get_session, load_recent_messages, update_session
from tally.engine.advancement import StepAdvancer
from tally.engine.background import TaskTracker
from tally.engine.dispatch import Dispatcher
from tally.engine.registry import StepKind
from tally.flows import messages
from tally.flows.lookup import LookupFlow
from tally.flows.survey import (
    SURVEY_AWAITING_COMMENT,
    SURVEY_COMMENT_DECISION,
    SURVEY_INVITATION,
    SURVEY_QUESTION,
    SurveyFlow,
    default_registry,
)
from tally.schemas.conversation import ConversationStatus, InboundEvent
from tally.tests.utils import MockLogger, RecordingChannel

IDENTITY = "5215550001"
_message_ids = itertools.count(1)


@dataclass
class Harness:
    dispatcher: Dispatcher
    channel: RecordingChannel
    tasks: TaskTracker
    logger: MockLogger
    store: object
    cache: object

    async def send(self, text: str = "", control_id=None):
        event = InboundEvent(
            identity=IDENTITY,
            message_id=f"wamid.{next(_message_ids)}",
            text=text,
            control_id=control_id,
        )
        turn = await self.dispatcher.dispatch(event)
        await self.tasks.drain()
        return turn

    async def state(self) -> str:
        return (await get_session(self.dispatcher.db_pool, IDENTITY)).state


@pytest_asyncio.fixture
async def harness(db_pool, store, cache):
    logger = MockLogger()
    channel = RecordingChannel()
    tasks = TaskTracker(logger)
    advancer = StepAdvancer(store, cache, logger)
    dispatcher = Dispatcher(
        default_registry(), SurveyFlow(), LookupFlow(), channel, db_pool, advancer, tasks, logger
    )
    yield Harness(dispatcher, channel, tasks, logger, store, cache)
    await tasks.drain()


@pytest.mark.asyncio
async def test_full_survey_with_comment(harness):
    record = await harness.dispatcher.initiate(IDENTITY, "service_satisfaction", {"ticket": "T-9"})
    assert await harness.state() == SURVEY_INVITATION
    assert harness.channel.choice_ids()[-1] == ["btn_survey_accept", "btn_survey_decline"]

    await harness.send("Start survey", "btn_survey_accept")
    assert await harness.state() == SURVEY_QUESTION
    assert harness.channel.choice_ids()[-1] == ["btn_rating_1_1", "btn_rating_1_3", "btn_rating_1_5"]

    for step in range(1, 6):
        await harness.send("5 - Excellent", f"btn_rating_{step}_5")
        assert harness.channel.choice_ids()[-1][0] == f"btn_rating_{step + 1}_1"

    # Final scored step answered as free text
    await harness.send("4")
    assert await harness.state() == SURVEY_COMMENT_DECISION
    assert harness.channel.choice_ids()[-1] == ["btn_comment_yes", "btn_comment_no"]

    await harness.send("Yes, comment", "btn_comment_yes")
    assert await harness.state() == SURVEY_AWAITING_COMMENT

    await harness.send("The technician was great")
    assert await harness.state() == IDLE_STATE
    assert harness.channel.texts[-1] == (IDENTITY, messages.THANK_YOU)

    latest = await harness.store.latest(IDENTITY)
    assert latest.id == record.id
    assert latest.status == ConversationStatus.COMPLETED
    assert latest.comment == "The technician was great"
    assert [a.value for a in await harness.store.answers(record.id)] == [5, 5, 5, 5, 5, 4]
    assert harness.cache.get(IDENTITY) is None


@pytest.mark.asyncio
async def test_double_tap_on_rating_is_absorbed(harness):
    await harness.dispatcher.initiate(IDENTITY, "service_satisfaction")
    await harness.send(control_id="btn_survey_accept")
    await harness.send(control_id="btn_rating_1_4")

    sent_before = harness.channel.sent_count
    await harness.send(control_id="btn_rating_1_4")
    await harness.send(control_id="btn_rating_1_2")

    assert harness.channel.sent_count == sent_before
    assert (await harness.store.read_progress(IDENTITY)).current_step == 1


@pytest.mark.asyncio
async def test_duplicate_accept_sends_one_question(harness):
    await harness.dispatcher.initiate(IDENTITY, "quick_feedback")
    await harness.send(control_id="btn_survey_accept")
    sent = harness.channel.sent_count

    await harness.send(control_id="btn_survey_accept")

    assert harness.channel.sent_count == sent


@pytest.mark.asyncio
async def test_decline_abandons_and_returns_to_idle(harness):
    await harness.dispatcher.initiate(IDENTITY, "service_satisfaction")

    await harness.send("no")

    assert await harness.state() == IDLE_STATE
    assert harness.channel.texts[-1] == (IDENTITY, messages.DECLINED)
    latest = await harness.store.latest(IDENTITY)
    assert latest.status == ConversationStatus.ABANDONED
    assert harness.cache.get(IDENTITY) is None


@pytest.mark.asyncio
async def test_invalid_rating_reprompts_without_progress(harness):
    await harness.dispatcher.initiate(IDENTITY, "quick_feedback")
    await harness.send(control_id="btn_survey_accept")

    await harness.send("eleven")

    assert "number from 1 to 5" in harness.channel.texts[-1][1]
    assert (await harness.store.read_progress(IDENTITY)).current_step == 0
    assert await harness.state() == SURVEY_QUESTION


@pytest.mark.asyncio
async def test_quick_feedback_completes_without_comment(harness):
    await harness.dispatcher.initiate(IDENTITY, "quick_feedback")
    await harness.send(control_id="btn_survey_accept")
    for step in range(1, 4):
        await harness.send(control_id=f"btn_rating_{step}_3")

    assert await harness.state() == IDLE_STATE
    assert harness.channel.texts[-1] == (IDENTITY, "Thanks, your feedback has been recorded.")
    assert (await harness.store.latest(IDENTITY)).status == ConversationStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_state_replies_not_understood_without_state_change(harness, db_pool):
    await update_session(db_pool, IDENTITY, "retired_flow_state", "opaque")

    turn = await harness.send("hello")

    assert turn.route.kind == StepKind.NOT_UNDERSTOOD
    assert not turn.failed
    assert harness.channel.texts == [(IDENTITY, messages.NOT_UNDERSTOOD)]
    session = await get_session(db_pool, IDENTITY)
    assert (session.state, session.payload) == ("retired_flow_state", "opaque")


@pytest.mark.asyncio
async def test_idle_text_gets_help(harness):
    turn = await harness.send("hi")
    assert turn.route.kind == StepKind.IDLE
    assert harness.channel.texts == [(IDENTITY, messages.HELP)]


@pytest.mark.asyncio
async def test_crashing_handler_apologizes_without_state_change(harness, monkeypatch):
    await harness.dispatcher.initiate(IDENTITY, "service_satisfaction")
    await harness.send(control_id="btn_survey_accept")

    async def crash(*args, **kwargs):
        raise RuntimeError("handler bug")

    monkeypatch.setattr(harness.dispatcher.survey, "handle_rating", crash)
    await harness.send("5")

    assert harness.channel.texts[-1] == (IDENTITY, messages.APOLOGY)
    assert any("handler bug" in m for m in harness.logger.messages("error"))
    assert (await harness.store.read_progress(IDENTITY)).current_step == 0
    assert await harness.state() == SURVEY_QUESTION


@pytest.mark.asyncio
async def test_failed_apology_is_logged_not_raised(harness):
    harness.channel.fail = True

    await harness.send("hi")

    errors = harness.logger.messages("error")
    assert any("Failed to send apology" in m for m in errors)


@pytest.mark.asyncio
async def test_rating_without_conversation(harness):
    await harness.send(control_id="btn_rating_2_5")
    assert harness.channel.texts[-1] == (IDENTITY, messages.NO_ACTIVE_SURVEY)


@pytest.mark.asyncio
async def test_rating_while_awaiting_comment_reoffers_comment(harness):
    await harness.dispatcher.initiate(IDENTITY, "service_satisfaction")
    await harness.send(control_id="btn_survey_accept")
    for step in range(1, 7):
        await harness.send(control_id=f"btn_rating_{step}_5")
    assert await harness.state() == SURVEY_COMMENT_DECISION

    # A bare rating id resolves to step 7, past the last scored step
    await harness.send(control_id="btn_rating_5")

    assert harness.channel.choice_ids()[-1] == ["btn_comment_yes", "btn_comment_no"]
    assert (await harness.store.read_progress(IDENTITY)).current_step == 6


@pytest.mark.asyncio
async def test_inbound_messages_are_logged(harness, db_pool):
    await harness.send("hi")

    transcript = await load_recent_messages(db_pool, IDENTITY, 10)
    assert ("in", "hi") in transcript
    assert ("out", messages.HELP) in transcript


@pytest.mark.asyncio
async def test_crashing_handler_marks_turn_failed(harness, monkeypatch):
    async def crash(*args, **kwargs):
        raise RuntimeError("handler bug")

    monkeypatch.setattr(harness.dispatcher.lookup, "start", crash)
    turn = await harness.send("status")

    assert turn.failed
    assert turn.route.kind == StepKind.IDLE
    assert isinstance(turn.error, RuntimeError)


@pytest.mark.asyncio
async def test_unreadable_session_apologizes_and_fails_turn(harness, monkeypatch):
    async def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr("tally.engine.dispatch.get_session", broken)
    turn = await harness.send("hi")

    assert turn.failed
    assert turn.route is None
    assert harness.channel.texts == [(IDENTITY, messages.APOLOGY)]
    assert any("Could not load session" in m for m in harness.logger.messages("error"))


@pytest.mark.asyncio
async def test_next_state_is_stored_before_the_turn_returns(harness):
    await harness.dispatcher.initiate(IDENTITY, "quick_feedback")
    await harness.send(control_id="btn_survey_accept")
    for step in range(1, 3):
        await harness.send(control_id=f"btn_rating_{step}_4")

    event = InboundEvent(identity=IDENTITY, message_id="wamid.last", text="", control_id="btn_rating_3_4")
    await harness.dispatcher.dispatch(event)

    # No drain: the session row already holds the state the reply announced
    assert await harness.state() == IDLE_STATE
    await harness.tasks.drain()


@pytest.mark.asyncio
async def test_inbound_message_clears_idle_warning(harness, store):
    await harness.dispatcher.initiate(IDENTITY, "service_satisfaction")
    later = datetime.now(timezone.utc) + timedelta(hours=1)
    assert await store.warn_idle(later, later) == [IDENTITY]

    await harness.send("what was this?")

    assert (await store.latest(IDENTITY)).warned_at is None
