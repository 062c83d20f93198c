import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import BaseModel

from tally.database.sessions import IDLE_STATE, get_session, load_recent_messages, update_session
from tally.flows import messages
from tally.jobs.maintenance import ExpiryInput, make_expiry_job
from tally.jobs.runner import JobRunner, scheduled_job
from tally.schemas.conversation import ConversationStatus
from tally.tests.utils import MockLogger, RecordingChannel


class CounterInput(BaseModel):
    value: int


@pytest.mark.asyncio
async def test_job_runner_happy_path(db_pool):
    results = []

    @scheduled_job("increment", 1.0)
    async def increment_job(job_id: str, schedule: str, input: CounterInput) -> CounterInput:
        new_value = input.value + 1
        results.append(new_value)
        if new_value >= 3:
            return None  # Terminate the job
        return CounterInput(value=new_value)

    runner = JobRunner(
        jobs=[increment_job],
        period=timedelta(milliseconds=100),
        db_pool=db_pool,
        logger=MockLogger(),
    )

    async def run_full_test():
        async with runner:
            await runner.submit(increment_job, CounterInput(value=0), "* * * * * *")
            await asyncio.sleep(3.2)

        assert results == [1, 2, 3], f"Expected [1, 2, 3] but got {results}"

    try:
        await asyncio.wait_for(run_full_test(), timeout=5.0)
    except asyncio.TimeoutError:
        pytest.fail("Test timed out - likely deadlock during JobRunner cleanup")


def test_scheduled_job_requires_named_parameters():
    with pytest.raises(ValueError, match="exactly 3 parameters"):

        @scheduled_job("bad", 1.0)
        async def bad_job(job_id: str, input: CounterInput) -> None:
            return None


@pytest.mark.asyncio
async def test_ensure_scheduled_submits_once(db_pool):
    @scheduled_job("noop", 2.0)
    async def noop_job(job_id: str, schedule: str, input: CounterInput) -> None:
        return None

    runner = JobRunner([noop_job], timedelta(hours=1), db_pool, MockLogger())
    async with runner:
        first = await runner.ensure_scheduled(noop_job, CounterInput(value=0), "0 0 * * * *")
        second = await runner.ensure_scheduled(noop_job, CounterInput(value=0), "0 0 * * * *")

    assert (first, second) == (True, False)
    assert noop_job.function_id == "noop-v2.0"


IDENTITY = "5215550001"
SCHEDULE = "0 0 * * * *"


class ShiftedClock:
    """Wall clock moved forward by whole hours."""

    def __init__(self):
        self.start = datetime.now(timezone.utc)
        self.hours = 0.0

    def __call__(self) -> datetime:
        return self.start + timedelta(hours=self.hours)


def expiry_input(**counters) -> ExpiryInput:
    return ExpiryInput(idle_hours=72, warning_hours=48, **counters)


@pytest.mark.asyncio
async def test_expiry_job_warns_then_abandons(db_pool, store, cache):
    record = await store.create_conversation(IDENTITY, "service_satisfaction")
    await cache.prime(record)
    await update_session(db_pool, IDENTITY, "survey_question", "{}")
    channel = RecordingChannel()
    clock = ShiftedClock()
    job = make_expiry_job(store, cache, channel, db_pool, MockLogger(), clock=clock)

    clock.hours = 49
    warned = await job(job_id="1", schedule=SCHEDULE, input=expiry_input())
    assert warned == expiry_input(runs=1, warned_total=1)
    assert channel.texts == [(IDENTITY, messages.STILL_THERE.format(hours=24))]
    assert (await store.latest(IDENTITY)).status == ConversationStatus.AWAITING_INPUT

    # A second run inside the notice window neither warns again nor expires
    clock.hours = 60
    again = await job(job_id="1", schedule=SCHEDULE, input=warned)
    assert (again.warned_total, again.expired_total) == (1, 0)
    assert len(channel.texts) == 1

    clock.hours = 74
    expired = await job(job_id="1", schedule=SCHEDULE, input=again)
    assert expired.expired_total == 1
    assert channel.texts[-1] == (IDENTITY, messages.EXPIRED)
    assert (await store.latest(IDENTITY)).status == ConversationStatus.ABANDONED
    assert cache.get(IDENTITY) is None
    assert (await get_session(db_pool, IDENTITY)).state == IDLE_STATE
    assert ("out", messages.EXPIRED) in await load_recent_messages(db_pool, IDENTITY, 10)


@pytest.mark.asyncio
async def test_reply_after_warning_keeps_conversation_open(db_pool, store, cache):
    await store.create_conversation(IDENTITY, "service_satisfaction")
    channel = RecordingChannel()
    clock = ShiftedClock()
    job = make_expiry_job(store, cache, channel, db_pool, MockLogger(), clock=clock)

    clock.hours = 49
    await job(job_id="1", schedule=SCHEDULE, input=expiry_input())
    assert await store.clear_warning(IDENTITY)

    clock.hours = 74
    result = await job(job_id="1", schedule=SCHEDULE, input=expiry_input())

    assert result.expired_total == 0
    assert (await store.latest(IDENTITY)).status == ConversationStatus.AWAITING_INPUT
    assert messages.EXPIRED not in [text for _, text in channel.texts]


@pytest.mark.asyncio
async def test_expiry_job_leaves_recent_conversations(db_pool, store, cache):
    await store.create_conversation(IDENTITY, "service_satisfaction")
    channel = RecordingChannel()

    job = make_expiry_job(store, cache, channel, db_pool, MockLogger())
    result = await job(job_id="1", schedule=SCHEDULE, input=expiry_input())

    assert (result.warned_total, result.expired_total) == (0, 0)
    assert channel.texts == []
    assert (await store.latest(IDENTITY)).status == ConversationStatus.AWAITING_INPUT


@pytest.mark.asyncio
async def test_failed_notice_is_logged_and_expiry_still_counts(db_pool, store, cache):
    await store.create_conversation(IDENTITY, "quick_feedback")
    logger = MockLogger()
    clock = ShiftedClock()
    job = make_expiry_job(store, cache, RecordingChannel(fail=True), db_pool, logger, clock=clock)

    clock.hours = 49
    await job(job_id="1", schedule=SCHEDULE, input=expiry_input())
    clock.hours = 74
    result = await job(job_id="1", schedule=SCHEDULE, input=expiry_input(warned_total=1))

    assert result.expired_total == 1
    assert any("Expiry message" in m for m in logger.messages("error"))
