import sqlite3

import pytest

from tally.errors import CollaboratorUnavailable
from tally.retry import is_transient_error, retry_with_backoff
from tally.tests.utils import MockLogger


def test_is_transient_error():
    assert is_transient_error(sqlite3.OperationalError("database is locked"))
    assert is_transient_error(CollaboratorUnavailable("whatsapp", "send_text"))
    assert not is_transient_error(sqlite3.OperationalError("no such table: sessions"))
    assert not is_transient_error(ValueError("bad input"))


@pytest.mark.asyncio
async def test_retries_transient_failures_until_success():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    logger = MockLogger()
    result = await retry_with_backoff(flaky, "read_progress", logger, max_attempts=3, base_delay=0.001)

    assert result == "ok"
    assert len(calls) == 3
    assert len(logger.messages("info")) == 2


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    calls = []

    async def always_locked():
        calls.append(1)
        raise sqlite3.OperationalError("database is locked")

    logger = MockLogger()
    with pytest.raises(sqlite3.OperationalError):
        await retry_with_backoff(always_locked, "update_session", logger, max_attempts=2, base_delay=0.001)

    assert len(calls) == 2
    assert any("failed after 2 attempts" in m for m in logger.messages("warning"))


@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried():
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError("bad row")

    with pytest.raises(ValueError):
        await retry_with_backoff(broken, "read_progress", base_delay=0.001)

    assert len(calls) == 1
