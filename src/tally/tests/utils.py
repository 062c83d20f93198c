"""Test utilities and shared fakes."""

import os
from typing import List, Sequence, Tuple

from aiosqlitepool import SQLiteConnectionPool

from tally.database.manager import create_db_pool
from tally.schemas.conversation import Choice


class MockLogger:
    """Logger implementing the Litestar Logger protocol that keeps what it was given."""

    def __init__(self):
        self.records: List[Tuple[str, str]] = []

    def _log(self, level: str, msg: object = "", *args, **kwargs) -> None:
        text = str(msg) % args if args else str(msg)
        self.records.append((level, text))

    def debug(self, *args, **kwargs): self._log("debug", *args)
    def info(self, *args, **kwargs): self._log("info", *args)
    def warning(self, *args, **kwargs): self._log("warning", *args)
    def warn(self, *args, **kwargs): self._log("warning", *args)
    def error(self, *args, **kwargs): self._log("error", *args)
    def exception(self, *args, **kwargs): self._log("error", *args)
    def critical(self, *args, **kwargs): self._log("critical", *args)
    def fatal(self, *args, **kwargs): self._log("critical", *args)
    def setLevel(self, *args, **kwargs): pass

    def messages(self, level: str) -> List[str]:
        return [text for lvl, text in self.records if lvl == level]


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel:
    """Channel double that records outbound messages."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.texts: List[Tuple[str, str]] = []
        self.choices: List[Tuple[str, str, str, List[Choice]]] = []

    async def send_text(self, identity: str, text: str) -> None:
        if self.fail:
            raise RuntimeError("channel down")
        self.texts.append((identity, text))

    async def send_choice(self, identity: str, title: str, body: str, choices: Sequence[Choice]) -> None:
        if self.fail:
            raise RuntimeError("channel down")
        self.choices.append((identity, title, body, list(choices)))

    @property
    def sent_count(self) -> int:
        return len(self.texts) + len(self.choices)

    def choice_ids(self) -> List[List[str]]:
        return [[choice.id for choice in c[3]] for c in self.choices]


async def temp_db_pool(directory: str) -> SQLiteConnectionPool:
    """File-backed pool so concurrent connections share one database."""
    return await create_db_pool(os.path.join(str(directory), "tally-test.db"), MockLogger())
