"""Exceptions raised across collaborator boundaries.

Expected protocol outcomes (invalid answer, stale or duplicate delivery, a lost
commit race) are not exceptions; see ``engine.advancement.AdvanceOutcome``.
"""

from typing import Optional


class TallyError(Exception):
    """Base class for all tally errors."""


class CollaboratorUnavailable(TallyError):
    """A store or channel call failed or timed out."""

    def __init__(self, collaborator: str, operation: str, cause: Optional[BaseException] = None):
        self.collaborator = collaborator
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{collaborator} unavailable during {operation}{detail}")


class ChannelLimitExceeded(TallyError):
    """An interactive prompt asked for more options than the channel renders."""

    def __init__(self, requested: int, limit: int):
        self.requested = requested
        self.limit = limit
        super().__init__(f"{requested} choices requested, channel allows at most {limit}")


class UnknownConversationType(TallyError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Unknown conversation type: {code}")
