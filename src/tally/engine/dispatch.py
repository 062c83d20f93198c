"""Inbound event dispatch.

A turn loads the session, resolves a route through the StepRegistry and runs
exactly one handler, selected by a single match over ``StepKind``. Anything
that fails inside a turn, the session read included, stops at this boundary:
it is logged with its traceback, the user gets a generic apology and the
returned Turn is marked failed so the caller can let a redelivery through.
The only durable mutations a handler makes are conditional store updates, so a
crash never leaves a half-applied step.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiosqlitepool import SQLiteConnectionPool
from litestar.types.protocols import Logger

from tally.clients.whatsapp import Channel
from tally.database.sessions import IDLE_STATE, get_session, save_message
from tally.engine.advancement import StepAdvancer
from tally.engine.background import TaskTracker
from tally.engine.context import ConversationContext, RetryPolicy
from tally.engine.registry import Route, StepKind, StepRegistry
from tally.flows import messages
from tally.flows.lookup import LookupFlow
from tally.flows.survey import SurveyFlow
from tally.logging_middleware import identity_contextvar
from tally.retry import retry_with_backoff
from tally.schemas.conversation import ConversationRecord, InboundEvent, Session


@dataclass(frozen=True)
class Turn:
    """Outcome of one dispatched event; ``route`` is None when the session could not be read."""

    route: Optional[Route]
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class Dispatcher:
    def __init__(
        self,
        registry: StepRegistry,
        survey: SurveyFlow,
        lookup: LookupFlow,
        channel: Channel,
        db_pool: SQLiteConnectionPool,
        advancer: StepAdvancer,
        tasks: TaskTracker,
        logger: Logger,
        retry: RetryPolicy = RetryPolicy(),
    ):
        self.registry = registry
        self.survey = survey
        self.lookup = lookup
        self.channel = channel
        self.db_pool = db_pool
        self.advancer = advancer
        self.tasks = tasks
        self.logger = logger
        self.retry = retry

    async def _load_session(self, identity: str) -> Session:
        return await retry_with_backoff(
            lambda: get_session(self.db_pool, identity),
            "get_session",
            self.logger,
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay,
            max_delay=self.retry.max_delay,
        )

    def _context(self, identity: str, session: Session, flow_name: Optional[str]) -> ConversationContext:
        return ConversationContext(
            identity=identity,
            session=session,
            channel=self.channel,
            db_pool=self.db_pool,
            advancer=self.advancer,
            tasks=self.tasks,
            logger=self.logger,
            flow_name=flow_name or "general",
            retry=self.retry,
        )

    async def dispatch(self, event: InboundEvent, session: Optional[Session] = None) -> Turn:
        """Handle one inbound event; failures are apologized for and reported, never raised."""
        identity_contextvar.set(event.identity)
        self.tasks.spawn(
            save_message(self.db_pool, event.identity, "in", event.control_id or event.text),
            "save_message",
        )
        # Any inbound message counts as activity for the idle-expiry job
        self.tasks.spawn(self.advancer.store.clear_warning(event.identity), "clear_warning")

        try:
            if session is None:
                session = await self._load_session(event.identity)
        except Exception as e:
            ctx = self._context(event.identity, Session(identity=event.identity, state=IDLE_STATE), None)
            ctx.error("Could not load session", e)
            await self._apologize(ctx)
            return Turn(route=None, error=e)

        route = self.registry.resolve(session.state, event.control_id)
        ctx = self._context(event.identity, session, route.flow)
        if route.kind == StepKind.NOT_UNDERSTOOD:
            ctx.warn(f"No route for state {session.state!r}, control {event.control_id!r}")

        ctx.start_timer("turn")
        try:
            await self._run(ctx, route, event)
        except Exception as e:
            ctx.error(f"Handler {route.kind.value} failed in state {session.state!r}", e)
            await self._apologize(ctx)
            return Turn(route=route, error=e)
        finally:
            ctx.stop_timer("turn", kind=route.kind.value, actions=len(ctx.actions))

        return Turn(route=route)

    async def _run(self, ctx: ConversationContext, route: Route, event: InboundEvent) -> None:
        match route.kind:
            case StepKind.IDLE:
                if self.lookup.wants_lookup(event):
                    await self.lookup.start(ctx)
                else:
                    await ctx.reply(messages.HELP)
            case StepKind.INVITATION:
                await self.survey.handle_invitation(ctx, event)
            case StepKind.ACCEPT:
                await self.survey.accept(ctx)
            case StepKind.DECLINE:
                await self.survey.decline(ctx)
            case StepKind.RATING:
                await self.survey.handle_rating(ctx, event, route.param, route.step)
            case StepKind.COMMENT_DECISION:
                await self.survey.handle_comment_decision(ctx, event)
            case StepKind.COMMENT_YES:
                await self.survey.comment_yes(ctx)
            case StepKind.COMMENT_NO:
                await self.survey.comment_no(ctx)
            case StepKind.COMMENT_TEXT:
                await self.survey.handle_comment(ctx, event)
            case StepKind.LOOKUP_START:
                await self.lookup.start(ctx)
            case StepKind.LOOKUP_TICKET:
                await self.lookup.handle_ticket(ctx, event)
            case StepKind.NOT_UNDERSTOOD:
                await ctx.reply(messages.NOT_UNDERSTOOD)

    async def _apologize(self, ctx: ConversationContext) -> None:
        try:
            await ctx.reply(messages.APOLOGY)
        except Exception as e:
            ctx.error("Failed to send apology", e)

    async def initiate(
        self,
        identity: str,
        conversation_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ConversationRecord:
        """Start a system-initiated conversation for ``identity``.

        Unlike dispatch(), failures propagate to the caller.
        """
        identity_contextvar.set(identity)
        session = await self._load_session(identity)
        ctx = self._context(identity, session, "survey")
        ctx.start_timer("initiate")
        try:
            return await self.survey.start(ctx, conversation_type, payload)
        finally:
            ctx.stop_timer("initiate", conversation_type=conversation_type)
