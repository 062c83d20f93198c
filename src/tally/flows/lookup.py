"""Ticket status lookup.

From the idle state a user sends *status* (or taps the tickets button) and
gets their most recent tickets; the next message names one of them and gets
its detail. Lookups only read, so a redelivered message just repeats the
answer.
"""

import re
from typing import Optional

from tally.database.sessions import IDLE_STATE
from tally.engine.context import ConversationContext
from tally.engine.registry import Control, FlowDefinition, StepKind
from tally.flows import messages
from tally.schemas.conversation import InboundEvent

LOOKUP_AWAITING_TICKET = "lookup_awaiting_ticket"

LOOKUP_FLOW = FlowDefinition(
    name="lookup",
    states=(LOOKUP_AWAITING_TICKET,),
    state_kinds={LOOKUP_AWAITING_TICKET: StepKind.LOOKUP_TICKET},
    controls={messages.LOOKUP_CONTROL: Control(StepKind.LOOKUP_START)},
)

TICKET_ID = re.compile(r"TKT-[A-Z0-9]{8}")
_BARE_TICKET_ID = re.compile(r"[A-Z0-9]{8}")
MAX_LISTED = 5


def parse_ticket_id(text: str) -> Optional[str]:
    """Find a ticket id in free text; a bare eight-character code gets the ``TKT-`` prefix."""
    candidate = text.strip().upper()
    if _BARE_TICKET_ID.fullmatch(candidate):
        return f"TKT-{candidate}"
    match = TICKET_ID.search(candidate)
    return match.group(0) if match else None


def _normalize(text: str) -> str:
    return text.strip().lower()


class LookupFlow:
    def wants_lookup(self, event: InboundEvent) -> bool:
        return _normalize(event.text) in messages.LOOKUP_WORDS

    async def start(self, ctx: ConversationContext) -> None:
        tickets = await ctx.tickets(MAX_LISTED)
        if not tickets:
            if ctx.state != IDLE_STATE:
                await ctx.transition(IDLE_STATE)
            await ctx.reply(messages.NO_TICKETS)
            return

        if ctx.state != LOOKUP_AWAITING_TICKET:
            await ctx.transition(LOOKUP_AWAITING_TICKET)
        lines = [messages.TICKETS_TITLE, *(messages.ticket_line(t) for t in tickets)]
        await ctx.reply("\n".join(lines + ["", messages.TICKET_PROMPT]))

    async def handle_ticket(self, ctx: ConversationContext, event: InboundEvent) -> None:
        text = _normalize(event.text)
        if text in messages.LOOKUP_LIST_WORDS:
            await self.start(ctx)
            return
        if text in messages.LOOKUP_EXIT_WORDS:
            await ctx.transition(IDLE_STATE)
            await ctx.reply(messages.LOOKUP_DONE)
            return

        ticket_id = parse_ticket_id(event.text)
        if ticket_id is None:
            await ctx.reply(messages.INVALID_TICKET)
            return

        ticket = await ctx.ticket(ticket_id)
        if ticket is None:
            await ctx.reply(messages.TICKET_NOT_FOUND.format(ticket_id=ticket_id))
            return
        if ticket.identity != ctx.identity:
            ctx.warn(f"Lookup of {ticket_id} by an identity that does not own it")
            await ctx.reply(messages.TICKET_NOT_YOURS.format(ticket_id=ticket_id))
            return

        await ctx.transition(IDLE_STATE)
        await ctx.reply_with_options(ticket.id, messages.ticket_detail(ticket), [messages.LOOKUP_AGAIN])
