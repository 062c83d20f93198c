import json
from typing import Any, Dict, List, Optional

from tally.database.sessions import IDLE_STATE
from tally.engine.advancement import RATING_CONTROL_PREFIX, AdvanceOutcome, AdvanceResult
from tally.engine.context import ConversationContext
from tally.engine.registry import (
    Control,
    FlowDefinition,
    StepKind,
    StepRegistry,
    control_pattern,
)
from tally.flows import messages
from tally.flows.lookup import LOOKUP_FLOW
from tally.schemas.conversation import (
    CacheEntry,
    Choice,
    ConversationRecord,
    ConversationStatus,
    InboundEvent,
)

SURVEY_INVITATION = "survey_invitation"
SURVEY_QUESTION = "survey_question"
SURVEY_COMMENT_DECISION = "survey_comment_decision"
SURVEY_AWAITING_COMMENT = "survey_awaiting_comment"

GENERAL_FLOW = FlowDefinition(
    name="general",
    states=(IDLE_STATE,),
    state_kinds={IDLE_STATE: StepKind.IDLE},
)

SURVEY_FLOW = FlowDefinition(
    name="survey",
    states=(SURVEY_INVITATION, SURVEY_QUESTION, SURVEY_COMMENT_DECISION, SURVEY_AWAITING_COMMENT),
    state_kinds={
        SURVEY_INVITATION: StepKind.INVITATION,
        SURVEY_QUESTION: StepKind.RATING,
        SURVEY_COMMENT_DECISION: StepKind.COMMENT_DECISION,
        SURVEY_AWAITING_COMMENT: StepKind.COMMENT_TEXT,
    },
    controls={
        messages.ACCEPT_CONTROL: Control(StepKind.ACCEPT),
        messages.DECLINE_CONTROL: Control(StepKind.DECLINE),
        messages.COMMENT_YES_CONTROL: Control(StepKind.COMMENT_YES),
        messages.COMMENT_NO_CONTROL: Control(StepKind.COMMENT_NO),
    },
    control_patterns=((control_pattern(RATING_CONTROL_PREFIX), StepKind.RATING),),
)


def default_registry() -> StepRegistry:
    return StepRegistry().register(GENERAL_FLOW).register(SURVEY_FLOW).register(LOOKUP_FLOW)


def _normalize(text: str) -> str:
    return text.strip().lower()


class SurveyFlow:
    """
    Step handlers for rating surveys.

    Scored answers go through the step advancer; the remaining transitions
    (accept, decline, completion) are conditional status changes, so repeated
    taps on the same button are absorbed without a second reply. The session
    moves to its next state as soon as the store change is committed, before
    anything is sent.
    """

    def rating_choices(self, ctx: ConversationContext, step: int) -> List[Choice]:
        """Rating buttons for ``step``; each id carries both the step and the value."""
        low, high = ctx.rating_range
        values = sorted({low, (low + high) // 2, high})
        labels = {low: "Bad", high: "Excellent"}
        return [
            Choice(
                id=f"{RATING_CONTROL_PREFIX}{step}_{value}",
                title=f"{value} - {labels.get(value, 'Okay')}",
            )
            for value in values
        ]

    async def start(
        self,
        ctx: ConversationContext,
        conversation_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ConversationRecord:
        """Create a conversation instance and send its invitation."""
        record = await ctx.begin(conversation_type, payload)
        ctx.log(f"Created conversation {record.id} ({conversation_type})")

        session_payload = json.dumps(
            {"conversation_id": record.id, "conversation_type": conversation_type}
        )
        await ctx.transition(SURVEY_INVITATION, session_payload)
        await ctx.reply_with_options(
            messages.INVITATION_TITLE,
            messages.INVITATION_BODY,
            [messages.ACCEPT, messages.DECLINE],
        )
        return record

    async def handle_invitation(self, ctx: ConversationContext, event: InboundEvent) -> None:
        text = _normalize(event.text)
        if text in messages.ACCEPT_WORDS:
            await self.accept(ctx)
        elif text in messages.DECLINE_WORDS:
            await self.decline(ctx)
        else:
            await ctx.reply_with_options(
                messages.INVITATION_TITLE,
                messages.SELECT_OPTION,
                [messages.ACCEPT, messages.DECLINE],
            )

    async def accept(self, ctx: ConversationContext) -> None:
        accepted = await ctx.transition(
            SURVEY_QUESTION,
            ctx.payload,
            status=ConversationStatus.ACTIVE,
            expected=(ConversationStatus.AWAITING_INPUT,),
            at_step=0,
        )
        if not accepted:
            ctx.debug("Invitation already answered, ignoring accept")
            return

        entry = await ctx.progress()
        if entry is None:
            await ctx.reply(messages.NO_ACTIVE_SURVEY)
            return
        await self.send_question(ctx, entry, 1)

    async def decline(self, ctx: ConversationContext) -> None:
        declined = await ctx.transition(
            IDLE_STATE,
            status=ConversationStatus.ABANDONED,
            expected=(ConversationStatus.AWAITING_INPUT,),
            at_step=0,
        )
        if not declined:
            ctx.debug("Invitation already answered, ignoring decline")
            return
        await ctx.reply(messages.DECLINED)

    async def send_question(self, ctx: ConversationContext, entry: CacheEntry, step: int) -> None:
        prompt = entry.prompt_for(step) or messages.question_title(step, entry.total_steps)
        minimum, maximum = ctx.rating_range
        hint = messages.RATING_HINT.format(minimum=minimum, maximum=maximum)
        await ctx.reply_with_options(
            messages.question_title(step, entry.total_steps),
            f"{prompt}\n\n{hint}",
            self.rating_choices(ctx, step),
        )

    async def send_comment_decision(self, ctx: ConversationContext) -> None:
        await ctx.reply_with_options(
            messages.COMMENT_TITLE,
            messages.COMMENT_QUESTION,
            [messages.COMMENT_YES, messages.COMMENT_NO],
        )

    async def handle_rating(
        self,
        ctx: ConversationContext,
        event: InboundEvent,
        value: Optional[int] = None,
        step: Optional[int] = None,
    ) -> AdvanceResult:
        """Apply a rating from a button (value and step bound) or from free text."""
        result = await ctx.answer(value if value is not None else event.text, step)
        if result.outcome.silent:
            ctx.debug(f"Dropped {result.outcome.value} answer for step {result.step}")
            return result

        match result.outcome:
            case AdvanceOutcome.VALIDATION_FAILED:
                minimum, maximum = ctx.rating_range
                await ctx.reply(messages.INVALID_RATING.format(minimum=minimum, maximum=maximum))
            case AdvanceOutcome.NO_ACTIVE_CONVERSATION:
                if ctx.state != IDLE_STATE:
                    await ctx.transition(IDLE_STATE)
                await ctx.reply(messages.NO_ACTIVE_SURVEY)
            case AdvanceOutcome.OUT_OF_RANGE:
                if result.entry is not None and result.entry.status == ConversationStatus.AWAITING_INPUT:
                    await self.send_comment_decision(ctx)
                else:
                    await ctx.reply(messages.ALREADY_COMPLETED)
            case AdvanceOutcome.ADVANCED:
                await self._after_advance(ctx, result)

        return result

    async def _after_advance(self, ctx: ConversationContext, result: AdvanceResult) -> None:
        entry = result.entry
        if entry is None or result.step is None or result.next_step is None:
            return

        if result.status == ConversationStatus.COMPLETED:
            await ctx.transition(IDLE_STATE)
            await ctx.reply(entry.thank_you_message or messages.THANK_YOU)
            return

        if result.status == ConversationStatus.AWAITING_INPUT:
            await ctx.transition(SURVEY_COMMENT_DECISION, ctx.payload)
            await ctx.reply(messages.answer_recorded(result.step, entry.total_steps))
            await self.send_comment_decision(ctx)
        else:
            await ctx.transition(SURVEY_QUESTION, ctx.payload)
            await ctx.reply(messages.answer_recorded(result.step, entry.total_steps))
            await self.send_question(ctx, entry, result.next_step + 1)

    async def handle_comment_decision(self, ctx: ConversationContext, event: InboundEvent) -> None:
        text = _normalize(event.text)
        if text in messages.ACCEPT_WORDS:
            await self.comment_yes(ctx)
        elif text in messages.DECLINE_WORDS:
            await self.comment_no(ctx)
        else:
            await ctx.reply_with_options(
                messages.COMMENT_TITLE,
                messages.SELECT_OPTION,
                [messages.COMMENT_YES, messages.COMMENT_NO],
            )

    async def comment_yes(self, ctx: ConversationContext) -> None:
        if ctx.state == SURVEY_AWAITING_COMMENT:
            ctx.debug("Already waiting for a comment")
            return

        record = await ctx.read_progress()
        if record is None or not record.awaiting_comment:
            await ctx.reply(messages.NO_ACTIVE_SURVEY)
            return

        await ctx.transition(SURVEY_AWAITING_COMMENT, ctx.payload)
        await ctx.reply(messages.AWAITING_COMMENT)

    async def comment_no(self, ctx: ConversationContext) -> None:
        await self.finish(ctx)

    async def handle_comment(self, ctx: ConversationContext, event: InboundEvent) -> None:
        comment = event.text.strip()
        if not comment:
            await ctx.reply(messages.AWAITING_COMMENT)
            return
        await self.finish(ctx, comment)

    async def finish(self, ctx: ConversationContext, comment: Optional[str] = None) -> None:
        entry = await ctx.progress()
        if not await ctx.complete(comment):
            ctx.debug("Conversation already completed, ignoring")
            return

        ctx.log(f"Conversation completed (comment: {comment is not None})")
        await ctx.transition(IDLE_STATE)
        thank_you = entry.thank_you_message if entry is not None else None
        await ctx.reply(thank_you or messages.THANK_YOU)
