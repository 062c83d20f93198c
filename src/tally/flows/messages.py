"""User-facing copy for the conversation flows."""

from tally.schemas.conversation import Choice, Ticket

ACCEPT_CONTROL = "btn_survey_accept"
DECLINE_CONTROL = "btn_survey_decline"
COMMENT_YES_CONTROL = "btn_comment_yes"
COMMENT_NO_CONTROL = "btn_comment_no"
LOOKUP_CONTROL = "btn_lookup_tickets"

ACCEPT = Choice(id=ACCEPT_CONTROL, title="Start survey")
DECLINE = Choice(id=DECLINE_CONTROL, title="No thanks")
COMMENT_YES = Choice(id=COMMENT_YES_CONTROL, title="Yes, comment")
COMMENT_NO = Choice(id=COMMENT_NO_CONTROL, title="No, finish")
LOOKUP_AGAIN = Choice(id=LOOKUP_CONTROL, title="See my tickets")

ACCEPT_WORDS = {"yes", "y", "ok", "sure", "start", "accept"}
DECLINE_WORDS = {"no", "n", "exit", "stop", "decline", "later"}

INVITATION_TITLE = "Satisfaction survey"
INVITATION_BODY = (
    "Hi! We'd love to hear how your recent service went. "
    "It only takes a minute. Would you like to answer a few questions?"
)
SELECT_OPTION = "Please choose one of the options below."
DECLINED = "No problem, thanks for your time. Have a great day!"

RATING_HINT = "_Reply with a number from {minimum} to {maximum}_"
INVALID_RATING = (
    "Sorry, I didn't get that. Please reply with a number from {minimum} to {maximum}, "
    "or use the buttons."
)
ALREADY_COMPLETED = "This survey was already completed. Thank you!"
NO_ACTIVE_SURVEY = "There is no survey in progress. We'll send you a new invitation when there is one."


def question_title(step: int, total: int) -> str:
    return f"Question {step} of {total}"


def answer_recorded(step: int, total: int) -> str:
    return f"Answer {step}/{total} recorded."


COMMENT_TITLE = "Anything else?"
COMMENT_QUESTION = "Would you like to leave a comment about the service?"
AWAITING_COMMENT = "Go ahead, write your comment in a single message."
THANK_YOU = "Thanks for completing the survey! Your feedback helps us improve."

HELP = (
    "Hi! I'm the feedback assistant. When there's a survey for you, "
    "I'll send an invitation here. Send *status* to check on your service tickets."
)
NOT_UNDERSTOOD = "Sorry, I didn't understand that."
APOLOGY = "Sorry, something went wrong on our side. Please try again in a moment."

STILL_THERE = (
    "Are you still there? This survey will close in {hours:g} hours if we don't hear from you. "
    "Send any message to continue."
)
EXPIRED = "This survey was closed after a period of inactivity. Thanks for your time!"

# Ticket lookup
LOOKUP_WORDS = {"status", "ticket", "tickets", "my tickets", "check ticket"}
LOOKUP_LIST_WORDS = {"status", "tickets", "my tickets", "list", "all"}
LOOKUP_EXIT_WORDS = {"exit", "cancel", "stop", "done", "no"}

NO_TICKETS = "You don't have any service tickets with us yet."
TICKETS_TITLE = "Your recent tickets:"
TICKET_PROMPT = "Send the ticket number you want to check (for example TKT-AB12CD34), or *exit* to leave."
INVALID_TICKET = (
    "That doesn't look like a ticket number. Ticket numbers look like TKT-AB12CD34. "
    "Send *tickets* to see your list again."
)
TICKET_NOT_FOUND = "I couldn't find ticket {ticket_id}. Please check the number and try again."
TICKET_NOT_YOURS = "Ticket {ticket_id} isn't linked to this phone number."
LOOKUP_DONE = "Ok! Send *status* whenever you want to check again."


def ticket_line(ticket: Ticket) -> str:
    return f"- {ticket.id}: {ticket.status}"


def ticket_detail(ticket: Ticket) -> str:
    lines = [f"Status: {ticket.status}"]
    if ticket.summary:
        lines.append(ticket.summary)
    if ticket.updated_at is not None:
        lines.append(f"Last update: {ticket.updated_at:%Y-%m-%d %H:%M} UTC")
    return "\n".join(lines)
