from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

from tally.schemas.conversation import InboundEvent


class TextBody(BaseModel):
    body: str


class Reply(BaseModel):
    id: str
    title: Optional[str] = None


class Interactive(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # button_reply and list_reply carry a control id; other types (nfm_reply, ...) are skipped
    type: str
    button_reply: Optional[Reply] = None
    list_reply: Optional[Reply] = None


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    from_: str = Field(alias="from")
    id: str
    timestamp: str
    type: str
    text: Optional[TextBody] = None
    interactive: Optional[Interactive] = None


class Metadata(BaseModel):
    display_phone_number: str
    phone_number_id: str


class Value(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messaging_product: Literal["whatsapp"]
    metadata: Metadata
    messages: List[Message] = []


class Change(BaseModel):
    value: Value
    field: str


class Entry(BaseModel):
    id: str
    changes: List[Change]


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Literal["whatsapp_business_account"]
    entry: List[Entry]


def normalize_identity(phone_number: str) -> str:
    """Reduce a phone number to digits so every path keys on the same identity."""
    return "".join(ch for ch in phone_number if ch.isdigit())


def to_inbound_event(message: Message) -> Optional[InboundEvent]:
    """Convert a channel message to an InboundEvent; None for unsupported types."""
    identity = normalize_identity(message.from_)

    if message.type == "text" and message.text is not None:
        return InboundEvent(identity=identity, message_id=message.id, text=message.text.body)

    if message.type == "interactive" and message.interactive is not None:
        reply = message.interactive.button_reply or message.interactive.list_reply
        if reply is None:
            return None
        return InboundEvent(
            identity=identity,
            message_id=message.id,
            text=reply.title or "",
            control_id=reply.id,
        )

    return None


def inbound_events(payload: WebhookPayload) -> List[InboundEvent]:
    events = []
    for entry in payload.entry:
        for change in entry.changes:
            for message in change.value.messages:
                event = to_inbound_event(message)
                if event is not None:
                    events.append(event)
    return events
