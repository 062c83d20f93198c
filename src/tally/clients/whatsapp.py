from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from litestar.types.protocols import Logger

from tally.errors import ChannelLimitExceeded, CollaboratorUnavailable
from tally.schemas.conversation import Choice

MAX_CHOICES = 3
MAX_BUTTON_TITLE = 20


class Channel(Protocol):
    async def send_text(self, identity: str, text: str) -> None: ...

    async def send_choice(
        self, identity: str, title: str, body: str, choices: Sequence[Choice]
    ) -> None: ...


def create_whatsapp_client(api_url: str, access_token: str, timeout: float = 5.0) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=api_url,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=timeout,
    )


def _check_choices(choices: Sequence[Choice]) -> None:
    if len(choices) > MAX_CHOICES:
        raise ChannelLimitExceeded(len(choices), MAX_CHOICES)


def button_payload(identity: str, title: str, body: str, choices: Sequence[Choice]) -> Dict[str, Any]:
    _check_choices(choices)
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": identity,
        "type": "interactive",
        "interactive": {
            "type": "button",
            "header": {"type": "text", "text": title},
            "body": {"text": body},
            "action": {
                "buttons": [
                    {
                        "type": "reply",
                        "reply": {"id": choice.id, "title": choice.title[:MAX_BUTTON_TITLE]},
                    }
                    for choice in choices
                ]
            },
        },
    }


class WhatsAppChannel:
    """Outbound messages through the WhatsApp Cloud API."""

    name = "whatsapp"

    def __init__(self, client: httpx.AsyncClient, phone_number_id: str, logger: Logger):
        self.client = client
        self.phone_number_id = phone_number_id
        self.logger = logger

    async def _post(self, operation: str, body: Dict[str, Any]) -> None:
        try:
            response = await self.client.post(f"/{self.phone_number_id}/messages", json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise CollaboratorUnavailable(self.name, operation, e) from e

        self.logger.info(f"WhatsApp {operation} accepted (ids: {self._message_ids(response)})")

    def _message_ids(self, response: httpx.Response) -> List[Optional[str]]:
        """Ids the API assigned; the message is already sent, so an odd body only gets a warning."""
        try:
            return [m.get("id") for m in response.json().get("messages", [])]
        except (ValueError, AttributeError, TypeError) as e:
            self.logger.warning(f"Unreadable WhatsApp response body ({response.status_code}): {e}")
            return []

    async def send_text(self, identity: str, text: str) -> None:
        await self._post(
            "send_text",
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": identity,
                "type": "text",
                "text": {"preview_url": False, "body": text},
            },
        )

    async def send_choice(
        self, identity: str, title: str, body: str, choices: Sequence[Choice]
    ) -> None:
        await self._post("send_choice", button_payload(identity, title, body, choices))


@dataclass
class SentMessage:
    identity: str
    text: str
    title: str = ""
    choices: List[Choice] = field(default_factory=list)


class LoggingChannel:
    """Channel used when running locally: logs and records messages instead of sending them."""

    def __init__(self, logger: Logger):
        self.logger = logger
        self.sent: List[SentMessage] = []

    async def send_text(self, identity: str, text: str) -> None:
        self.sent.append(SentMessage(identity=identity, text=text))
        self.logger.info(f"[local] text to {identity}: {text}")

    async def send_choice(
        self, identity: str, title: str, body: str, choices: Sequence[Choice]
    ) -> None:
        _check_choices(choices)
        self.sent.append(SentMessage(identity=identity, text=body, title=title, choices=list(choices)))
        options = ", ".join(f"{c.id}={c.title}" for c in choices)
        self.logger.info(f"[local] choice to {identity}: {title} / {body} [{options}]")
