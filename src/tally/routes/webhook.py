import hashlib
import hmac
from typing import Annotated, Optional

from aiosqlitepool import SQLiteConnectionPool
from litestar import Request, Response, get, post
from litestar.di import Provide
from litestar.enums import MediaType
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK, HTTP_403_FORBIDDEN
from litestar.types.protocols import Logger
from pydantic import ValidationError

from tally.config import settings
from tally.database.sessions import register_message, release_message
from tally.dependencies import get_db_pool, get_dispatcher
from tally.engine.dispatch import Dispatcher
from tally.schemas.whatsapp import WebhookPayload, inbound_events


def signature_valid(body: bytes, signature: Optional[str], app_secret: str) -> bool:
    """Check ``X-Hub-Signature-256`` (``sha256=<hex>``); always valid without a secret."""
    if not app_secret:
        return True
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.removeprefix("sha256="))


async def process_webhook(
    body: bytes,
    signature: Optional[str],
    app_secret: str,
    dispatcher: Dispatcher,
    db_pool: SQLiteConnectionPool,
    logger: Logger,
) -> int:
    """Dispatch every new message in a webhook body; returns how many were dispatched.

    Failures are logged rather than raised so the channel always gets a 200.
    A message whose turn failed is unregistered, so a redelivery of it is
    dispatched again instead of being skipped as a duplicate.
    """
    if not signature_valid(body, signature, app_secret):
        logger.warning("Rejected WhatsApp webhook with an invalid signature")
        return 0

    try:
        payload = WebhookPayload.model_validate_json(body)
    except ValidationError as e:
        logger.warning(f"Ignoring unrecognized WhatsApp webhook body: {e.error_count()} errors")
        return 0

    dispatched = 0
    for event in inbound_events(payload):
        registered = False
        try:
            registered = await register_message(db_pool, event.message_id, event.identity)
            if not registered:
                logger.debug(f"Message {event.message_id} already processed, skipping")
                continue
            turn = await dispatcher.dispatch(event)
            if not turn.failed:
                dispatched += 1
                continue
        except Exception as e:
            logger.error(f"Failed to process message {event.message_id}: {e}", exc_info=True)

        if registered:
            await _release(db_pool, event.message_id, logger)

    return dispatched


async def _release(db_pool: SQLiteConnectionPool, message_id: str, logger: Logger) -> None:
    try:
        await release_message(db_pool, message_id)
        logger.info(f"Message {message_id} failed, a redelivery will be processed")
    except Exception as e:
        logger.error(f"Could not release message {message_id}: {e}", exc_info=True)


@get("/webhook/whatsapp", media_type=MediaType.TEXT)
async def verify_whatsapp_webhook(
    request: Request,
    mode: Annotated[Optional[str], Parameter(query="hub.mode")] = None,
    token: Annotated[Optional[str], Parameter(query="hub.verify_token")] = None,
    challenge: Annotated[Optional[str], Parameter(query="hub.challenge")] = None,
) -> Response[str]:
    """Subscription handshake: echo the challenge when the verify token matches."""
    verify_token = settings.whatsapp.verify_token
    if mode == "subscribe" and verify_token and token == verify_token:
        request.logger.info("WhatsApp webhook verified")
        return Response(content=challenge or "", status_code=HTTP_200_OK)

    request.logger.warning("WhatsApp webhook verification failed")
    return Response(content="", status_code=HTTP_403_FORBIDDEN)


@post(
    "/webhook/whatsapp",
    status_code=HTTP_200_OK,
    dependencies={
        "dispatcher": Provide(get_dispatcher),
        "db_pool": Provide(get_db_pool),
    },
)
async def handle_whatsapp_webhook(
    request: Request, dispatcher: Dispatcher, db_pool: SQLiteConnectionPool
) -> str:
    body = await request.body()
    dispatched = await process_webhook(
        body,
        request.headers.get("x-hub-signature-256"),
        settings.whatsapp.app_secret,
        dispatcher,
        db_pool,
        request.logger,
    )
    request.logger.info(f"WhatsApp webhook handled, {dispatched} messages dispatched")
    return ""
