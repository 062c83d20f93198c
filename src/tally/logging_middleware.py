from contextvars import ContextVar
import uuid
import logging
from litestar.middleware.base import ASGIMiddleware
from litestar.types import ASGIApp, Scope, Receive, Send, Message
from litestar.datastructures import Headers, MutableScopeHeaders

CORRELATION_HEADER = "X-Correlation-ID"

correlation_id_contextvar: ContextVar[str] = ContextVar("correlation_id")

# Set by the dispatcher for the duration of a turn
identity_contextvar: ContextVar[str] = ContextVar("identity")


def mask_identity(identity: str) -> str:
    """Keep only the last four characters of an identity for log output."""
    if len(identity) <= 4:
        return identity
    return "*" * (len(identity) - 4) + identity[-4:]


class CorrelationFormatter(logging.Formatter):
    """Formatter that tolerates records created before the filter ran."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "system"
        if not hasattr(record, "identity"):
            record.identity = "-"
        return super().format(record)


class CorrelationFilter(logging.Filter):
    """Stamps records with the request correlation id and the masked turn identity."""

    def __init__(
        self,
        contextvar: ContextVar[str] = correlation_id_contextvar,
        identity: ContextVar[str] = identity_contextvar,
    ):
        super().__init__()
        self.contextvar = contextvar
        self.identity = identity

    def filter(self, record: logging.LogRecord) -> bool:
        # Read when the record is created, in the task that logged it
        record.correlation_id = self.contextvar.get("system")
        identity = self.identity.get(None)
        record.identity = mask_identity(identity) if identity else "-"
        return True


class CorrelationMiddleware(ASGIMiddleware):
    """Tags each HTTP request with a correlation id, echoed back as ``X-Correlation-ID``.

    Both log contextvars are reset when the request finishes, so an identity set
    by one webhook turn never shows up on the next request's records.
    """

    def __init__(
        self,
        contextvar: ContextVar[str] = correlation_id_contextvar,
        identity: ContextVar[str] = identity_contextvar,
    ):
        super().__init__()
        self.contextvar = contextvar
        self.identity = identity

    async def handle(self, scope: Scope, receive: Receive, send: Send, next_app: ASGIApp) -> None:
        if scope["type"] != "http":
            await next_app(scope, receive, send)
            return

        correlation_id = Headers.from_scope(scope).get(CORRELATION_HEADER) or str(uuid.uuid4())
        correlation_token = self.contextvar.set(correlation_id)
        identity_token = self.identity.set("")

        async def send_with_header(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableScopeHeaders.from_message(message=message)[CORRELATION_HEADER] = correlation_id
            await send(message)

        try:
            await next_app(scope, receive, send_with_header)
        finally:
            self.identity.reset(identity_token)
            self.contextvar.reset(correlation_token)
