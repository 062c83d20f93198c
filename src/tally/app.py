from litestar import Litestar
from litestar.logging import LoggingConfig

from tally.lifespan import lifespan
from tally.logging_middleware import (
    CorrelationFilter,
    CorrelationFormatter,
    CorrelationMiddleware,
    correlation_id_contextvar,
    identity_contextvar,
)
from tally.routes.conversations import (
    cache_stats,
    get_conversation,
    initiate_conversation,
    invalidate_cache,
    put_ticket,
)
from tally.routes.health import health
from tally.routes.webhook import handle_whatsapp_webhook, verify_whatsapp_webhook


LOG_FORMAT = "%(asctime)s - %(correlation_id)s - %(identity)s - %(levelname)s - %(message)s"

# Third-party loggers that propagate to root; httpx logs every request at INFO
LIBRARY_LOG_LEVELS = {
    "httpx": "WARNING",
    "uvicorn": "INFO",
    "litestar": "INFO",
}

logging_config = LoggingConfig(
    root={
        "level": "INFO",
        "handlers": ["queue_listener"],
        "filters": ["correlation"],
    },
    formatters={"standard": {"()": CorrelationFormatter, "format": LOG_FORMAT}},
    filters={
        "correlation": {
            "()": CorrelationFilter,
            "contextvar": correlation_id_contextvar,
            "identity": identity_contextvar,
        }
    },
    loggers={
        name: {"level": level, "filters": ["correlation"], "propagate": True}
        for name, level in LIBRARY_LOG_LEVELS.items()
    },
    log_exceptions="always",
)

app = Litestar(
    route_handlers=[
        health,
        verify_whatsapp_webhook,
        handle_whatsapp_webhook,
        initiate_conversation,
        get_conversation,
        cache_stats,
        invalidate_cache,
        put_ticket,
    ],
    lifespan=[lifespan],
    logging_config=logging_config,
    middleware=[CorrelationMiddleware(correlation_id_contextvar, identity_contextvar)],
)
