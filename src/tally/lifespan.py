from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, cast

from litestar import Litestar

from tally.cache.conversation import ConversationCache
from tally.clients.whatsapp import (
    Channel,
    LoggingChannel,
    WhatsAppChannel,
    create_whatsapp_client,
)
from tally.config import settings
from tally.database.manager import create_db_pool
from tally.database.progress import ProgressStore
from tally.engine.advancement import StepAdvancer
from tally.engine.background import TaskTracker
from tally.engine.context import RetryPolicy
from tally.engine.dispatch import Dispatcher
from tally.flows.lookup import LookupFlow
from tally.flows.survey import SurveyFlow, default_registry
from tally.jobs.maintenance import ExpiryInput, make_expiry_job
from tally.jobs.runner import JobRunner


@asynccontextmanager
async def lifespan(app: Litestar) -> AsyncGenerator[None, None]:
    logger = app.logger
    if logger is None:
        raise RuntimeError("App logger is None")

    # Everything entered here is unwound in reverse, also when startup fails halfway
    async with AsyncExitStack() as stack:
        db_pool = await create_db_pool(
            settings.database.path, logger, timeout=float(settings.database.timeout)
        )
        stack.push_async_callback(db_pool.close)

        store = ProgressStore(db_pool)
        retry = RetryPolicy(
            max_attempts=int(settings.retry.max_attempts),
            base_delay=float(settings.retry.base_delay),
            max_delay=float(settings.retry.max_delay),
        )

        cache = await stack.enter_async_context(
            ConversationCache(
                store,
                db_pool,
                logger,
                ttl=float(settings.cache.ttl_seconds),
                steps_ttl=float(settings.cache.steps_ttl_seconds),
                sweep_interval=float(settings.cache.sweep_interval_seconds),
                max_attempts=retry.max_attempts,
            )
        )

        # Running locally, outbound messages are only logged
        channel: Channel
        if settings.ring == "local":
            channel = LoggingChannel(logger)
        else:
            whatsapp_client = await stack.enter_async_context(
                create_whatsapp_client(
                    settings.whatsapp.api_url,
                    cast(str, settings.whatsapp.access_token),
                    timeout=float(settings.whatsapp.timeout),
                )
            )
            channel = WhatsAppChannel(whatsapp_client, settings.whatsapp.phone_number_id, logger)

        tasks = TaskTracker(logger)
        stack.push_async_callback(tasks.drain, 5.0)

        advancer = StepAdvancer(
            store,
            cache,
            logger,
            rating_min=int(settings.conversations.rating_min),
            rating_max=int(settings.conversations.rating_max),
            max_attempts=retry.max_attempts,
        )
        registry = default_registry()
        dispatcher = Dispatcher(
            registry,
            SurveyFlow(),
            LookupFlow(),
            channel,
            db_pool,
            advancer,
            tasks,
            logger,
            retry=retry,
        )

        expiry_job = make_expiry_job(store, cache, channel, db_pool, logger)
        job_runner = await stack.enter_async_context(
            JobRunner(
                jobs=[expiry_job],
                period=timedelta(seconds=30),
                db_pool=db_pool,
                logger=logger,
            )
        )
        await job_runner.ensure_scheduled(
            expiry_job,
            ExpiryInput(
                idle_hours=float(settings.conversations.idle_expiry_hours),
                warning_hours=float(settings.conversations.idle_warning_hours),
            ),
            settings.conversations.expiry_schedule,
        )

        app.state.db_pool = db_pool
        app.state.store = store
        app.state.cache = cache
        app.state.channel = channel
        app.state.tasks = tasks
        app.state.registry = registry
        app.state.dispatcher = dispatcher

        yield
