from litestar.datastructures import State
from aiosqlitepool import SQLiteConnectionPool

from tally.cache.conversation import ConversationCache
from tally.database.progress import ProgressStore
from tally.engine.background import TaskTracker
from tally.engine.dispatch import Dispatcher
from tally.engine.registry import StepRegistry


async def get_db_pool(state: State) -> SQLiteConnectionPool:
    return state.db_pool


async def get_store(state: State) -> ProgressStore:
    return state.store


async def get_cache(state: State) -> ConversationCache:
    return state.cache


async def get_dispatcher(state: State) -> Dispatcher:
    return state.dispatcher


async def get_registry(state: State) -> StepRegistry:
    return state.registry


async def get_tasks(state: State) -> TaskTracker:
    return state.tasks
