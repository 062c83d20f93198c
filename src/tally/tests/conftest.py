import pytest
import pytest_asyncio

from tally.cache.conversation import ConversationCache
from tally.database.progress import ProgressStore
from tally.tests.utils import FakeClock, MockLogger, temp_db_pool


@pytest_asyncio.fixture
async def db_pool(tmp_path):
    pool = await temp_db_pool(tmp_path)
    yield pool
    await pool.close()


@pytest.fixture
def store(db_pool):
    return ProgressStore(db_pool)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(store, db_pool, clock):
    return ConversationCache(store, db_pool, MockLogger(), ttl=60.0, steps_ttl=120.0, clock=clock)
