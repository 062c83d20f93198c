import sqlite3

from aiosqlitepool import SQLiteConnectionPool
from litestar import Request, Response, get
from litestar.di import Provide
from litestar.status_codes import HTTP_200_OK, HTTP_503_SERVICE_UNAVAILABLE

from tally.dependencies import get_db_pool


@get(path="/health", dependencies={"db_pool": Provide(get_db_pool)})
async def health(request: Request, db_pool: SQLiteConnectionPool) -> Response[str]:
    try:
        async with db_pool.connection() as db:
            await db.execute("SELECT 1")
    except sqlite3.Error as e:
        request.logger.warning(f"Health check failed: {e}")
        return Response(content="unhealthy", status_code=HTTP_503_SERVICE_UNAVAILABLE)
    return Response(content="healthy", status_code=HTTP_200_OK)
