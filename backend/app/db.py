import os
from contextlib import contextmanager
from typing import Optional

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .config import settings
from .singleflight import SingleFlight

DATABASE_URL = os.getenv("APP_DATABASE_URL") or settings.db_url


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Overridden in prod with DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE.
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)


class Database:
    """
    Owns the connection pool. The pool is created on first use; concurrent
    first requests share one open through the instance's SingleFlight.
    """

    def __init__(self, conninfo: str, min_size: int = 1, max_size: int = 10):
        self.conninfo = conninfo
        self.min_size = min_size
        self.max_size = max(max_size, min_size)
        self._pool: Optional[ConnectionPool] = None
        self._flight = SingleFlight()

    def _open(self) -> ConnectionPool:
        if self._pool is not None:
            return self._pool
        pool = ConnectionPool(
            conninfo=self.conninfo,
            min_size=self.min_size,
            max_size=self.max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )
        pool.open()
        self._pool = pool
        return pool

    def pool(self) -> ConnectionPool:
        if self._pool is not None:
            return self._pool
        return self._flight.do("pool", self._open)

    def stats(self) -> dict:
        if self._pool is None:
            return {"open": False}
        stats = self._pool.get_stats()
        return {
            "open": True,
            "size": stats.get("pool_size", 0),
            "available": stats.get("pool_available", 0),
            "waiting": stats.get("requests_waiting", 0),
        }

    def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            pool.close()


_db = Database(DATABASE_URL, min_size=_POOL_MIN, max_size=_POOL_MAX)


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # Commits when the block exits cleanly, rolls back on error; the connection goes back to the pool either way.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_db.pool())


def close_pools() -> None:
    _db.close()


def pool_stats() -> dict:
    return _db.stats()


def set_tenant_context(conn, tenant_id: str):
    with conn.cursor() as cur:
        # Transaction-local, so a pooled connection never carries another tenant's id.
        cur.execute(
            "SELECT set_config('app.current_tenant_id', %s::text, true)",
            (tenant_id,),
        )
