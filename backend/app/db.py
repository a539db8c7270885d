import os
from contextlib import contextmanager

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

_DEFAULT_URL = "postgresql://localhost/merchant_pos"

# App role is subject to row-level security; the admin role is used for auth,
# terminal lookups and the outbox worker.
DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or _DEFAULT_URL
DATABASE_URL_ADMIN = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or _DEFAULT_URL


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _make_pool(conninfo: str, env_prefix: str, min_default: int, max_default: int) -> ConnectionPool:
    # open=False: nothing connects until the first checkout, so importing the
    # routers never needs a live database.
    return ConnectionPool(
        conninfo=conninfo,
        min_size=_env_int(f"{env_prefix}_MIN_SIZE", min_default),
        max_size=_env_int(f"{env_prefix}_MAX_SIZE", max_default),
        kwargs={"row_factory": dict_row},
        open=False,
    )


# Terminals poll catalog deltas and push outbox batches through the app pool.
_pool = _make_pool(DATABASE_URL, "DB_POOL", 1, 10)
_admin_pool = _make_pool(DATABASE_URL_ADMIN, "DB_ADMIN_POOL", 1, 5)


@contextmanager
def _checkout(pool: ConnectionPool):
    if pool.closed:
        pool.open()
    # Commits when the block exits cleanly, rolls back otherwise.
    with pool.connection() as conn:
        yield conn


def get_conn():
    return _checkout(_pool)


def get_admin_conn():
    return _checkout(_admin_pool)


def close_pools() -> None:
    for pool in (_pool, _admin_pool):
        if not pool.closed:
            pool.close()


def set_merchant_context(conn, merchant_id: str):
    # RLS policies read app.current_merchant_id; set_config() is transaction-local
    # and, unlike SET, accepts a bound parameter.
    with conn.cursor() as cur:
        cur.execute(
            "SELECT set_config('app.current_merchant_id', %s::text, true)",
            (merchant_id,),
        )
