import psycopg
from psycopg.rows import dict_row
from contextlib import contextmanager

from config import get_settings


@contextmanager
def get_conn(dsn: str = None):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    rows come back as dicts so models can decode them with from_row().
    """
    with psycopg.connect(dsn or get_settings().DATABASE_URL, row_factory=dict_row) as conn:
        conn.autocommit = False
        yield conn
