"""
PostgreSQL access for Xeno CRM.

Every `with get_db_cursor()` block is one transaction on its own connection.
Dispatch workers and receipt timers run on separate threads, and psycopg2
connections must not be shared across threads mid-transaction, so nothing
here is pooled or cached.
"""

import logging
from contextlib import contextmanager
from pathlib import Path

import psycopg2
from psycopg2.extras import RealDictCursor

from xenocrm.config import config

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"
APPLICATION_NAME = "xenocrm"


@contextmanager
def get_db_connection():
    """
    Open a connection, commit when the block exits cleanly, roll back when it
    raises, and always close.
    """
    conn = psycopg2.connect(
        config.DATABASE_URL,
        connect_timeout=config.DB_CONNECT_TIMEOUT_SECONDS,
        application_name=APPLICATION_NAME,
    )
    try:
        yield conn
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error(f"Rolled back: {type(e).__name__}: {e}")
        raise
    finally:
        conn.close()


@contextmanager
def get_db_cursor(dict_cursor=True):
    """
    Cursor inside a single transaction. Rows come back as dicts
    (RealDictCursor) unless dict_cursor=False.

        with get_db_cursor() as cur:
            cur.execute("SELECT * FROM campaigns WHERE id = %s", (42,))
            row = cur.fetchone()
    """
    with get_db_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor if dict_cursor else None)
        try:
            yield cur
        finally:
            cur.close()


def init_db() -> None:
    """Apply schema.sql. Every statement is IF NOT EXISTS, so re-running is harmless."""
    ddl = SCHEMA_PATH.read_text(encoding="utf-8")
    with get_db_cursor(dict_cursor=False) as cur:
        cur.execute(ddl)
    logger.info(f"Schema applied from {SCHEMA_PATH.name}")
