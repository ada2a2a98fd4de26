"""Database access layer using psycopg2.

Provides:
- get_conn(): Get a database connection from DATABASE_URL
- txn(): Context manager for short, safe transactions
- fetchone_dict/fetchall_dicts: Query helpers returning column-keyed dicts
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception. Never hold a
    transaction open across a payment gateway call.

    Example:
        with txn() as cur:
            cur.execute("UPDATE event_bookings SET notes = %s WHERE id = %s", (note, bid))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def _row_to_dict(cur: PgCursor, row: Sequence[Any]) -> dict[str, Any]:
    columns = [col[0] for col in cur.description]
    return dict(zip(columns, row))


def fetchone_dict(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> dict[str, Any] | None:
    """Execute query and fetch one row keyed by column name.

    Args:
        cur: Database cursor.
        query: SQL query with %s placeholders.
        params: Query parameters.

    Returns:
        Row dict or None if no results.
    """
    cur.execute(query, params)
    row = cur.fetchone()
    if row is None:
        return None
    return _row_to_dict(cur, row)


def fetchall_dicts(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> list[dict[str, Any]]:
    """Execute query and fetch all rows keyed by column name."""
    cur.execute(query, params)
    return [_row_to_dict(cur, row) for row in cur.fetchall()]
