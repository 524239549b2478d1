"""
Database helpers shared by the Bookstore Platform services.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from django.db import DatabaseError, connections, transaction

# PostgreSQL SQLSTATE raised when statement_timeout cancels a query
QUERY_CANCELED_SQLSTATE = "57014"


@contextmanager
def statement_deadline(seconds: float | None, using: str = "default") -> Iterator[None]:
    """
    Run the enclosed block in a transaction bounded by a server-side deadline.

    On PostgreSQL this sets a transaction-local ``statement_timeout`` so a statement
    running past the deadline is cancelled and the transaction rolls back.
    Other backends get the transaction without a server-side timeout.
    """
    with transaction.atomic(using=using):
        connection = connections[using]
        if seconds and connection.vendor == "postgresql":
            with connection.cursor() as cursor:
                cursor.execute("SELECT set_config('statement_timeout', %s, true)", [str(int(seconds * 1000))])
        yield


def is_query_canceled(exc: DatabaseError) -> bool:
    """True when the database aborted the statement because of a timeout."""
    cause = exc.__cause__
    return getattr(cause, "pgcode", None) == QUERY_CANCELED_SQLSTATE
