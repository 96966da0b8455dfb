# Core Module - SQLite connection and transaction helpers
#
# The vault database is opened through `transaction()`:
#
#   - WAL journal mode, so list/status reads never wait on a writer
#     and never see a half-written row
#   - busy_timeout instead of immediate SQLITE_BUSY under contention
#   - autocommit connection (isolation_level=None) with an explicit
#     BEGIN / BEGIN IMMEDIATE, so a writer holds the database write lock
#     from its first SELECT (count-then-insert stays atomic)

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

BUSY_TIMEOUT_MS = 5000


def connect(db_path: Union[str, Path], *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open a WAL-mode connection with sqlite3.Row rows and no implicit transactions."""
    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=check_same_thread,
        isolation_level=None,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: Union[str, Path], write: bool = False) -> Iterator[sqlite3.Connection]:
    """
    Run a block inside one transaction on a fresh connection.

    Args:
        db_path: Database file
        write: Take the write lock up front (BEGIN IMMEDIATE)

    Commits on normal exit, rolls back on any exception, always closes.
    """
    conn = connect(db_path, check_same_thread=False)
    try:
        conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()
