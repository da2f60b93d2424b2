# Core Module - Central SQLite Connection Helper
#
# Every gateway-sentry SQLite database is opened through `connect()`
# instead of raw `sqlite3.connect()`. This ensures:
#
#   - WAL journal mode (the scheduler thread writes events while query
#     callers read them)
#   - busy_timeout so a contended write waits a bounded time instead of
#     failing or blocking forever
#   - foreign_keys enforcement on every connection

import sqlite3
from pathlib import Path
from typing import Union

DEFAULT_BUSY_TIMEOUT_MS = 5000


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    Args:
        db_path: Path to the database file (or ":memory:").
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect().
        busy_timeout_ms: How long a locked write waits before erroring.

    Returns:
        sqlite3.Connection with WAL mode, busy_timeout, and foreign_keys.
    """
    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=check_same_thread,
        timeout=busy_timeout_ms / 1000.0,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn
