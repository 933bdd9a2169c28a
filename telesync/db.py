"""
Database Utilities

SQLite connections for the client's local store.

Features:
- WAL mode so readers never wait on the writer
- Row factory for dict-like access
"""

import sqlite3
from pathlib import Path
from typing import Union
import logging

logger = logging.getLogger(__name__)


def get_sqlite_connection(
    database: Union[str, Path],
    check_same_thread: bool = True,
    timeout: float = 30.0
) -> sqlite3.Connection:
    """
    Create a SQLite connection with WAL mode and sane pragmas.

    Args:
        database: Path to SQLite database file
        check_same_thread: Whether to check same thread (default True for safety)
        timeout: Lock wait timeout in seconds (default 30)

    Returns:
        Configured SQLite connection
    """
    conn = sqlite3.connect(
        str(database),
        check_same_thread=check_same_thread,
        timeout=timeout
    )

    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")  # Safe with WAL
    conn.execute("PRAGMA temp_store=MEMORY")

    conn.row_factory = sqlite3.Row
    return conn
