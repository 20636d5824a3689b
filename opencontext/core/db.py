"""
SQLite foundation for the context store.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Union


@contextmanager
def get_db(db_path: Union[str, Path]) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: Union[str, Path]):
    """Initialize the database with required tables."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # Tags and data are JSON text
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS entries (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                source TEXT NOT NULL DEFAULT 'chat',
                bubble_id TEXT,
                context_type TEXT,
                data TEXT,
                archived BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS bubbles (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_entries_bubble_id ON entries(bubble_id)')

        conn.commit()


def health_check(db_path: Union[str, Path]) -> bool:
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in ('entries', 'bubbles'))
    except sqlite3.Error:
        return False
