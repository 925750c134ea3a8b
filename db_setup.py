import sqlite3
from contextlib import contextmanager

from config import get_settings


def init_db(db_name: str = None):
    conn = get_db_connection(db_name)
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            FOREIGN KEY (linkedId) REFERENCES Contact (id)
        )
    ''')
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_contact_email ON Contact (email)")
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_contact_phone ON Contact (phoneNumber)")
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_contact_linked ON Contact (linkedId)")

    conn.close()


def get_db_connection(db_name: str = None, timeout: float = None):
    """Open a connection with explicit transaction control.

    ``isolation_level=None`` stops the sqlite3 module from issuing its own
    BEGIN, so ``unit_of_work`` decides when the write lock is taken.
    """
    settings = get_settings()
    conn = sqlite3.connect(
        db_name or settings.db_name,
        timeout=settings.db_busy_timeout_seconds if timeout is None else timeout,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def unit_of_work(conn):
    # BEGIN IMMEDIATE takes the write lock before the first read, so the
    # whole read-decide-write sequence is serialized against other writers.
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
