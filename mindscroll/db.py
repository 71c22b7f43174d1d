"""
SQLite plumbing shared by the job store, the work queue and the learning store.

Each store owns its own database file and schema script; this module only
provides connection handling and transactions.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional


class SQLiteStore:
    """
    Base class for SQLite-backed stores.

    Subclasses set ``schema_file`` (and ``schema_dir`` when the script does
    not sit next to this module) and get per-thread connections in WAL mode
    plus two flavours of transaction.
    """

    #: Schema file name, resolved relative to ``schema_dir``
    schema_file: str = "schema.sql"
    schema_dir: Optional[Path] = None

    #: Default database file name inside the data directory
    default_db_name: str = "mindscroll.db"

    def __init__(self, db_path: Optional[str] = None):
        """
        Args:
            db_path: SQLite file to open. Falls back to
                ~/.mindscroll/<default_db_name>
        """
        if not db_path:
            home_dir = Path.home() / ".mindscroll"
            home_dir.mkdir(exist_ok=True)
            db_path = str(home_dir / self.default_db_name)

        self.db_path = db_path
        self._local = threading.local()
        self._lock = threading.Lock()

        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Connection owned by the calling thread, opened on first use."""
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    @contextmanager
    def _transaction(self):
        """Commit when the block exits cleanly, roll back if it raises."""
        conn = self._get_connection()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        conn.commit()

    @contextmanager
    def _immediate_transaction(self):
        """
        Transaction that takes the database write lock up front.

        Used for read-modify-write sequences so that two writers never read
        the same row version.
        """
        conn = self._get_connection()
        if conn.in_transaction:
            conn.commit()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        conn.commit()

    def _create_schema(self):
        schema_path = (self.schema_dir or Path(__file__).parent) / self.schema_file
        script = schema_path.read_text(encoding='utf-8')

        conn = self._get_connection()
        conn.executescript(script)
        conn.commit()

    def close(self):
        """Close the calling thread's connection, if it has one."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None
