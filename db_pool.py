"""SQLite connection pool shared by the detection job and the HTTP service."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    FastAPI runs sync endpoints in a worker thread pool, so connections are
    opened with ``check_same_thread=False`` and handed out one caller at a time.
    """

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 5.0):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created: List[sqlite3.Connection] = []

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection, creating one while under ``max_connections``."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if len(self._created) < self.max_connections:
                    connection = self._create_connection()
                    self._created.append(connection)
                    logger.debug("Opened connection %d/%d to %s",
                                 len(self._created), self.max_connections, self.database)
            if connection is None:
                connection = self._pool.get(block=True, timeout=self.timeout)

        try:
            yield connection
        finally:
            try:
                # Anything the caller did not commit is discarded
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                with self._lock:
                    if connection in self._created:
                        self._created.remove(connection)
                connection.close()

    def close_all(self) -> None:
        """Close every connection the pool has opened."""
        with self._lock:
            while True:
                try:
                    self._pool.get(block=False)
                except Empty:
                    break
            for conn in self._created:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning("Failed to close connection: %s", e)
            self._created = []
