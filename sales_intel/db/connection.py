"""PostgreSQL connection pool and schema setup."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from ..config import get_connection_string

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


class Database:
    """Thread-safe connection pool shared by the source reader, cache and result store.

    Worker threads borrow a connection per call and return it afterwards, so
    the pool must be at least as large as the widest concurrency window.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        minconn: int = 1,
        maxconn: int = 20,
        statement_timeout: Optional[float] = None,
    ):
        self.dsn = dsn or get_connection_string()
        self.minconn = minconn
        self.maxconn = maxconn
        self.statement_timeout = statement_timeout
        self._pool: Optional[ThreadedConnectionPool] = None

    def _open(self) -> ThreadedConnectionPool:
        kwargs = {}
        if self.statement_timeout:
            kwargs["options"] = f"-c statement_timeout={int(self.statement_timeout * 1000)}"
        pool = ThreadedConnectionPool(self.minconn, self.maxconn, self.dsn, **kwargs)
        logger.info(f"Opened database pool (min={self.minconn}, max={self.maxconn})")
        return pool

    @property
    def pool(self) -> ThreadedConnectionPool:
        """Lazy-initialize the pool on first use."""
        if self._pool is None:
            self._pool = self._open()
        return self._pool

    @contextmanager
    def connection(self) -> Generator:
        """Borrow a connection; commit on success, roll back on error."""
        conn = self.pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    def ping(self) -> None:
        """Round-trip a trivial query. Raises on failure."""
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None


def init_db(db: Database) -> None:
    """Create the cache and analysis tables if they do not exist."""
    schema_sql = SCHEMA_PATH.read_text()

    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
    logger.info("Database schema initialized")
