#!/usr/bin/env python3
"""
Backing store access: connections, cancellation and the bounded pool.

The store is a black-box row service. Two drivers are supported:
1. mysql  - mysql-connector-python against a MySQL server (the production store)
2. duckdb - a DuckDB database file or :memory: (local evaluation and tests)

The pool is the one shared mutable resource across strategies: every
execution holds exactly one connection for its duration and releases it on
every exit path, including cancellation and error.
"""
import logging
import queue
import threading
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

import duckdb
import mysql.connector

from fusionlab.config import StoreConfig
from fusionlab.errors import ExecutionFailure, QueryTimeoutError, StoreConnectionError

logger = logging.getLogger(__name__)

# mysql-connector FieldType names -> DuckDB column types for local scans
MYSQL_TYPE_MAP = {
    "TINY": "BIGINT", "SHORT": "BIGINT", "LONG": "BIGINT", "INT24": "BIGINT", "LONGLONG": "BIGINT",
    "YEAR": "BIGINT", "BIT": "BIGINT",
    "FLOAT": "DOUBLE", "DOUBLE": "DOUBLE",
    "DECIMAL": "DECIMAL(38, 10)", "NEWDECIMAL": "DECIMAL(38, 10)",
    "DATE": "DATE", "NEWDATE": "DATE", "DATETIME": "TIMESTAMP", "TIMESTAMP": "TIMESTAMP",
    "TIME": "TIME", "JSON": "VARCHAR",
    "BLOB": "BLOB", "TINY_BLOB": "BLOB", "MEDIUM_BLOB": "BLOB", "LONG_BLOB": "BLOB",
}

MYSQL_QUERY_INTERRUPTED = 1317


class StoreConnection:
    """One live connection. query() honours a per-call timeout by cancelling in flight."""

    def __init__(self):
        self.broken = False
        self._cancelled = threading.Event()

    def query(self, sql: str, timeout_s: Optional[float] = None) -> Tuple[List[str], List[tuple]]:
        self._cancelled.clear()
        timer = None
        if timeout_s is not None:
            timer = threading.Timer(timeout_s, self._expire)
            timer.daemon = True
            timer.start()
        try:
            return self._query(sql)
        except QueryTimeoutError:
            self.broken = True
            raise
        except ExecutionFailure:
            if self._cancelled.is_set():
                self.broken = True
                raise QueryTimeoutError(f"query cancelled after {timeout_s}s") from None
            raise
        finally:
            if timer is not None:
                timer.cancel()

    def run(self, sql: str) -> None:
        """Execute a statement that returns no rows (DDL / DML)."""
        self._query(sql)

    def column_types(self, sql: str) -> List[Tuple[str, str]]:
        """(name, duckdb type) for every output column of sql."""
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def _expire(self) -> None:
        self._cancelled.set()
        try:
            self.cancel()
        except Exception as e:
            logger.warning("[store] cancel failed: %s", e)

    def _query(self, sql: str) -> Tuple[List[str], List[tuple]]:
        raise NotImplementedError


class DuckDBConnection(StoreConnection):
    def __init__(self, con: duckdb.DuckDBPyConnection):
        super().__init__()
        self._con = con

    def _query(self, sql: str) -> Tuple[List[str], List[tuple]]:
        try:
            cur = self._con.execute(sql)
            if cur.description is None:
                return [], []
            columns = [desc[0] for desc in cur.description]
            return columns, cur.fetchall()
        except duckdb.InterruptException as e:
            raise QueryTimeoutError(f"query interrupted: {e}") from e
        except (duckdb.ConnectionException, duckdb.IOException) as e:
            self.broken = True
            raise StoreConnectionError(str(e)) from e
        except duckdb.Error as e:
            raise ExecutionFailure(str(e)) from e

    def column_types(self, sql: str) -> List[Tuple[str, str]]:
        _, rows = self._query(f"DESCRIBE {sql}")
        return [(row[0], row[1]) for row in rows]

    def load(self, table: str, column_types: List[Tuple[str, str]], rows: List[tuple]) -> None:
        """Create table with the given (name, type) columns and bulk insert rows."""
        cols = ", ".join(f"{_quote(name)} {ctype}" for name, ctype in column_types)
        try:
            self._con.execute(f"CREATE TABLE {_quote(table)} ({cols})")
            if rows:
                marks = ", ".join("?" for _ in column_types)
                self._con.executemany(f"INSERT INTO {_quote(table)} VALUES ({marks})", rows)
        except duckdb.Error as e:
            raise ExecutionFailure(f"loading {table}: {e}") from e

    def cancel(self) -> None:
        self._con.interrupt()

    def close(self) -> None:
        self._con.close()


class MySQLConnection(StoreConnection):
    def __init__(self, config: StoreConfig):
        super().__init__()
        self._mysql = mysql.connector
        self._config = config
        try:
            self._cnx = mysql.connector.connect(**self._parameters())
        except mysql.connector.Error as e:
            raise StoreConnectionError(f"cannot connect to {config.host}:{config.port}: {e}") from e

    def _parameters(self):
        return {
            "host": self._config.host,
            "port": self._config.port,
            "user": self._config.user,
            "password": self._config.password or "",
            "database": self._config.database,
            "connection_timeout": self._config.connect_timeout,
            "autocommit": True,
            "use_unicode": True,
            "charset": "utf8mb4",
        }

    def _query(self, sql: str) -> Tuple[List[str], List[tuple]]:
        errors = self._mysql.errors
        try:
            cur = self._cnx.cursor()
            try:
                cur.execute(sql)
                if cur.description is None:
                    return [], []
                columns = [desc[0] for desc in cur.description]
                return columns, [tuple(r) for r in cur.fetchall()]
            finally:
                cur.close()
        except errors.DatabaseError as e:
            if getattr(e, "errno", None) == MYSQL_QUERY_INTERRUPTED:
                raise QueryTimeoutError(f"query interrupted: {e}") from e
            if isinstance(e, (errors.InterfaceError, errors.OperationalError)):
                self.broken = True
                raise StoreConnectionError(str(e)) from e
            raise ExecutionFailure(str(e)) from e
        except errors.Error as e:
            self.broken = True
            raise StoreConnectionError(str(e)) from e

    def column_types(self, sql: str) -> List[Tuple[str, str]]:
        cur = self._cnx.cursor()
        try:
            cur.execute(f"SELECT * FROM ({sql}) AS _fl_probe LIMIT 0")
            cur.fetchall()
            out = []
            for desc in cur.description:
                name = self._mysql.FieldType.get_info(desc[1])
                out.append((desc[0], MYSQL_TYPE_MAP.get(name, "VARCHAR")))
            return out
        except self._mysql.Error as e:
            raise ExecutionFailure(str(e)) from e
        finally:
            cur.close()

    def cancel(self) -> None:
        # KILL QUERY must come from a second session
        side = self._mysql.connect(**self._parameters())
        try:
            cur = side.cursor()
            cur.execute(f"KILL QUERY {int(self._cnx.connection_id)}")
            cur.close()
        finally:
            side.close()

    def close(self) -> None:
        try:
            self._cnx.close()
        except self._mysql.Error:
            pass


class ConnectionPool:
    """Bounded, thread-safe pool with scoped acquisition."""

    def __init__(self, config: StoreConfig, size: int = 4, connect_retries: int = 2,
                 retry_backoff_s: float = 0.05):
        self.config = config.validate()
        self.size = size
        self.connect_retries = connect_retries
        self.retry_backoff_s = retry_backoff_s
        self._slots = threading.BoundedSemaphore(size)
        self._idle: "queue.LifoQueue[StoreConnection]" = queue.LifoQueue()
        self._lock = threading.Lock()
        self._in_use = 0
        self._closed = False
        self._root = None
        if config.backend == "duckdb":
            try:
                self._root = duckdb.connect(database=config.database)
            except duckdb.Error as e:
                raise StoreConnectionError(f"cannot open duckdb database {config.database!r}: {e}") from e

    @property
    def in_use(self) -> int:
        return self._in_use

    def utilization(self) -> float:
        return self._in_use / self.size

    @contextmanager
    def acquire(self, timeout: Optional[float] = None) -> Iterator[StoreConnection]:
        if self._closed:
            raise StoreConnectionError("connection pool is closed")
        if not self._slots.acquire(timeout=timeout):
            raise QueryTimeoutError(f"timed out after {timeout}s waiting for a store connection")
        conn = None
        with self._lock:
            self._in_use += 1
        try:
            conn = self._checkout()
            yield conn
        finally:
            if conn is not None:
                if conn.broken or self._closed:
                    self._discard(conn)
                else:
                    self._idle.put(conn)
            with self._lock:
                self._in_use -= 1
            self._slots.release()

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                self._discard(self._idle.get_nowait())
            except queue.Empty:
                break
        if self._root is not None:
            self._root.close()
            self._root = None

    def _checkout(self) -> StoreConnection:
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass
        attempt = 0
        while True:
            try:
                return self._connect()
            except StoreConnectionError as e:
                if attempt >= self.connect_retries:
                    raise
                delay = self.retry_backoff_s * (2 ** attempt)
                attempt += 1
                logger.warning("[store] connect failed (%s); retry %d/%d in %.2fs",
                               e, attempt, self.connect_retries, delay)
                time.sleep(delay)

    def _connect(self) -> StoreConnection:
        if self.config.backend == "duckdb":
            if self._root is None:
                raise StoreConnectionError("duckdb database is closed")
            return DuckDBConnection(self._root.cursor())
        return MySQLConnection(self.config)

    def _discard(self, conn: StoreConnection) -> None:
        try:
            conn.close()
        except Exception as e:
            logger.debug("[store] close failed: %s", e)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def local_engine() -> DuckDBConnection:
    """Fresh in-memory DuckDB used for local joins/aggregation."""
    con = duckdb.connect(database=":memory:")
    return DuckDBConnection(con)
