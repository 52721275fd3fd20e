"""
Process-wide connection context and the per-call reconciliation transaction.

The context bundles a thread-safe connection pool with the database engine
and version detected at configuration time. It is built once by configure()
and handed to every resource; nothing in it changes afterwards.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, Sequence, Type

import psycopg2
from psycopg2 import pool

from .config import Config, ProviderSettings
from .db_version import EngineVersion, parse_db_version
from .errors import (
    CommitError,
    DatabaseConnectionError,
    ProviderError,
    RollbackError,
    StatementError,
)

logger = logging.getLogger("postgresql-provider.context")

VERSION_QUERY = "SELECT VERSION();"


def statement_text(cursor, statement, params: Optional[Sequence[Any]] = None) -> str:
    """Render a statement exactly as the server will receive it"""
    rendered = cursor.mogrify(statement, params)
    if isinstance(rendered, bytes):
        return rendered.decode("utf-8", "replace")
    return rendered


# ============================================================================
# CONNECTION CONTEXT
# ============================================================================

class ConnectionContext:
    """Pooled database handle plus the detected (engine, version)"""

    def __init__(self, connection_pool, engine_version: EngineVersion):
        self._pool = connection_pool
        self._engine_version = engine_version

    @property
    def pool(self):
        return self._pool

    @property
    def engine_version(self) -> EngineVersion:
        return self._engine_version

    @property
    def engine(self) -> str:
        return self._engine_version.engine

    @property
    def version(self) -> str:
        return self._engine_version.version

    def acquire(self):
        """Check a connection out of the pool"""
        try:
            return self._pool.getconn()
        except psycopg2.Error as e:
            raise DatabaseConnectionError(
                f"Unable to acquire a connection from the pool, got error: {e}", e
            ) from e

    def release(self, conn):
        """
        Return a connection to the pool

        The pool rolls back any transaction still open on the connection,
        so an abandoned call never leaves a transaction behind.
        """
        self._pool.putconn(conn)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Scoped checkout: the connection goes back to the pool on every exit path"""
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def transaction(self) -> "ReconciliationTransaction":
        return ReconciliationTransaction(self)

    def close(self):
        """Close the connection pool"""
        if self._pool is not None and not self._pool.closed:
            self._pool.closeall()
            logger.info("Database connection pool closed")


# ============================================================================
# RECONCILIATION TRANSACTION
# ============================================================================

class ReconciliationTransaction:
    """
    Single-use handle wrapping one SQL transaction for one Create/Update/Delete call.

    Use as a context manager. Leaving the block without commit() rolls the
    transaction back. If the rollback itself fails while an error is
    propagating, the RollbackError is attached to that error rather than
    replacing it.
    """

    def __init__(self, context: ConnectionContext):
        self._context = context
        self._conn = None
        self._used = False
        self._finished = False

    def __enter__(self) -> "ReconciliationTransaction":
        if self._used:
            raise RuntimeError("ReconciliationTransaction cannot be reused")
        self._used = True
        try:
            self._conn = self._context.acquire()
        except DatabaseConnectionError as e:
            raise DatabaseConnectionError(
                f"Unable to start a new transaction, got error: {e.cause}", e.cause
            ) from e
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if not self._finished:
                self._rollback(exc)
        finally:
            self._context.release(self._conn)
            self._conn = None
        return False

    def render(self, statement, params: Optional[Sequence[Any]] = None) -> str:
        with self._conn.cursor() as cur:
            return statement_text(cur, statement, params)

    def execute(
        self,
        statement,
        params: Optional[Sequence[Any]] = None,
        error_cls: Type[StatementError] = StatementError,
    ) -> List[tuple]:
        """
        Execute one statement inside the transaction

        Args:
            statement: SQL string or psycopg2.sql composable
            params: Bound parameters
            error_cls: StatementError subclass raised on failure

        Returns:
            Fetched rows, or an empty list for statements without a result set
        """
        if self._conn is None or self._finished:
            raise RuntimeError("ReconciliationTransaction is not active")

        with self._conn.cursor() as cur:
            text = statement_text(cur, statement, params)
            logger.info(text)
            try:
                cur.execute(statement, params)
                if cur.description is None:
                    return []
                return cur.fetchall()
            except psycopg2.Error as e:
                logger.error(f"Error executing query '{text}': {e}")
                raise error_cls(text, e) from e

    def commit(self):
        """Commit; a failure here leaves the outcome ambiguous"""
        try:
            self._conn.commit()
        except psycopg2.Error as e:
            logger.error(f"Error committing DB transaction: {e}")
            raise CommitError(e) from e
        finally:
            self._finished = True

    def _rollback(self, exc: Optional[BaseException]):
        self._finished = True
        try:
            self._conn.rollback()
        except psycopg2.Error as e:
            rollback_error = RollbackError(e)
            logger.error(rollback_error.detail)
            if isinstance(exc, ProviderError):
                exc.rollback_error = rollback_error
            elif exc is None:
                raise rollback_error from e


# ============================================================================
# CONFIGURATION
# ============================================================================

def configure(
    settings: ProviderSettings,
    pool_factory: Callable[..., Any] = pool.ThreadedConnectionPool,
) -> ConnectionContext:
    """
    Build the connection context for the provider

    Creates the pool, identifies the database with `SELECT VERSION();` and
    bundles both. A database that cannot be identified is never operated on:
    the pool is closed and the error propagates.

    Args:
        settings: Validated provider settings
        pool_factory: Pool constructor, ThreadedConnectionPool by default

    Returns:
        ConnectionContext shared by every resource

    Raises:
        DatabaseConnectionError: pool creation or the version query failed
        UnrecognizedVersionError: the version string matched no known dialect
    """
    logger.info(
        f"Configuring DB connection pool for {settings.hostname}:{settings.port}/"
        f"{settings.database_name} (max {settings.pool_max_connections} connections)"
    )

    try:
        connection_pool = pool_factory(
            Config.DB_POOL_MIN_CONN,
            settings.pool_max_connections,
            **settings.connect_kwargs(),
        )
    except psycopg2.Error as e:
        raise DatabaseConnectionError(f"Unable to create DB connection pool, got error: {e}", e) from e

    try:
        raw_version = _query_version(connection_pool)
        engine_version = parse_db_version(raw_version)
    except ProviderError:
        connection_pool.closeall()
        raise

    logger.info(f"Detected database {engine_version}")
    return ConnectionContext(connection_pool, engine_version)


def _query_version(connection_pool) -> str:
    try:
        conn = connection_pool.getconn()
    except psycopg2.Error as e:
        raise DatabaseConnectionError(
            f"Unable to acquire a connection from the pool, got error: {e}", e
        ) from e

    try:
        with conn.cursor() as cur:
            cur.execute(VERSION_QUERY)
            row = cur.fetchone()
    except psycopg2.Error as e:
        raise DatabaseConnectionError(
            f"An unexpected error occurred when running `{VERSION_QUERY}`, got error: {e}", e
        ) from e
    finally:
        connection_pool.putconn(conn)

    if not row:
        raise DatabaseConnectionError(f"`{VERSION_QUERY}` returned no rows")
    return row[0]
