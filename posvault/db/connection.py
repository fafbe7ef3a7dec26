"""Local store adapter.

Uses SQLAlchemy 2.0 async engine over aiosqlite.  Application tables are
addressed dynamically by name (the snapshot and change-log code never knows
their schema up front), so row access goes through parameterised ``text()``
statements with quoted identifiers.  Bookkeeping tables use the declarative
models in :mod:`posvault.db.models`.

Transactions: pysqlite/aiosqlite defer ``BEGIN`` until the first DML
statement and cannot nest SAVEPOINTs correctly in that mode.  On SQLite the
engine is switched to explicit ``BEGIN`` emission (the recipe from the
SQLAlchemy aiosqlite dialect docs) so ``transaction()`` covers every
statement and ``begin_nested()`` works.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Mapping

from sqlalchemy import event, inspect, select, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from posvault.db.models import AppState, Base
from posvault.db.values import Row, RowValue, coerce_row, coerce_value

logger = logging.getLogger(__name__)


class LocalStore:
    """Async connection manager and row-level adapter for the on-device store."""

    def __init__(self, url: str, timeout: float = 30.0, echo: bool = False):
        self._url = url
        self._timeout = timeout
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("LocalStore not connected")
        return self._engine

    @property
    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == "sqlite"

    async def connect(self) -> None:
        """Create the engine."""
        connect_args = {}
        if self._url.startswith("sqlite"):
            connect_args["timeout"] = self._timeout
            database = make_url(self._url).database
            if database and database != ":memory:":
                Path(database).parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_async_engine(
            self._url,
            echo=self._echo,
            connect_args=connect_args,
        )
        if self._engine.dialect.name == "sqlite":
            _install_sqlite_transaction_hooks(self._engine)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Local store connected (%s)", self._engine.url.render_as_string(hide_password=True))

    async def disconnect(self) -> None:
        """Dispose of the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Local store disconnected")

    def get_session(self) -> AsyncSession:
        """Get a new ORM session for the bookkeeping tables."""
        if not self._session_factory:
            raise RuntimeError("LocalStore not connected")
        return self._session_factory()

    async def create_tables(self) -> None:
        """Create the bookkeeping tables if they are missing."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Bookkeeping tables ready")

    async def health_check(self) -> bool:
        """Check the store answers a trivial query."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.error("Local store health check failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """BEGIN on entry, COMMIT on clean exit, ROLLBACK if the block raises."""
        async with self.engine.begin() as conn:
            yield conn

    @asynccontextmanager
    async def using(self, conn: AsyncConnection | None) -> AsyncIterator[AsyncConnection]:
        if conn is not None:
            yield conn
            return
        async with self.engine.connect() as own:
            yield own

    def quote(self, identifier: str) -> str:
        """Quote a table or column name for the active dialect."""
        return self.engine.dialect.identifier_preparer.quote_identifier(identifier)

    # ------------------------------------------------------------------
    # Key/value state
    # ------------------------------------------------------------------

    async def get_state(self, key: str, default: str | None = None) -> str | None:
        """Read one ``app_state`` value."""
        async with self.get_session() as session:
            value = await session.scalar(select(AppState.value).where(AppState.key == key))
        return default if value is None else value

    async def set_state(self, values: Mapping[str, str | None]) -> None:
        """Write one or more ``app_state`` values in a single transaction."""
        async with self.get_session() as session:
            async with session.begin():
                for key, value in values.items():
                    await session.merge(AppState(key=key, value=value))

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def list_tables(self, conn: AsyncConnection | None = None) -> list[str]:
        """Names of the user tables currently in the store."""
        async with self.using(conn) as c:
            return await c.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    async def table_exists(self, table: str, conn: AsyncConnection | None = None) -> bool:
        return table in await self.list_tables(conn)

    # ------------------------------------------------------------------
    # Whole-table access
    # ------------------------------------------------------------------

    async def read_all(self, table: str, conn: AsyncConnection | None = None) -> list[Row]:
        """Every row of *table* as ordered column -> value dicts."""
        async with self.using(conn) as c:
            result = await c.execute(text(f"SELECT * FROM {self.quote(table)}"))
            return [coerce_row(r._mapping) for r in result]

    async def delete_all(self, table: str, conn: AsyncConnection) -> int:
        result = await conn.execute(text(f"DELETE FROM {self.quote(table)}"))
        return result.rowcount

    async def reset_auto_increment(self, table: str, conn: AsyncConnection) -> bool:
        """Reset the AUTOINCREMENT counter of *table*.

        Returns False when the store keeps no counter for it (non-SQLite
        dialect, or no AUTOINCREMENT table has been created yet).
        """
        if not self.is_sqlite:
            return False
        exists = await conn.execute(
            text("SELECT 1 FROM sqlite_master WHERE type='table' AND name='sqlite_sequence'")
        )
        if exists.first() is None:
            logger.debug("No sqlite_sequence; nothing to reset for %s", table)
            return False
        await conn.execute(
            text("DELETE FROM sqlite_sequence WHERE name = :name"), {"name": table}
        )
        return True

    # ------------------------------------------------------------------
    # Row-level writes
    # ------------------------------------------------------------------

    async def insert(self, table: str, row: Mapping[str, RowValue], conn: AsyncConnection) -> None:
        """INSERT one row.  Every key becomes a column; ``None`` is written as NULL."""
        if not row:
            raise ValueError(f"refusing to insert an empty row into {table}")
        columns = list(row.keys())
        params = {f"p{i}": coerce_value(row[col]) for i, col in enumerate(columns)}
        column_sql = ", ".join(self.quote(col) for col in columns)
        value_sql = ", ".join(f":p{i}" for i in range(len(columns)))
        await conn.execute(
            text(f"INSERT INTO {self.quote(table)} ({column_sql}) VALUES ({value_sql})"),
            params,
        )

    async def update(
        self,
        table: str,
        key_column: str,
        key_value: RowValue,
        values: Mapping[str, RowValue],
        conn: AsyncConnection,
    ) -> int:
        """UPDATE the row(s) whose *key_column* equals *key_value*.  Returns rowcount."""
        columns = [col for col in values.keys() if col != key_column]
        if not columns:
            return 0
        params: dict[str, RowValue] = {
            f"p{i}": coerce_value(values[col]) for i, col in enumerate(columns)
        }
        params["key"] = key_value
        set_sql = ", ".join(f"{self.quote(col)} = :p{i}" for i, col in enumerate(columns))
        result = await conn.execute(
            text(f"UPDATE {self.quote(table)} SET {set_sql} WHERE {self.quote(key_column)} = :key"),
            params,
        )
        return result.rowcount

    async def delete(
        self,
        table: str,
        key_column: str,
        key_value: RowValue,
        conn: AsyncConnection,
    ) -> int:
        """DELETE the row(s) whose *key_column* equals *key_value*.  Returns rowcount."""
        result = await conn.execute(
            text(f"DELETE FROM {self.quote(table)} WHERE {self.quote(key_column)} = :key"),
            {"key": key_value},
        )
        return result.rowcount


def _install_sqlite_transaction_hooks(engine: AsyncEngine) -> None:
    """Emit BEGIN ourselves instead of letting the driver defer it."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")
