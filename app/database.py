"""Database utilities for the StashMirror service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from .search_index import FULL_TEXT_INDEXES

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


def _configure_sqlite(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        # Edges may point at entities that have not been synced yet.
        cursor.execute("PRAGMA foreign_keys=OFF")
    finally:
        cursor.close()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        if self._engine.dialect.name == "sqlite":
            event.listen(self._engine.sync_engine, "connect", _configure_sqlite)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables and search indexes if they do not yet exist."""

        # Imported for its side effect of registering every mapped table.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)
            await connection.run_sync(self._ensure_search_indexes)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        table_names = set(inspector.get_table_names())
        known_columns: dict[str, set[str]] = {}

        def _ensure_column(
            table: str, name: str, ddl: str, init_sql: str | None = None
        ) -> None:
            if table not in table_names:
                return
            if table not in known_columns:
                known_columns[table] = {
                    column["name"] for column in inspector.get_columns(table)
                }
            if name in known_columns[table]:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))
            known_columns[table].add(name)
            logger.info("Added column %s.%s", table, name)

        _ensure_column(
            "sync_state",
            "last_full_sync_actual",
            "ALTER TABLE sync_state ADD COLUMN last_full_sync_actual DATETIME",
            (
                "UPDATE sync_state SET last_full_sync_actual = last_full_sync "
                "WHERE last_full_sync_actual IS NULL"
            ),
        )
        _ensure_column(
            "sync_state",
            "last_incremental_sync_actual",
            "ALTER TABLE sync_state ADD COLUMN last_incremental_sync_actual DATETIME",
        )
        _ensure_column(
            "cached_tags",
            "aliases",
            "ALTER TABLE cached_tags ADD COLUMN aliases JSON",
            "UPDATE cached_tags SET aliases = '[]' WHERE aliases IS NULL",
        )
        _ensure_column(
            "scene_groups",
            "scene_index",
            "ALTER TABLE scene_groups ADD COLUMN scene_index INTEGER",
        )
        _ensure_column(
            "watch_history",
            "last_o_at",
            "ALTER TABLE watch_history ADD COLUMN last_o_at DATETIME",
        )

    @staticmethod
    def _ensure_search_indexes(sync_connection) -> None:
        """Create FTS5 tables with their triggers, backfilling new ones."""

        if sync_connection.dialect.name != "sqlite":
            return

        existing = set(inspect(sync_connection).get_table_names())
        for index in FULL_TEXT_INDEXES.values():
            # The sqlite3 driver runs one statement per execute call.
            for statement in index.create_statements():
                sync_connection.exec_driver_sql(statement)
            if index.name not in existing:
                for statement in index.rebuild_statements():
                    sync_connection.exec_driver_sql(statement)
                logger.info("Built search index %s", index.name)

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session
