from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import aiomysql
import aiosqlite
from loguru import logger

from .config import get_settings


def _to_sqlite_placeholders(sql: str) -> str:
    """Repositories are written with ``%s`` placeholders; SQLite expects ``?``."""

    return sql.replace("%s", "?")


class Transaction:
    """Connection bound to an open transaction.

    Mirrors :meth:`Database.execute` so repository code can run a group of
    statements atomically without caring which driver is active.
    """

    def __init__(self, conn: Any, *, sqlite: bool) -> None:
        self._conn = conn
        self._sqlite = sqlite

    async def execute(self, sql: str, params: tuple | dict | None = None) -> int:
        if self._sqlite:
            cursor = await self._conn.execute(_to_sqlite_placeholders(sql), params or ())
            return cursor.rowcount
        async with self._conn.cursor() as cursor:
            await cursor.execute(sql, params)
            return cursor.rowcount


class Database:
    def __init__(self) -> None:
        self._pool: aiomysql.Pool | None = None
        self._sqlite_conn: aiosqlite.Connection | None = None
        self._sqlite_lock = asyncio.Lock()
        self._settings = get_settings()
        self._use_sqlite = self._should_use_sqlite()

    def _should_use_sqlite(self) -> bool:
        """Use SQLite when any of the MySQL connection settings is missing."""
        return not all([
            self._settings.database_host,
            self._settings.database_user,
            self._settings.database_name,
        ])

    def _get_sqlite_path(self) -> Path:
        return Path(__file__).resolve().parent.parent.parent / "ticket_automation.db"

    async def connect(self) -> None:
        if self._pool or self._sqlite_conn:
            return

        if self._use_sqlite:
            logger.info("Connecting to SQLite database")
            self._sqlite_conn = await aiosqlite.connect(str(self._get_sqlite_path()))
            self._sqlite_conn.row_factory = aiosqlite.Row
            await self._sqlite_conn.execute("PRAGMA foreign_keys = ON")
            await self._sqlite_conn.commit()
        else:
            logger.info("Connecting to MySQL at {host}", host=self._settings.database_host)
            self._pool = await aiomysql.create_pool(
                host=self._settings.database_host,
                user=self._settings.database_user,
                password=self._settings.database_password,
                db=self._settings.database_name,
                autocommit=True,
                minsize=1,
                maxsize=10,
                pool_recycle=600,
                init_command="SET time_zone = '+00:00'",
            )

    async def disconnect(self) -> None:
        if self._sqlite_conn:
            logger.info("Disconnecting from SQLite database")
            await self._sqlite_conn.close()
            self._sqlite_conn = None
        elif self._pool:
            logger.info("Disconnecting from MySQL database")
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None

    def is_connected(self) -> bool:
        return self._pool is not None or self._sqlite_conn is not None

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            yield self._sqlite_conn
        else:
            if not self._pool:
                raise RuntimeError("Database pool not initialised")
            conn = await self._pool.acquire()
            try:
                yield conn
            finally:
                self._pool.release(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run the enclosed statements atomically, rolling back on any error."""
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            async with self._sqlite_lock:
                await self._sqlite_conn.execute("BEGIN")
                try:
                    yield Transaction(self._sqlite_conn, sqlite=True)
                except BaseException:
                    await self._sqlite_conn.rollback()
                    raise
                else:
                    await self._sqlite_conn.commit()
            return

        async with self.acquire() as conn:
            await conn.begin()
            try:
                yield Transaction(conn, sqlite=False)
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def execute(self, sql: str, params: tuple | dict | None = None) -> int:
        """Execute a statement and return the number of affected rows."""
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            async with self._sqlite_lock:
                cursor = await self._sqlite_conn.execute(
                    _to_sqlite_placeholders(sql), params or ()
                )
                await self._sqlite_conn.commit()
            return cursor.rowcount
        async with self.acquire() as conn:
            async with conn.cursor() as cursor:
                await cursor.execute(sql, params)
                return cursor.rowcount

    async def fetch_one(self, sql: str, params: tuple | dict | None = None):
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            cursor = await self._sqlite_conn.execute(_to_sqlite_placeholders(sql), params or ())
            row = await cursor.fetchone()
            return dict(row) if row else None
        async with self.acquire() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(sql, params)
                return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: tuple | dict | None = None):
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            cursor = await self._sqlite_conn.execute(_to_sqlite_placeholders(sql), params or ())
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]
        async with self.acquire() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(sql, params)
                return await cursor.fetchall()

    def _get_migrations_dir(self) -> Path:
        return Path(__file__).resolve().parent.parent.parent / "migrations"

    @staticmethod
    def _split_sql_statements(sql: str) -> list[str]:
        """Split a migration script on semicolons outside quoted literals and ``--`` comments."""

        statements: list[str] = []
        current: list[str] = []
        quote: str | None = None
        for line in sql.splitlines():
            if quote is None and line.lstrip().startswith("--"):
                continue
            for char in line:
                if quote:
                    if char == quote:
                        quote = None
                elif char in ("'", '"'):
                    quote = char
                elif char == ";":
                    statement = "".join(current).strip()
                    if statement:
                        statements.append(statement)
                    current = []
                    continue
                current.append(char)
            current.append("\n")
        remaining = "".join(current).strip()
        if remaining:
            statements.append(remaining)
        return statements

    async def run_migrations(self) -> None:
        """Apply every pending ``migrations/*.sql`` file in name order."""
        await self.connect()
        migrations_dir = self._get_migrations_dir()
        if not migrations_dir.exists():
            logger.warning("No migrations directory found at {path}", path=str(migrations_dir))
            return

        await self.execute(
            "CREATE TABLE IF NOT EXISTS migrations (name VARCHAR(255) PRIMARY KEY)"
        )
        applied = {row["name"] for row in await self.fetch_all("SELECT name FROM migrations")}

        for path in sorted(migrations_dir.glob("*.sql")):
            if path.name in applied:
                continue
            statements = self._split_sql_statements(path.read_text(encoding="utf-8"))
            async with self.transaction() as tx:
                for statement in statements:
                    await tx.execute(statement)
                await tx.execute("INSERT INTO migrations (name) VALUES (%s)", (path.name,))
            logger.info("Applied migration {name}", name=path.name)


db = Database()
