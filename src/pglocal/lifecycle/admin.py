"""Administrative database operations over the PostgreSQL wire protocol."""
from __future__ import annotations

import logging

import psycopg
from psycopg import sql

from pglocal.constants import Constants
from pglocal.errors import DatabaseError

logger = logging.getLogger(__name__)

_EXISTS_QUERY = "SELECT 1 FROM pg_database WHERE datname = %s"


class _AdminBase:
    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        database: str = Constants.DEFAULT_DATABASE,
        connect_timeout: int = Constants.CONNECT_TIMEOUT_SEC,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.database = database
        self.connect_timeout = connect_timeout

    def _params(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "user": self.username,
            "password": self.password,
            "dbname": self.database,
            # libpq treats values below 2 as 2
            "connect_timeout": int(self.connect_timeout),
            "autocommit": True,
        }


class AdminClient(_AdminBase):
    """Superuser connection used for readiness probes and database management."""

    def ping(self) -> bool:
        """True when the server accepts an authenticated connection."""
        try:
            with psycopg.connect(**self._params()) as conn:
                conn.execute("SELECT 1")
        except psycopg.OperationalError as exc:
            logger.debug("Readiness probe on port %s failed: %s", self.port, exc)
            return False
        return True

    def create_database(self, name: str) -> None:
        logger.info("Creating database %s", name)
        self._execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name)))

    def drop_database(self, name: str) -> None:
        logger.info("Dropping database %s", name)
        self._execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name)))

    def database_exists(self, name: str) -> bool:
        try:
            with psycopg.connect(**self._params()) as conn:
                return conn.execute(_EXISTS_QUERY, (name,)).fetchone() is not None
        except psycopg.Error as exc:
            raise DatabaseError(f"cannot check database {name}: {exc}") from exc

    def _execute(self, statement: sql.Composable) -> None:
        try:
            with psycopg.connect(**self._params()) as conn:
                conn.execute(statement)
        except psycopg.Error as exc:
            raise DatabaseError(str(exc).strip()) from exc


class AsyncAdminClient(_AdminBase):
    """Cooperative counterpart of :class:`AdminClient`."""

    async def ping(self) -> bool:
        try:
            async with await psycopg.AsyncConnection.connect(**self._params()) as conn:
                await conn.execute("SELECT 1")
        except psycopg.OperationalError as exc:
            logger.debug("Readiness probe on port %s failed: %s", self.port, exc)
            return False
        return True

    async def create_database(self, name: str) -> None:
        logger.info("Creating database %s", name)
        await self._execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name)))

    async def drop_database(self, name: str) -> None:
        logger.info("Dropping database %s", name)
        await self._execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name)))

    async def database_exists(self, name: str) -> bool:
        try:
            async with await psycopg.AsyncConnection.connect(**self._params()) as conn:
                cur = await conn.execute(_EXISTS_QUERY, (name,))
                return await cur.fetchone() is not None
        except psycopg.Error as exc:
            raise DatabaseError(f"cannot check database {name}: {exc}") from exc

    async def _execute(self, statement: sql.Composable) -> None:
        try:
            async with await psycopg.AsyncConnection.connect(**self._params()) as conn:
                await conn.execute(statement)
        except psycopg.Error as exc:
            raise DatabaseError(str(exc).strip()) from exc
