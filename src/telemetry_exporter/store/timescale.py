"""
TimescaleDB backend for the exporter.

One hypertable per collection (ts, metadata, doc). Small batches go through
executemany, large ones through COPY.
"""

from __future__ import annotations

import csv
import io
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence

import psycopg
from loguru import logger
from psycopg import sql as psql
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from ..exporter.errors import StoreConnectionError, map_store_error
from ..exporter.settings import ExporterSettings
from ..exporter.types import CollectionOptions, IndexOptions
from .sql import (
    add_retention_statement,
    copy_statement,
    create_hypertable_statement,
    create_index_statement,
    create_table_statement,
    insert_statement,
)


class TimescaleStore:
    def __init__(
        self,
        dsn: str,
        *,
        pool_min_size: int = 1,
        pool_max_size: int = 20,
        connect_timeout_s: float = 5.0,
        statement_timeout_ms: int = 30_000,
        copy_min_rows: int = 1000,
        app_name: str = "telemetry-exporter",
    ):
        self.dsn = dsn
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.connect_timeout_s = connect_timeout_s
        self.statement_timeout_ms = statement_timeout_ms
        self.copy_min_rows = copy_min_rows
        self.app_name = app_name
        self.pool: Optional[AsyncConnectionPool] = None
        self.timescale_available: Optional[bool] = None

    @classmethod
    def from_settings(cls, settings: ExporterSettings) -> "TimescaleStore":
        return cls(
            settings.connection_string,
            pool_min_size=settings.pool_min_size,
            pool_max_size=settings.pool_max_size,
            connect_timeout_s=settings.connect_timeout_s,
            statement_timeout_ms=settings.statement_timeout_ms,
            copy_min_rows=settings.copy_min_rows,
        )

    # ---------- connection ----------

    async def connect(self) -> None:
        if self.pool is not None:
            return
        pool = AsyncConnectionPool(
            conninfo=self.dsn,
            min_size=self.pool_min_size,
            max_size=self.pool_max_size,
            timeout=self.connect_timeout_s,
            kwargs={"autocommit": False, "connect_timeout": int(self.connect_timeout_s)},
            open=False,
        )
        try:
            await pool.open(wait=True, timeout=self.connect_timeout_s)
        except Exception as e:
            await pool.close()
            raise map_store_error(e) from e
        self.pool = pool
        logger.info(f"Connected to backend (pool {self.pool_min_size}-{self.pool_max_size})")

    async def close(self) -> None:
        pool, self.pool = self.pool, None
        if pool is not None:
            await pool.close()

    @asynccontextmanager
    async def _conn(self) -> AsyncIterator[psycopg.AsyncConnection]:
        if self.pool is None:
            raise StoreConnectionError("not connected")
        async with self.pool.connection() as conn:
            await conn.execute(
                psql.SQL("SET application_name = {}").format(psql.Literal(self.app_name))
            )
            if self.statement_timeout_ms:
                await conn.execute(
                    psql.SQL("SET statement_timeout = {}").format(
                        psql.Literal(int(self.statement_timeout_ms))
                    )
                )
            yield conn

    async def ping(self) -> bool:
        try:
            async with self._conn() as conn:
                await conn.execute("SELECT 1")
                return True
        except psycopg.Error as e:
            raise map_store_error(e) from e

    # ---------- provisioning ----------

    async def ensure_collection(self, name: str, options: CollectionOptions) -> None:
        try:
            async with self._conn() as conn:
                await conn.execute(create_table_statement(name))
                hyper = await self._try(
                    conn, create_hypertable_statement(name, options.granularity)
                )
                self.timescale_available = hyper
                if not hyper:
                    logger.warning(
                        f"TimescaleDB not available, {name} kept as a plain table"
                    )
                elif options.retention_days > 0:
                    if await self._try(conn, add_retention_statement(name, options.retention_days)):
                        logger.info(f"Retention on {name}: {options.retention_days} days")
                await conn.commit()
        except psycopg.Error as e:
            raise map_store_error(e) from e

    async def _try(self, conn: psycopg.AsyncConnection, stmt: psql.Composed) -> bool:
        try:
            async with conn.transaction():
                await conn.execute(stmt)
            return True
        except psycopg.errors.UndefinedFunction as e:
            logger.debug(f"Timescale function unavailable: {e}")
            return False

    async def create_index(
        self, collection: str, keys: Sequence[str], options: IndexOptions | None = None
    ) -> None:
        opts = options or IndexOptions()
        stmt = create_index_statement(collection, keys, name=opts.name, unique=opts.unique)
        try:
            async with self._conn() as conn:
                await conn.execute(stmt)
                await conn.commit()
        except psycopg.Error as e:
            raise map_store_error(e) from e

    # ---------- writes ----------

    def _rows(self, records: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {"ts": r["timestamp"], "metadata": Jsonb(r.get("metadata") or {}), "doc": Jsonb(r)}
            for r in records
        ]

    async def _copy_csv(
        self, conn: psycopg.AsyncConnection, table: str, records: Sequence[dict[str, Any]]
    ) -> None:
        sio = io.StringIO()
        writer = csv.writer(sio)
        for r in records:
            writer.writerow(
                [r["timestamp"], json.dumps(r.get("metadata") or {}), json.dumps(r)]
            )
        sio.seek(0)
        async with conn.cursor() as cur, cur.copy(copy_statement(table)) as cp:
            await cp.write(sio.read())

    async def bulk_insert(self, collection: str, records: Sequence[dict[str, Any]]) -> int:
        """Insert documents in order. Returns the number written."""
        if not records:
            return 0
        try:
            async with self._conn() as conn:
                if len(records) >= self.copy_min_rows:
                    await self._copy_csv(conn, collection, records)
                else:
                    async with conn.cursor() as cur:
                        await cur.executemany(insert_statement(collection), self._rows(records))
                await conn.commit()
        except psycopg.Error as e:
            raise map_store_error(e) from e
        return len(records)

