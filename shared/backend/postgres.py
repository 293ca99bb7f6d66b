"""
PostgreSQL Provider
===================

DatabaseService over an async SQLAlchemy 2.0 engine (asyncpg). Used by the
postgresql and aurora-serverless providers.

Tables are reflected on first use and every statement is built with
SQLAlchemy Core, so values are always bound parameters and identifiers
are checked against the reflected schema.

Version: 0.1.0
"""

import time
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Column, MetaData, Table, func, select, text
from sqlalchemy import delete as sql_delete
from sqlalchemy import insert as sql_insert
from sqlalchemy import update as sql_update
from sqlalchemy import types as sqltypes
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.sql.elements import ColumnElement

from shared.backend.base import ChangeType, DatabaseService, RealtimeService
from shared.backend.errors import DatabaseError
from shared.backend.query import FilterOperator, QueryFilter, QueryOptions, QueryResult, validate_identifier, validate_options
from shared.logging import get_logger


logger = get_logger(__name__)


def build_url(
    host: str,
    port: int,
    database: str,
    username: str,
    password: str,
) -> URL:
    """Build an asyncpg connection URL."""
    return URL.create(
        "postgresql+asyncpg",
        username=username,
        password=password,
        host=host,
        port=port,
        database=database,
    )


def _coerce(column: Column, value: Any) -> Any:
    # JSON payloads arrive with ISO timestamps and string UUIDs
    if value is None or not isinstance(value, str):
        return value
    if isinstance(column.type, sqltypes.DateTime):
        return datetime.fromisoformat(value)
    if isinstance(column.type, sqltypes.Date):
        return date.fromisoformat(value)
    if isinstance(column.type, sqltypes.Uuid):
        return uuid.UUID(value)
    return value


def _from_db(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _row_to_dict(row: Any) -> dict[str, Any]:
    return {key: _from_db(value) for key, value in row._mapping.items()}


class PostgresDatabaseService(DatabaseService):
    """
    PostgreSQL-backed DatabaseService.

    Owns its engine; call close() to dispose of the pool.
    """

    def __init__(
        self,
        url: str | URL,
        realtime: RealtimeService | None = None,
        ssl: bool = False,
        echo: bool = False,
        pool_size: int = 10,
        max_overflow: int = 20,
    ) -> None:
        super().__init__(realtime)
        self._engine: AsyncEngine = create_async_engine(
            url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args={"ssl": "require"} if ssl else {},
        )
        self._metadata = MetaData()
        self._url = make_safe_url(url)
        logger.info("postgres_engine_created", url=self._url)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def close(self) -> None:
        """Dispose of the connection pool."""
        await self._engine.dispose()
        logger.info("postgres_engine_closed", url=self._url)

    # -------------------------------------------------------------------------
    # Schema helpers
    # -------------------------------------------------------------------------

    async def _table(self, conn: AsyncConnection, name: str) -> Table:
        validate_identifier(name, "table")
        if name in self._metadata.tables:
            return self._metadata.tables[name]
        try:
            return await conn.run_sync(
                lambda sync_conn: Table(name, self._metadata, autoload_with=sync_conn)
            )
        except NoSuchTableError:
            raise DatabaseError(f"Unknown table: {name}") from None

    @staticmethod
    def _column(table: Table, name: str) -> Column:
        validate_identifier(name, "column")
        try:
            return table.c[name]
        except KeyError:
            raise DatabaseError(f"Unknown column {name!r} on {table.name}") from None

    def _values(self, table: Table, row: dict[str, Any]) -> dict[str, Any]:
        return {name: _coerce(self._column(table, name), value) for name, value in row.items()}

    def _clause(self, column: Column, flt: QueryFilter) -> ColumnElement[bool]:
        value = flt.value
        op = flt.operator

        if op == FilterOperator.EQ:
            return column.is_(None) if value is None else column == _coerce(column, value)
        if op == FilterOperator.NEQ:
            return column.is_not(None) if value is None else column != _coerce(column, value)
        if op == FilterOperator.IN:
            return column.in_([_coerce(column, v) for v in (value or [])])
        if op == FilterOperator.LIKE:
            return column.like(str(value))

        value = _coerce(column, value)
        return {
            FilterOperator.GT: column > value,
            FilterOperator.GTE: column >= value,
            FilterOperator.LT: column < value,
            FilterOperator.LTE: column <= value,
        }[op]

    def _where(self, table: Table, options: QueryOptions) -> list[ColumnElement[bool]]:
        return [self._clause(self._column(table, name), flt) for name, flt in options.filters.items()]

    # -------------------------------------------------------------------------
    # DatabaseService
    # -------------------------------------------------------------------------

    async def select(self, table: str, options: QueryOptions | None = None) -> QueryResult:
        options = options or QueryOptions()
        validate_options(options)

        try:
            async with self._engine.connect() as conn:
                tbl = await self._table(conn, table)
                where = self._where(tbl, options)

                columns = [self._column(tbl, c) for c in options.columns] if options.columns else list(tbl.c)
                stmt = select(*columns).where(*where)
                for order in options.order_by:
                    col = self._column(tbl, order.column)
                    stmt = stmt.order_by(col.asc() if order.ascending else col.desc())
                if options.limit is not None:
                    stmt = stmt.limit(options.limit)
                if options.offset:
                    stmt = stmt.offset(options.offset)

                rows = [_row_to_dict(r) for r in (await conn.execute(stmt)).all()]
                count_stmt = select(func.count()).select_from(tbl).where(*where)
                count = (await conn.execute(count_stmt)).scalar_one()
        except SQLAlchemyError as e:
            logger.error("postgres_select_failed", table=table, error=str(e))
            raise DatabaseError(f"Select on {table} failed: {e}") from e

        return QueryResult(data=rows, count=count)

    async def insert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        rows = [rows] if isinstance(rows, dict) else list(rows)
        if not rows:
            return []

        try:
            async with self._engine.begin() as conn:
                tbl = await self._table(conn, table)
                params = [self._values(tbl, row) for row in rows]
                result = await conn.execute(sql_insert(tbl).returning(*tbl.c), params)
                inserted = [_row_to_dict(r) for r in result.all()]
        except SQLAlchemyError as e:
            logger.error("postgres_insert_failed", table=table, error=str(e))
            raise DatabaseError(f"Insert into {table} failed: {e}") from e

        await self._notify(table, ChangeType.INSERT, inserted)
        return inserted

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        options: QueryOptions,
    ) -> list[dict[str, Any]]:
        options = self._require_filters("update", options)
        validate_options(options)
        if not values:
            raise DatabaseError("update requires at least one value")

        try:
            async with self._engine.begin() as conn:
                tbl = await self._table(conn, table)
                where = self._where(tbl, options)
                if "updated_at" in tbl.c and "updated_at" not in values:
                    values = {**values, "updated_at": func.now()}

                old_rows = [
                    _row_to_dict(r)
                    for r in (await conn.execute(select(tbl).where(*where).with_for_update())).all()
                ]
                stmt = sql_update(tbl).where(*where).values(self._values(tbl, values)).returning(*tbl.c)
                updated = [_row_to_dict(r) for r in (await conn.execute(stmt)).all()]
        except SQLAlchemyError as e:
            logger.error("postgres_update_failed", table=table, error=str(e))
            raise DatabaseError(f"Update on {table} failed: {e}") from e

        await self._notify(table, ChangeType.UPDATE, updated, old_rows)
        return updated

    async def delete(self, table: str, options: QueryOptions) -> int:
        options = self._require_filters("delete", options)
        validate_options(options)

        try:
            async with self._engine.begin() as conn:
                tbl = await self._table(conn, table)
                stmt = sql_delete(tbl).where(*self._where(tbl, options)).returning(*tbl.c)
                removed = [_row_to_dict(r) for r in (await conn.execute(stmt)).all()]
        except SQLAlchemyError as e:
            logger.error("postgres_delete_failed", table=table, error=str(e))
            raise DatabaseError(f"Delete on {table} failed: {e}") from e

        await self._notify(table, ChangeType.DELETE, removed)
        return len(removed)

    async def upsert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
        on_conflict: str = "id",
    ) -> list[dict[str, Any]]:
        rows = [rows] if isinstance(rows, dict) else list(rows)
        if not rows:
            return []

        try:
            async with self._engine.begin() as conn:
                tbl = await self._table(conn, table)
                key_column = self._column(tbl, on_conflict)
                params = [self._values(tbl, row) for row in rows]

                keys = [p[on_conflict] for p in params if p.get(on_conflict) is not None]
                existing = set()
                if keys:
                    found = await conn.execute(select(key_column).where(key_column.in_(keys)))
                    existing = {_from_db(k) for k in found.scalars().all()}

                stmt = pg_insert(tbl)
                update_columns = {
                    name: stmt.excluded[name] for name in params[0] if name != on_conflict
                }
                if "updated_at" in tbl.c and "updated_at" not in update_columns:
                    update_columns["updated_at"] = func.now()
                stmt = stmt.on_conflict_do_update(
                    index_elements=[key_column],
                    set_=update_columns,
                ).returning(*tbl.c)

                result = await conn.execute(stmt, params)
                stored = [_row_to_dict(r) for r in result.all()]
        except SQLAlchemyError as e:
            logger.error("postgres_upsert_failed", table=table, error=str(e))
            raise DatabaseError(f"Upsert into {table} failed: {e}") from e

        inserted = [r for r in stored if r.get(on_conflict) not in existing]
        updated = [r for r in stored if r.get(on_conflict) in existing]
        await self._notify(table, ChangeType.INSERT, inserted)
        await self._notify(table, ChangeType.UPDATE, updated)
        return stored

    async def health_check(self) -> dict[str, Any]:
        try:
            start = time.perf_counter()
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            latency_ms = (time.perf_counter() - start) * 1000

            return {
                "status": "healthy",
                "provider": "postgresql",
                "latency_ms": round(latency_ms, 2),
                "url": self._url,
            }
        except (SQLAlchemyError, OSError) as e:
            logger.error("postgres_health_check_failed", error=str(e))
            return {
                "status": "unhealthy",
                "provider": "postgresql",
                "error": str(e),
            }


def make_safe_url(url: str | URL) -> str:
    """Render a connection URL with the password hidden."""
    if isinstance(url, URL):
        return url.render_as_string(hide_password=True)
    return make_url(url).render_as_string(hide_password=True)
