"""
Local Provider
==============

In-process implementations for development and tests:

- LocalDatabaseService: in-memory tables, optionally persisted as one JSON
  file per table (table_<name>.json) under a data directory
- LocalStorageService: in-memory object store with local:// signed URLs
- LocalFunctionService: registry of in-process handlers

Version: 0.1.0
"""

import asyncio
import copy
import inspect
import json
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from shared.backend.base import (
    ChangeType,
    DatabaseService,
    FunctionHandler,
    FunctionService,
    RealtimeService,
    StorageService,
    StoredObject,
)
from shared.backend.errors import DatabaseError, FunctionError, StorageError
from shared.backend.query import QueryOptions, QueryResult, apply_query, matches, validate_identifier, validate_options
from shared.logging import get_logger
from shared.scoring import score_transcript


logger = get_logger(__name__)


def _as_rows(rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(rows, dict):
        return [rows]
    return list(rows)


# =============================================================================
# Database
# =============================================================================


def _write_atomically(path: Path, payload: str) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(payload)
    tmp.replace(path)


class LocalDatabaseService(DatabaseService):
    """
    In-memory table store.

    Rows get a string UUID id and created_at/updated_at timestamps when
    the caller does not provide them. With a data directory every write
    rewrites the table's JSON file.
    """

    def __init__(
        self,
        data_dir: Path | None = None,
        realtime: RealtimeService | None = None,
    ) -> None:
        super().__init__(realtime)
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._data_dir = data_dir

        if data_dir is not None:
            data_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _table_path(self, table: str) -> Path:
        assert self._data_dir is not None
        return self._data_dir / f"table_{table}.json"

    def _load(self) -> None:
        assert self._data_dir is not None
        for path in sorted(self._data_dir.glob("table_*.json")):
            table = path.stem.removeprefix("table_")
            try:
                self._tables[table] = json.loads(path.read_text())
            except json.JSONDecodeError as e:
                raise DatabaseError(f"Corrupt local table file {path.name}: {e}") from e
        logger.info("local_tables_loaded", tables=len(self._tables), data_dir=str(self._data_dir))

    async def _persist(self, table: str) -> None:
        """Write a table file off the event loop; callers hold the lock."""
        if self._data_dir is None:
            return
        payload = json.dumps(self._tables.get(table, []), default=str)
        await asyncio.to_thread(_write_atomically, self._table_path(table), payload)

    def _rows(self, table: str) -> list[dict[str, Any]]:
        return self._tables.setdefault(validate_identifier(table, "table"), [])

    @staticmethod
    def _prepare(row: dict[str, Any]) -> dict[str, Any]:
        for column in row:
            validate_identifier(column, "column")
        now = datetime.now(UTC)
        prepared = copy.deepcopy(row)
        prepared.setdefault("id", str(uuid.uuid4()))
        prepared.setdefault("created_at", now)
        prepared.setdefault("updated_at", now)
        return prepared

    async def select(self, table: str, options: QueryOptions | None = None) -> QueryResult:
        options = options or QueryOptions()
        validate_options(options)
        async with self._lock:
            return apply_query(copy.deepcopy(self._rows(table)), options)

    async def insert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        async with self._lock:
            stored = self._rows(table)
            prepared = [self._prepare(row) for row in _as_rows(rows)]

            existing_ids = {row.get("id") for row in stored}
            for row in prepared:
                if row["id"] in existing_ids:
                    raise DatabaseError(f"Duplicate key id={row['id']} in {table}")
                existing_ids.add(row["id"])

            stored.extend(prepared)
            await self._persist(table)
            result = copy.deepcopy(prepared)

        await self._notify(table, ChangeType.INSERT, result)
        return result

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        options: QueryOptions,
    ) -> list[dict[str, Any]]:
        options = self._require_filters("update", options)
        validate_options(options)
        for column in values:
            validate_identifier(column, "column")

        async with self._lock:
            old_rows: list[dict[str, Any]] = []
            updated: list[dict[str, Any]] = []
            for row in self._rows(table):
                if matches(row, options.filters):
                    old_rows.append(copy.deepcopy(row))
                    row.update(copy.deepcopy(values))
                    if "updated_at" not in values:
                        row["updated_at"] = datetime.now(UTC)
                    updated.append(copy.deepcopy(row))
            if updated:
                await self._persist(table)

        await self._notify(table, ChangeType.UPDATE, updated, old_rows)
        return updated

    async def delete(self, table: str, options: QueryOptions) -> int:
        options = self._require_filters("delete", options)
        validate_options(options)

        async with self._lock:
            rows = self._rows(table)
            removed = [row for row in rows if matches(row, options.filters)]
            if removed:
                self._tables[table] = [row for row in rows if not matches(row, options.filters)]
                await self._persist(table)

        await self._notify(table, ChangeType.DELETE, removed)
        return len(removed)

    async def upsert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
        on_conflict: str = "id",
    ) -> list[dict[str, Any]]:
        validate_identifier(on_conflict, "column")
        inserted: list[dict[str, Any]] = []
        updated: list[dict[str, Any]] = []
        old_rows: list[dict[str, Any]] = []

        async with self._lock:
            stored = self._rows(table)
            for row in _as_rows(rows):
                key = row.get(on_conflict)
                existing = None
                if key is not None:
                    existing = next((r for r in stored if r.get(on_conflict) == key), None)

                if existing is None:
                    prepared = self._prepare(row)
                    stored.append(prepared)
                    inserted.append(copy.deepcopy(prepared))
                else:
                    for column in row:
                        validate_identifier(column, "column")
                    old_rows.append(copy.deepcopy(existing))
                    existing.update(copy.deepcopy(row))
                    if "updated_at" not in row:
                        existing["updated_at"] = datetime.now(UTC)
                    updated.append(copy.deepcopy(existing))

            await self._persist(table)

        await self._notify(table, ChangeType.INSERT, inserted)
        await self._notify(table, ChangeType.UPDATE, updated, old_rows)
        return inserted + updated

    async def health_check(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "provider": "local",
            "tables": len(self._tables),
            "rows": sum(len(rows) for rows in self._tables.values()),
            "persistent": self._data_dir is not None,
        }

    def table_names(self) -> list[str]:
        """Names of tables that have been touched."""
        return sorted(self._tables)

    async def truncate(self, table: str | None = None) -> None:
        """Empty one table, or all tables."""
        async with self._lock:
            names = [table] if table else list(self._tables)
            for name in names:
                self._tables[name] = []
                await self._persist(name)


# =============================================================================
# Storage
# =============================================================================


class LocalStorageService(StorageService):
    """In-memory object storage."""

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], tuple[bytes, StoredObject]] = {}

    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        stored = StoredObject(
            bucket=bucket,
            key=key,
            size=len(data),
            content_type=content_type,
            metadata=dict(metadata or {}),
        )
        self._objects[(bucket, key)] = (bytes(data), stored)
        logger.debug("object_stored", bucket=bucket, key=key, size=len(data))
        return stored

    async def download(self, bucket: str, key: str) -> bytes:
        try:
            return self._objects[(bucket, key)][0]
        except KeyError:
            raise StorageError(f"Object not found: {bucket}/{key}") from None

    async def delete(self, bucket: str, key: str) -> None:
        self._objects.pop((bucket, key), None)

    async def get_signed_url(self, bucket: str, key: str, expires_in: int = 3600) -> str:
        if (bucket, key) not in self._objects:
            raise StorageError(f"Object not found: {bucket}/{key}")
        expires = int(datetime.now(UTC).timestamp()) + expires_in
        return f"local://file/{bucket}/{key}?expires={expires}"

    async def list_objects(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        return sorted(
            (
                stored
                for (obj_bucket, key), (_, stored) in self._objects.items()
                if obj_bucket == bucket and key.startswith(prefix)
            ),
            key=lambda obj: obj.key,
        )


# =============================================================================
# Functions
# =============================================================================


def analyze_baseline(payload: dict[str, Any]) -> dict[str, Any]:
    """Score a baseline transcript."""
    transcript = payload.get("transcript")
    if not isinstance(transcript, str) or not transcript.strip():
        raise FunctionError("analyze-baseline requires a transcript")

    result = score_transcript(transcript)
    return {
        "score": result.composite.score,
        "phq2_total": result.clinical.phq2_total,
        "gad2_total": result.clinical.gad2_total,
        "mood_scale": result.clinical.mood_scale,
        "phq2_positive_screen": result.clinical.phq2_positive_screen,
        "gad2_positive_screen": result.clinical.gad2_positive_screen,
        "uncertainty": result.uncertainty,
    }


def health(payload: dict[str, Any]) -> dict[str, Any]:
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


DEFAULT_FUNCTIONS: dict[str, FunctionHandler] = {
    "analyze-baseline": analyze_baseline,
    "health": health,
}


class LocalFunctionService(FunctionService):
    """Invokes registered Python callables by name."""

    def __init__(self, handlers: dict[str, FunctionHandler] | None = None) -> None:
        self._handlers: dict[str, FunctionHandler] = dict(DEFAULT_FUNCTIONS)
        if handlers:
            self._handlers.update(handlers)

    def register(self, name: str, handler: FunctionHandler) -> None:
        """Add or replace a handler."""
        self._handlers[name] = handler

    async def invoke(
        self,
        function_name: str,
        payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        handler = self._handlers.get(function_name)
        if handler is None:
            raise FunctionError(f"Unknown function: {function_name}")

        logger.debug("function_invoked", function=function_name)
        result = handler(dict(payload or {}))
        if inspect.isawaitable(result):
            result = await result
        return result
