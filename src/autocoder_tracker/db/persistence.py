from __future__ import annotations

import asyncio
import json
import logging
import os
from importlib import resources
from pathlib import Path
from typing import Protocol, Sequence

import aiosqlite
import pydantic

from autocoder_tracker.errors import PersistenceError
from autocoder_tracker.models.work_item import WorkItem

logger = logging.getLogger(__name__)

_DEFAULT_JSON_PATH = Path("data/requests.json")
_DEFAULT_DB_PATH = Path("data/requests.db")


class Persistence(Protocol):
    """Snapshot storage for the full work-item collection."""

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def load(self) -> list[WorkItem]: ...

    async def save_all(self, items: Sequence[WorkItem]) -> None: ...


def _parse_records(records: object, source: Path) -> list[WorkItem]:
    if not isinstance(records, list):
        raise PersistenceError(f"{source} does not contain a list of work items")
    try:
        return [WorkItem.model_validate(record) for record in records]
    except pydantic.ValidationError as exc:
        raise PersistenceError(f"Invalid work item record in {source}: {exc}") from exc


class JsonFileStore:
    """Persists the collection as one pretty-printed JSON list.

    Every save rewrites the whole file through a temporary sibling and an
    atomic rename, so a crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else _DEFAULT_JSON_PATH

    async def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("JSON work item store at %s", self.path)

    async def close(self) -> None:
        return None

    async def load(self) -> list[WorkItem]:
        if not self.path.exists():
            return []
        try:
            text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
            records = json.loads(text) if text.strip() else []
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Cannot read {self.path}: {exc}") from exc
        items = _parse_records(records, self.path)
        logger.info("Loaded %d work items from %s", len(items), self.path)
        return items

    async def save_all(self, items: Sequence[WorkItem]) -> None:
        try:
            payload = json.dumps([item.to_record() for item in items], indent=2)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Cannot serialize work items: {exc}") from exc
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as exc:
            raise PersistenceError(f"Cannot write {self.path}: {exc}") from exc

    def _write(self, payload: str) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self.path)


class SqliteStore:
    """Async SQLite snapshot store.

    Holds a single persistent connection in WAL mode. ``save_all`` replaces
    the table contents inside one transaction, keeping the list order in the
    ``position`` column.
    """

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self._conn: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file, apply the schema, and open the connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        schema_sql = (
            resources.files("autocoder_tracker.db").joinpath("schema.sql").read_text()
        )

        try:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.executescript(schema_sql)
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Cannot open {self.db_path}: {exc}") from exc

        logger.info("SQLite work item store at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        assert self._conn is not None, "Store not initialized, call initialize() first"
        return self._conn

    # ------------------------------------------------------------------
    # Snapshot operations
    # ------------------------------------------------------------------

    async def load(self) -> list[WorkItem]:
        try:
            cursor = await self.conn.execute(
                "SELECT payload FROM work_items ORDER BY position"
            )
            rows = await cursor.fetchall()
            records = [json.loads(row["payload"]) for row in rows]
        except (aiosqlite.Error, ValueError) as exc:
            raise PersistenceError(f"Cannot read {self.db_path}: {exc}") from exc
        items = _parse_records(records, self.db_path)
        logger.info("Loaded %d work items from %s", len(items), self.db_path)
        return items

    async def save_all(self, items: Sequence[WorkItem]) -> None:
        try:
            rows = [
                (item.id, position, json.dumps(item.to_record()))
                for position, item in enumerate(items)
            ]
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Cannot serialize work items: {exc}") from exc
        try:
            await self.conn.execute("DELETE FROM work_items")
            await self.conn.executemany(
                "INSERT INTO work_items (id, position, payload) VALUES (?, ?, ?)",
                rows,
            )
            await self.conn.commit()
        except aiosqlite.Error as exc:
            await self.conn.rollback()
            raise PersistenceError(f"Cannot write {self.db_path}: {exc}") from exc


def create_persistence(storage: str, path: str | Path) -> Persistence:
    """Build the persistence adapter named by ``storage`` (``json`` or ``sqlite``)."""
    if storage == "json":
        return JsonFileStore(path)
    if storage == "sqlite":
        return SqliteStore(path)
    raise ValueError(f"Unknown storage backend: {storage!r}")
