"""
JSON file local store.

Each table is one JSON document mapping record id to record:

    {base_path}/
      products.json
      transactions.json
      offline_queue.json

Writes go to a temp file that is fsynced and renamed over the target,
so a crash never leaves a half-written table. A per-table lock makes
every read-modify-write a single transaction within the process.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
from collections.abc import Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError, ValidationError
from ..protocol import LocalStore, Record

_TABLE_NAME = re.compile(r"^[A-Za-z0-9_\-]+$")


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not handled by default."""
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonFileLocalStore(LocalStore):
    """Durable local store backed by one JSON file per table."""

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path)
        self._locks: dict[str, asyncio.Lock] = {}

    def _table_file(self, table: str) -> Path:
        if not _TABLE_NAME.match(table):
            raise ValidationError(
                "table", "table names may only contain letters, digits, _ and -", table
            )
        return self.base_path / f"{table}.json"

    def _lock(self, table: str) -> asyncio.Lock:
        if table not in self._locks:
            self._locks[table] = asyncio.Lock()
        return self._locks[table]

    async def _read(self, path: Path) -> dict[str, Record]:
        try:
            if not await aiofiles.os.path.exists(path):
                return {}
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
            return json.loads(content) if content.strip() else {}
        except json.JSONDecodeError as e:
            raise StorageIOError("parse_table", str(path), e) from e
        except OSError as e:
            raise StorageIOError("read_table", str(path), e) from e

    async def _write(self, path: Path, rows: dict[str, Record]) -> None:
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
        except OSError as e:
            raise StorageIOError("create_directory", str(path.parent), e) from e

        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".json")
        try:
            os.close(fd)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(rows, default=_json_serializer))
                await f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            await aiofiles.os.rename(temp_path, path)
        except Exception as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise StorageIOError("write_table", str(path), e) from e

    async def get_all(self, table: str) -> list[Record]:
        path = self._table_file(table)
        async with self._lock(table):
            rows = await self._read(path)
        return list(rows.values())

    async def save_items(self, table: str, items: Sequence[Record]) -> None:
        if not items:
            return
        for item in items:
            if not item.get("id"):
                raise ValidationError("id", f"record in {table} has no id")

        path = self._table_file(table)
        async with self._lock(table):
            rows = await self._read(path)
            for item in items:
                rows[str(item["id"])] = dict(item)
            await self._write(path, rows)

    async def delete_item(self, table: str, item_id: str) -> None:
        await self.delete_items(table, [item_id])

    async def delete_items(self, table: str, item_ids: Sequence[str]) -> None:
        if not item_ids:
            return
        path = self._table_file(table)
        async with self._lock(table):
            rows = await self._read(path)
            removed = [rows.pop(str(item_id), None) for item_id in item_ids]
            if any(r is not None for r in removed):
                await self._write(path, rows)

    async def clear_store(self, table: str) -> None:
        path = self._table_file(table)
        async with self._lock(table):
            await self._write(path, {})
