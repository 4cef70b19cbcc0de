"""
Field name translation between the application and the remote store.

The application (and the local cache) uses camelCase keys; the remote
store uses snake_case columns. Translation is shallow: nested values are
passed through untouched.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from .protocol import Record

_UPPER = re.compile(r"[A-Z]")
_UNDERSCORE_LOWER = re.compile(r"_([a-z0-9])")

# Remote columns holding timestamps besides the *_at convention
TIMESTAMP_COLUMNS = frozenset({"timestamp", "date"})


def to_snake_case(key: str) -> str:
    return _UPPER.sub(lambda m: f"_{m.group(0).lower()}", key)


def to_camel_case(key: str) -> str:
    return _UNDERSCORE_LOWER.sub(lambda m: m.group(1).upper(), key)


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO 8601 string, returning None when it is not one."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class FieldMapper:
    """Stateless translator between local and remote record shapes.

    ``exclusions`` maps a table to the remote columns that must never be
    emitted for it. The tenant table is always excluded from carrying the
    tenant column, since a tenant does not belong to itself.
    """

    def __init__(
        self,
        tenant_table: str = "businesses",
        tenant_column: str = "business_id",
        exclusions: Mapping[str, frozenset[str]] | None = None,
    ) -> None:
        self.tenant_table = tenant_table
        self.tenant_column = tenant_column
        self.tenant_field = to_camel_case(tenant_column)

        merged: dict[str, frozenset[str]] = {tenant_table: frozenset({tenant_column})}
        for table, columns in (exclusions or {}).items():
            merged[table] = merged.get(table, frozenset()) | frozenset(columns)
        self.exclusions = merged

    def excluded_columns(self, table: str) -> frozenset[str]:
        return self.exclusions.get(table, frozenset())

    def to_remote(self, table: str, record: Mapping[str, Any]) -> Record:
        """Translate a local record into remote column naming.

        Datetimes become ISO strings so the payload stays JSON-serializable
        while it waits in the offline queue.
        """
        excluded = self.excluded_columns(table)
        out: Record = {}
        for key, value in record.items():
            column = to_snake_case(key)
            if column in excluded:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            out[column] = value
        return out

    def to_local(self, table: str, row: Mapping[str, Any]) -> Record:
        """Translate a remote row into local field naming.

        Timestamp columns given as strings are coerced to datetimes.
        """
        excluded = self.excluded_columns(table)
        out: Record = {}
        for column, value in row.items():
            if column in excluded:
                continue
            if isinstance(value, str) and self._is_timestamp_column(column):
                value = parse_timestamp(value) or value
            out[to_camel_case(column)] = value
        return out

    def tenant_of(self, table: str, record: Mapping[str, Any]) -> Any:
        """Return the tenant a local record belongs to."""
        if table == self.tenant_table:
            return record.get("id")
        return record.get(self.tenant_field)

    def remote_tenant_filter(self, table: str, tenant: str) -> dict[str, Any]:
        """Remote filter scoping ``table`` to ``tenant``."""
        if table == self.tenant_table:
            return {"id": tenant}
        return {self.tenant_column: tenant}

    @staticmethod
    def _is_timestamp_column(column: str) -> bool:
        return column.endswith("_at") or column in TIMESTAMP_COLUMNS
