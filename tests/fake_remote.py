from __future__ import annotations

import copy
from typing import Any

from medsync.remote_store import RemoteStore, RemoteStoreError


def _matches(row: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(str(row.get(column)) == str(value) for column, value in filters.items())


class FakeRemoteStore(RemoteStore):
    """In-memory remote tables with scriptable failures."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_when: list[Any] = []
        self.closed = False

    def fail(self, predicate: Any) -> None:
        """Make every call for which ``predicate(method, table, payload)`` is true raise."""
        self.fail_when.append(predicate)

    def _check(self, method: str, table: str, payload: dict[str, Any]) -> None:
        self.calls.append((method, table, copy.deepcopy(payload)))
        for predicate in self.fail_when:
            if predicate(method, table, payload):
                raise RemoteStoreError(f"{method} {table} rejected", status_code=500)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        self._check("insert", table, record)
        row = copy.deepcopy(record)
        self.rows(table).append(row)
        return copy.deepcopy(row)

    async def update(
        self, table: str, changes: dict[str, Any], filters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        self._check("update", table, {**changes, "_filters": filters})
        updated = []
        for row in self.rows(table):
            if _matches(row, filters):
                row.update(copy.deepcopy(changes))
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        self._check("delete", table, {"_filters": filters})
        self.tables[table] = [row for row in self.rows(table) if not _matches(row, filters)]

    async def select(
        self, table: str, filters: dict[str, Any], order: str | None = None
    ) -> list[dict[str, Any]]:
        self._check("select", table, {"_filters": filters})
        rows = [copy.deepcopy(row) for row in self.rows(table) if _matches(row, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda row: str(row.get(column, "")), reverse=direction == "desc")
        return rows

    async def aclose(self) -> None:
        self.closed = True
