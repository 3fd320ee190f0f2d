from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, TypeVar

T = TypeVar("T")

Row = Dict[str, Any]


class Transaction(Protocol):
    """Synchronous view of one open database transaction.

    Transaction bodies never await: every suspension point happens outside the
    transaction.
    """

    def upsert(self, table: str, record: Mapping[str, Any], conflict_keys: Sequence[str]) -> bool:
        """Insert or merge ``record``. Returns True when a new row was created."""
        ...

    def select_one(self, table: str, where: Mapping[str, Any]) -> Optional[Row]: ...

    def select(self, table: str, where: Optional[Mapping[str, Any]] = None) -> List[Row]: ...

    def count(self, table: str, where: Optional[Mapping[str, Any]] = None) -> int: ...


class Store(Protocol):
    async def transaction(self, fn: Callable[[Transaction], T]) -> T: ...

    async def upsert(self, table: str, record: Mapping[str, Any], conflict_keys: Sequence[str]) -> bool: ...

    async def upsert_many(self, table: str, records: Sequence[Mapping[str, Any]], conflict_keys: Sequence[str]) -> int: ...

    async def close(self) -> None: ...


class BaseStore:
    async def transaction(self, fn: Callable[[Transaction], T]) -> T:
        raise NotImplementedError

    async def upsert(self, table: str, record: Mapping[str, Any], conflict_keys: Sequence[str]) -> bool:
        return await self.transaction(lambda tx: tx.upsert(table, record, conflict_keys))

    async def upsert_many(self, table: str, records: Sequence[Mapping[str, Any]], conflict_keys: Sequence[str]) -> int:
        """Upsert a batch atomically; returns the number of new rows."""

        def write(tx: Transaction) -> int:
            return sum(1 for r in records if tx.upsert(table, r, conflict_keys))

        return await self.transaction(write)

    async def close(self) -> None:
        return None


def _matches(row: Mapping[str, Any], where: Optional[Mapping[str, Any]]) -> bool:
    if not where:
        return True
    return all(row.get(k) == v for k, v in where.items())


class MemoryTransaction:
    def __init__(self, tables: Dict[str, Dict[Tuple, Row]], keys: Dict[str, Tuple[str, ...]]):
        self.tables = tables
        self.keys = keys

    def upsert(self, table: str, record: Mapping[str, Any], conflict_keys: Sequence[str]) -> bool:
        keys = tuple(conflict_keys)
        known = self.keys.setdefault(table, keys)
        if known != keys:
            raise ValueError(f"{table}: conflict keys {keys} do not match {known}")
        missing = [k for k in keys if record.get(k) is None]
        if missing:
            raise ValueError(f"{table}: record is missing key columns {missing}")

        rows = self.tables.setdefault(table, {})
        key = tuple(record[k] for k in keys)
        existing = rows.get(key)
        if existing is None:
            rows[key] = dict(record)
            return True
        rows[key] = {**existing, **record}
        return False

    def select_one(self, table: str, where: Mapping[str, Any]) -> Optional[Row]:
        for row in self.tables.get(table, {}).values():
            if _matches(row, where):
                return dict(row)
        return None

    def select(self, table: str, where: Optional[Mapping[str, Any]] = None) -> List[Row]:
        return [dict(r) for r in self.tables.get(table, {}).values() if _matches(r, where)]

    def count(self, table: str, where: Optional[Mapping[str, Any]] = None) -> int:
        return sum(1 for r in self.tables.get(table, {}).values() if _matches(r, where))


class MemoryStore(BaseStore):
    """In-process store used for dry runs and tests.

    Each transaction works on a copy of the tables and only replaces them when
    the body returns, so a failing body leaves no partial writes.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[Tuple, Row]] = {}
        self.keys: Dict[str, Tuple[str, ...]] = {}
        self.commits = 0

    async def transaction(self, fn: Callable[[Transaction], T]) -> T:
        await asyncio.sleep(0)
        working = {name: {k: dict(r) for k, r in rows.items()} for name, rows in self.tables.items()}
        keys = dict(self.keys)
        result = fn(MemoryTransaction(working, keys))
        self.tables = working
        self.keys = keys
        self.commits += 1
        return result

    def rows(self, table: str) -> List[Row]:
        return [dict(r) for r in self.tables.get(table, {}).values()]
