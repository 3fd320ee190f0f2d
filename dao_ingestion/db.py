from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence, TypeVar

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from .storage import BaseStore, Row

T = TypeVar("T")


@contextmanager
def connect(dsn: str) -> Iterator[psycopg.Connection]:
    conn = psycopg.connect(dsn)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _where(where: Optional[Mapping[str, Any]]) -> tuple[sql.Composable, list]:
    if not where:
        return sql.SQL(""), []
    clause = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(
        sql.SQL("{} = %s").format(sql.Identifier(k)) for k in where
    )
    return clause, list(where.values())


class PostgresTransaction:
    def __init__(self, conn: psycopg.Connection):
        self.conn = conn

    def upsert(self, table: str, record: Mapping[str, Any], conflict_keys: Sequence[str]) -> bool:
        cols = list(record)
        updates = [c for c in cols if c not in conflict_keys]
        if updates:
            action = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c)) for c in updates
                )
            )
        else:
            action = sql.SQL("DO NOTHING")

        query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES ({vals}) ON CONFLICT ({keys}) {action} RETURNING (xmax = 0)"
        ).format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in cols),
            keys=sql.SQL(", ").join(sql.Identifier(k) for k in conflict_keys),
            action=action,
        )
        with self.conn.cursor() as cur:
            cur.execute(query, [record[c] for c in cols])
            row = cur.fetchone()
        return bool(row and row[0])

    def select_one(self, table: str, where: Mapping[str, Any]) -> Optional[Row]:
        clause, params = _where(where)
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table)) + clause + sql.SQL(" LIMIT 1")
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def select(self, table: str, where: Optional[Mapping[str, Any]] = None) -> List[Row]:
        clause, params = _where(where)
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table)) + clause
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return list(cur.fetchall())

    def count(self, table: str, where: Optional[Mapping[str, Any]] = None) -> int:
        clause, params = _where(where)
        query = sql.SQL("SELECT count(*) FROM {}").format(sql.Identifier(table)) + clause
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return int(row[0]) if row else 0


class PostgresStore(BaseStore):
    """Store backed by PostgreSQL.

    One connection per transaction, run in a worker thread so the event loop
    never blocks on the database.
    """

    def __init__(self, dsn: str):
        self.dsn = dsn

    def _run(self, fn: Callable[[PostgresTransaction], T]) -> T:
        with connect(self.dsn) as conn:
            return fn(PostgresTransaction(conn))

    async def transaction(self, fn: Callable[[Any], T]) -> T:
        return await asyncio.to_thread(self._run, fn)
