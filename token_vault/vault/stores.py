"""
Vault Record Stores — Transactional access to stored OAuth tokens.

The migration works on raw rows: values are read and written exactly as
stored, bypassing any model-level codec, so legacy plaintext and envelopes
are both visible as they are.

A row is a mapping with the keys ``id``, ``access_token``,
``refresh_token`` and ``encrypted`` (None when the table has no flag column).
"""
import re
import logging
from typing import Any, Protocol, AsyncIterator
from collections.abc import Mapping
from contextlib import asynccontextmanager

logger = logging.getLogger("token_vault")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

# record field -> column in the legacy oauth_tokens table
_COLUMNS = {
    "access_token": '"accessToken"',
    "refresh_token": '"refreshToken"',
    "encrypted": "encrypted",
}


class TokenTransaction(Protocol):
    """One all-or-nothing unit of work over the token rows."""

    async def fetch_all(self) -> list[Mapping[str, Any]]:
        ...

    async def update(self, record_id: Any, values: Mapping[str, Any]) -> None:
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...


class TokenStore(Protocol):
    """Anything able to open a TokenTransaction.

    Leaving the ``transaction()`` context without an explicit commit
    must roll back.
    """

    def transaction(self) -> Any:
        ...


class _PostgresTransaction:
    def __init__(self, store: "PostgresTokenStore", conn: Any, tx: Any):
        self._store = store
        self._conn = conn
        self._tx = tx
        self.closed = False

    async def fetch_all(self) -> list[Mapping[str, Any]]:
        rows = await self._conn.fetch(self._store.select_sql)
        return [
            {
                "id": row["id"],
                "access_token": row["access_token"],
                "refresh_token": row["refresh_token"],
                "encrypted": row["encrypted"] if self._store.flag_column else None,
            }
            for row in rows
        ]

    async def update(self, record_id: Any, values: Mapping[str, Any]) -> None:
        assignments = []
        args = []
        for field, value in values.items():
            if field == "encrypted" and not self._store.flag_column:
                continue
            column = _COLUMNS.get(field)
            if column is None:
                raise KeyError(f"Unknown token field: {field}")
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")
        if not assignments:
            return
        args.append(record_id)
        sql = (
            f"UPDATE {self._store.table} "
            f"SET {', '.join(assignments)}, \"updatedAt\" = NOW() "
            f"WHERE id = ${len(args)}"
        )
        await self._conn.execute(sql, *args)

    async def commit(self) -> None:
        await self._tx.commit()
        self.closed = True

    async def rollback(self) -> None:
        try:
            await self._tx.rollback()
        finally:
            self.closed = True


class PostgresTokenStore:
    """TokenStore over an asyncpg-compatible connection pool.

    Args:
        pool: asyncpg-compatible connection pool.
        table: token table, optionally schema-qualified.
        flag_column: the table has a boolean ``encrypted`` column.
    """

    def __init__(self, pool: Any, table: str = "oauth_tokens", flag_column: bool = False):
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self._pool = pool
        self.table = table
        self.flag_column = flag_column

    @property
    def select_sql(self) -> str:
        flag = ", encrypted" if self.flag_column else ""
        return (
            f'SELECT id, "accessToken" AS access_token, '
            f'"refreshToken" AS refresh_token{flag} '
            f"FROM {self.table} ORDER BY id"
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_PostgresTransaction]:
        async with self._pool.acquire() as conn:
            tx = conn.transaction()
            await tx.start()
            txn = _PostgresTransaction(self, conn, tx)
            try:
                yield txn
            finally:
                if not txn.closed:
                    logger.debug("Rolling back unfinished transaction on %s", self.table)
                    await tx.rollback()
