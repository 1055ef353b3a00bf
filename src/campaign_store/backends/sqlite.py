"""SQLite implementation of the storage capability."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from campaign_store.backends.base import StorageBackend, Transaction
from campaign_store.executor import USE_DEFAULT, Params, QueryExecutor, RowSet
from campaign_store.migrations import MigrationReport, MigrationRunner, read_user_version
from campaign_store.pool import ConnectionPool, PooledConnection
from campaign_store.schema import SchemaRegistry

logger = logging.getLogger(__name__)


class SQLiteTransaction(Transaction):
	"""A transaction bound to one leased connection."""

	def __init__(self, executor: QueryExecutor, conn: PooledConnection) -> None:
		self._executor = executor
		self._conn = conn

	@property
	def connection(self) -> PooledConnection:
		return self._conn

	async def execute(self, sql: str, params: Params = (), *, timeout: float | None = USE_DEFAULT) -> RowSet:
		return await self._executor.execute(self._conn, sql, params, timeout=timeout)

	def iterate(self, sql: str, params: Params = (), *, batch_size: int | None = None) -> AsyncIterator[dict[str, Any]]:
		return self._executor.iterate(self._conn, sql, params, batch_size=batch_size)


class SQLiteBackend(StorageBackend):
	"""Storage over a ConnectionPool for one SQLite file."""

	def __init__(self, pool: ConnectionPool, executor: QueryExecutor | None = None) -> None:
		self.pool = pool
		self.executor = executor or QueryExecutor()

	@asynccontextmanager
	async def transaction(self) -> AsyncIterator[SQLiteTransaction]:
		async with self.pool.acquire_write() as conn:
			async with self._begin(conn, "BEGIN IMMEDIATE") as tx:
				yield tx

	@asynccontextmanager
	async def snapshot(self) -> AsyncIterator[SQLiteTransaction]:
		async with self.pool.acquire_read() as conn:
			# Deferred: under WAL the snapshot is fixed by the first read.
			await self.executor.execute(conn, "BEGIN")
			try:
				yield SQLiteTransaction(self.executor, conn)
			finally:
				# Nothing to commit. A timed-out or cancelled read has already
				# rolled back, in which case this is a no-op.
				await asyncio.shield(self.executor.rollback(conn))

	@asynccontextmanager
	async def _begin(self, conn: PooledConnection, begin_sql: str) -> AsyncIterator[SQLiteTransaction]:
		await self.executor.execute(conn, begin_sql)
		tx = SQLiteTransaction(self.executor, conn)
		try:
			yield tx
		except BaseException:
			await asyncio.shield(self.executor.rollback(conn))
			raise
		try:
			await self.executor.execute(conn, "COMMIT")
		except BaseException:
			await asyncio.shield(self.executor.rollback(conn))
			raise

	async def execute(self, sql: str, params: Params = (), *, timeout: float | None = USE_DEFAULT) -> RowSet:
		async with self.transaction() as tx:
			return await tx.execute(sql, params, timeout=timeout)

	async def migrate(self, registry: SchemaRegistry) -> MigrationReport:
		"""Run the migration chain ahead of all other traffic.

		The admission gate opens only after a committed run; on failure the
		pool is left gated so nothing touches the half-trusted file.
		"""
		runner = MigrationRunner(registry, self.executor)
		async with self.pool.acquire_exclusive() as conn:
			report = await runner.run(conn)
		self.pool.open_gate()
		return report

	async def schema_version(self) -> int:
		async with self.pool.acquire_read() as conn:
			return await self.executor.run(conn, read_user_version)

	async def close(self, drain_timeout: float | None = None) -> None:
		await self.pool.close(drain_timeout)
