"""Asynchronous statement execution on pooled connections."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from campaign_store.errors import (
	DecodeError,
	OperationTimeoutError,
	PoolClosedError,
	translate_sqlite_error,
)
from campaign_store.pool import PooledConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

Params = Sequence[Any] | Mapping[str, Any]

# Timeout sentinel: use the executor default. timeout=None disables the timeout.
USE_DEFAULT: Any = object()


@dataclass
class RowSet:
	"""Result of one statement."""

	rows: list[dict[str, Any]] = field(default_factory=list)
	columns: tuple[str, ...] = ()
	rowcount: int = -1
	lastrowid: int | None = None

	def first(self) -> dict[str, Any] | None:
		return self.rows[0] if self.rows else None

	def scalar(self) -> Any:
		"""First column of the first row, or None."""
		if not self.rows:
			return None
		return next(iter(self.rows[0].values()), None)


def _describe(sql: str) -> str:
	flat = " ".join(sql.split())
	return flat if len(flat) <= 80 else flat[:77] + "..."


def _execute_sync(conn: sqlite3.Connection, sql: str, params: Params) -> RowSet:
	cursor = conn.execute(sql, params)
	try:
		columns = tuple(d[0] for d in cursor.description or ())
		rows = [dict(zip(columns, r)) for r in cursor.fetchall()] if columns else []
		return RowSet(rows=rows, columns=columns, rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)
	finally:
		cursor.close()


def _open_cursor(conn: sqlite3.Connection, sql: str, params: Params) -> sqlite3.Cursor:
	return conn.execute(sql, params)


def _fetch_batch(conn: sqlite3.Connection, cursor: sqlite3.Cursor, size: int) -> list[dict[str, Any]]:
	columns = [d[0] for d in cursor.description or ()]
	return [dict(zip(columns, r)) for r in cursor.fetchmany(size)]


def _close_cursor(conn: sqlite3.Connection, cursor: sqlite3.Cursor) -> None:
	cursor.close()


def _rollback_sync(conn: sqlite3.Connection) -> bool:
	if conn.in_transaction:
		conn.execute("ROLLBACK")
		return True
	return False


class QueryExecutor:
	"""Runs statements on a PooledConnection without blocking the event loop.

	Every call is a suspension point. Cancelling the awaiting task, or running
	past the timeout, interrupts the statement and rolls back any open
	transaction before the connection can be reused.
	"""

	def __init__(self, default_timeout: float | None = 30.0, batch_size: int = 100) -> None:
		self.default_timeout = default_timeout
		self.batch_size = batch_size

	async def execute(
		self,
		conn: PooledConnection,
		sql: str,
		params: Params = (),
		*,
		timeout: float | None = USE_DEFAULT,
	) -> RowSet:
		logger.debug("[%s] %s", conn.name, _describe(sql))
		return await self.run(conn, _execute_sync, sql, params, timeout=timeout, statement=sql)

	async def run(
		self,
		conn: PooledConnection,
		fn: Callable[..., T],
		*args: Any,
		timeout: float | None = USE_DEFAULT,
		statement: str = "",
	) -> T:
		"""Run ``fn(sqlite_conn, *args)`` on the connection's thread."""
		if timeout is USE_DEFAULT:
			timeout = self.default_timeout
		label = _describe(statement) if statement else getattr(fn, "__name__", "call")
		fut = conn.submit(fn, *args)
		try:
			if timeout is None:
				return await asyncio.shield(fut)
			return await asyncio.wait_for(asyncio.shield(fut), timeout)
		except TimeoutError:
			logger.warning("[%s] timed out after %ss: %s", conn.name, timeout, label)
			await asyncio.shield(self._abort(conn, fut))
			raise OperationTimeoutError(f"statement exceeded {timeout}s: {label}") from None
		except asyncio.CancelledError:
			logger.debug("[%s] cancelled: %s", conn.name, label)
			await asyncio.shield(self._abort(conn, fut))
			raise
		except sqlite3.Error as exc:
			if conn.closing and "interrupted" in str(exc):
				raise PoolClosedError(f"pool closed during statement: {label}") from exc
			raise translate_sqlite_error(exc) from exc

	async def _abort(self, conn: PooledConnection, fut: asyncio.Future[Any]) -> None:
		"""Interrupt ``fut`` if still running and leave the connection clean."""
		if not fut.done():
			conn.interrupt()
			await asyncio.wait([fut])
		if not fut.cancelled() and fut.exception() is not None:
			logger.debug("[%s] aborted statement ended with: %s", conn.name, fut.exception())
		await self.rollback(conn)

	async def rollback(self, conn: PooledConnection) -> None:
		"""Roll back the connection's open transaction, if it has one."""
		if conn.closed:
			return
		try:
			rolled_back = await asyncio.shield(conn.submit(_rollback_sync))
		except sqlite3.Error as exc:
			raise translate_sqlite_error(exc) from exc
		if rolled_back:
			logger.debug("[%s] rolled back open transaction", conn.name)

	async def iterate(
		self,
		conn: PooledConnection,
		sql: str,
		params: Params = (),
		*,
		batch_size: int | None = None,
		timeout: float | None = USE_DEFAULT,
	) -> AsyncIterator[dict[str, Any]]:
		"""Yield result rows, fetching ``batch_size`` at a time off the loop thread."""
		size = batch_size or self.batch_size
		logger.debug("[%s] stream: %s", conn.name, _describe(sql))
		cursor = await self.run(conn, _open_cursor, sql, params, timeout=timeout, statement=sql)
		try:
			while True:
				batch = await self.run(conn, _fetch_batch, cursor, size, timeout=timeout, statement=sql)
				if not batch:
					return
				for row in batch:
					yield row
		finally:
			if not conn.closed:
				await asyncio.shield(conn.submit(_close_cursor, cursor))


def decode_row(row: Mapping[str, Any], model: type[M]) -> M:
	"""Validate one row against a strict model, naming the offending column."""
	try:
		return model.model_validate(dict(row))
	except ValidationError as exc:
		err = exc.errors()[0]
		loc = err.get("loc") or ("?",)
		raise DecodeError(str(loc[0]), err.get("msg", "invalid value")) from exc


def decode_rows(rows: RowSet | Iterable[Mapping[str, Any]], model: type[M]) -> list[M]:
	"""Decode every row; a single mismatch fails the whole call."""
	if isinstance(rows, RowSet):
		rows = rows.rows
	return [decode_row(r, model) for r in rows]

