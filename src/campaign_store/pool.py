"""Connection pool for a single campaign database file.

The pool owns one writer connection and a small set of reader connections.
Every connection is bound to its own single-thread executor, so blocking
sqlite calls never run on the event loop and a connection is only ever used
from one thread.

Lifecycle: ``await ConnectionPool.open(...)`` -> ``acquire_exclusive()`` for
migrations -> ``open_gate()`` -> ``acquire_write()`` / ``acquire_read()`` ->
``await close()``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from collections import deque
from collections.abc import AsyncIterator, Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

from campaign_store.config import PoolConfig
from campaign_store.errors import PoolClosedError, StorageError, translate_sqlite_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEMORY_PATH = ":memory:"


class PooledConnection:
	"""A sqlite3 connection confined to a dedicated worker thread."""

	def __init__(self, path: str, role: str, index: int = 0) -> None:
		self.path = path
		self.role = role
		self.name = f"{role}-{index}"
		self.closing = False
		self._closed = False
		self._conn: sqlite3.Connection | None = None
		self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"campaign-store-{self.name}")

	@property
	def closed(self) -> bool:
		return self._closed

	def submit(self, fn: Callable[..., T], *args: Any) -> asyncio.Future[T]:
		"""Schedule ``fn(sqlite_conn, *args)`` on this connection's thread."""
		if self._closed:
			raise PoolClosedError(f"connection {self.name} is closed")
		loop = asyncio.get_running_loop()
		return loop.run_in_executor(self._executor, functools.partial(self._call, fn, *args))

	def _call(self, fn: Callable[..., T], *args: Any) -> T:
		if self._conn is None:
			raise PoolClosedError(f"connection {self.name} is not open")
		return fn(self._conn, *args)

	def interrupt(self) -> None:
		"""Abort the statement currently running on this connection, if any.

		Safe to call from any thread.
		"""
		if self._conn is not None:
			self._conn.interrupt()

	async def connect(self, init: Callable[[sqlite3.Connection], None]) -> None:
		loop = asyncio.get_running_loop()
		await loop.run_in_executor(self._executor, self._connect_sync, init)
		logger.debug("Opened %s connection: %s", self.name, self.path)

	def _connect_sync(self, init: Callable[[sqlite3.Connection], None]) -> None:
		# isolation_level=None: transactions are begun and ended explicitly.
		conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
		try:
			conn.row_factory = sqlite3.Row
			init(conn)
		except BaseException:
			conn.close()
			raise
		self._conn = conn

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		loop = asyncio.get_running_loop()
		try:
			await loop.run_in_executor(self._executor, self._close_sync)
		finally:
			self._executor.shutdown(wait=False)
		logger.debug("Closed %s connection", self.name)

	def _close_sync(self) -> None:
		if self._conn is None:
			return
		if self._conn.in_transaction:
			self._conn.rollback()
		self._conn.close()
		self._conn = None


class _Slot:
	"""FIFO hand-off of a fixed set of connections to waiting tasks."""

	def __init__(self, name: str, connections: list[PooledConnection]) -> None:
		self.name = name
		self.connections = tuple(connections)
		self._idle: deque[PooledConnection] = deque(connections)
		self._waiters: deque[asyncio.Future[PooledConnection]] = deque()
		self._closed = False

	@property
	def waiting(self) -> int:
		return sum(1 for w in self._waiters if not w.done())

	async def take(self) -> PooledConnection:
		if self._closed:
			raise PoolClosedError(f"{self.name} slot is closed")
		if self._idle and not self.waiting:
			return self._idle.popleft()
		fut: asyncio.Future[PooledConnection] = asyncio.get_running_loop().create_future()
		self._waiters.append(fut)
		try:
			return await fut
		except asyncio.CancelledError:
			if fut.done() and not fut.cancelled() and fut.exception() is None:
				# Handed a connection just as we were cancelled: pass it on.
				self.give(fut.result())
			raise

	def give(self, conn: PooledConnection) -> None:
		while self._waiters:
			fut = self._waiters.popleft()
			if not fut.done():
				fut.set_result(conn)
				return
		self._idle.append(conn)

	def close(self) -> int:
		"""Fail every queued waiter with PoolClosedError. Returns how many were failed."""
		self._closed = True
		failed = 0
		while self._waiters:
			fut = self._waiters.popleft()
			if not fut.done():
				fut.set_exception(PoolClosedError(f"pool closed while waiting for {self.name} connection"))
				failed += 1
		return failed


class ConnectionPool:
	"""One writer plus N readers bound to one database file."""

	def __init__(
		self,
		path: str,
		config: PoolConfig,
		writer: PooledConnection,
		readers: list[PooledConnection],
	) -> None:
		self.path = path
		self.config = config
		self._writer_slot = _Slot("writer", [writer])
		self._reader_slot = _Slot("reader", readers) if readers else None
		self._gate = asyncio.Event()
		self._drained = asyncio.Event()
		self._drained.set()
		self._checked_out: set[PooledConnection] = set()
		self._closed = False

	@classmethod
	async def open(cls, path: str | Path, config: PoolConfig | None = None) -> ConnectionPool:
		"""Open the writer and reader connections for ``path``.

		Raises:
			StorageIOError: If the file cannot be opened or created.
			LockError: If another connection holds the write lock past lock_timeout.
		"""
		config = config or PoolConfig()
		db_path = str(path)
		in_memory = db_path == MEMORY_PATH
		writer = PooledConnection(db_path, "writer")
		readers: list[PooledConnection] = []
		try:
			await writer.connect(functools.partial(_init_writer, config=config, in_memory=in_memory))
			# Separate in-memory connections would each see a different database.
			if not in_memory:
				for i in range(config.readers):
					reader = PooledConnection(db_path, "reader", i)
					readers.append(reader)
					await reader.connect(functools.partial(_init_reader, config=config))
		except sqlite3.Error as exc:
			await _close_all([writer, *readers])
			raise translate_sqlite_error(exc) from exc
		except BaseException:
			await _close_all([writer, *readers])
			raise
		logger.info("Opened connection pool for %s (1 writer, %d readers)", db_path, len(readers))
		return cls(db_path, config, writer, readers)

	@property
	def closed(self) -> bool:
		return self._closed

	@property
	def shared_reads(self) -> bool:
		"""True when reads run on their own connections instead of the writer."""
		return self._reader_slot is not None

	@property
	def in_use(self) -> int:
		return len(self._checked_out)

	@property
	def admitting(self) -> bool:
		return self._gate.is_set() and not self._closed

	def open_gate(self) -> None:
		"""Admit ordinary read/write traffic. Called once migrations are committed."""
		if not self._gate.is_set():
			logger.debug("Connection pool gate opened for %s", self.path)
			self._gate.set()

	@asynccontextmanager
	async def acquire_write(self) -> AsyncIterator[PooledConnection]:
		"""Exclusive use of the writer connection for the duration of the scope."""
		async with self._lease(self._writer_slot, gated=True) as conn:
			yield conn

	@asynccontextmanager
	async def acquire_read(self) -> AsyncIterator[PooledConnection]:
		"""A reader connection, or the writer when reads cannot be shared."""
		slot = self._reader_slot or self._writer_slot
		async with self._lease(slot, gated=True) as conn:
			yield conn

	@asynccontextmanager
	async def acquire_exclusive(self) -> AsyncIterator[PooledConnection]:
		"""The writer connection, ahead of the admission gate. For schema migration only."""
		async with self._lease(self._writer_slot, gated=False) as conn:
			yield conn

	@asynccontextmanager
	async def _lease(self, slot: _Slot, *, gated: bool) -> AsyncIterator[PooledConnection]:
		self._check_open()
		if gated and not self._gate.is_set():
			logger.debug("Waiting for migrations before admitting %s request", slot.name)
			await self._gate.wait()
			self._check_open()
		conn = await slot.take()
		self._checked_out.add(conn)
		self._drained.clear()
		try:
			yield conn
		finally:
			self._checked_out.discard(conn)
			if not self._checked_out:
				self._drained.set()
			slot.give(conn)

	def _check_open(self) -> None:
		if self._closed:
			raise PoolClosedError(f"connection pool for {self.path} is closed")

	async def close(self, drain_timeout: float | None = None) -> None:
		"""Stop admitting work, drain in-flight leases, and close every connection.

		Queued acquisitions fail with PoolClosedError immediately. Leases still
		held after ``drain_timeout`` seconds have their running statement
		interrupted.
		"""
		if self._closed:
			return
		self._closed = True
		timeout = self.config.drain_timeout if drain_timeout is None else drain_timeout
		slots = [s for s in (self._writer_slot, self._reader_slot) if s is not None]
		failed = sum(slot.close() for slot in slots)
		if failed:
			logger.info("Failed %d queued acquisitions on close", failed)
		# Wake tasks parked on the gate so they observe the closed pool.
		self._gate.set()

		if self._checked_out:
			logger.debug("Draining %d in-flight connections", len(self._checked_out))
			if not await _wait_event(self._drained, timeout):
				logger.warning(
					"Interrupting %d connections still in use after %.1fs",
					len(self._checked_out), timeout,
				)
				for conn in list(self._checked_out):
					conn.closing = True
					conn.interrupt()
				if not await _wait_event(self._drained, timeout):
					logger.warning("Closing %d connections that were never released", len(self._checked_out))

		await _close_all([conn for slot in slots for conn in slot.connections])
		logger.info("Closed connection pool for %s", self.path)


def _init_writer(conn: sqlite3.Connection, *, config: PoolConfig, in_memory: bool) -> None:
	# Probe the write lock with lock_timeout, then settle on busy_timeout.
	conn.execute(f"PRAGMA busy_timeout={int(config.lock_timeout * 1000)}")
	if not in_memory:
		conn.execute("PRAGMA journal_mode=WAL")
	conn.execute("BEGIN IMMEDIATE")
	conn.execute("ROLLBACK")
	conn.execute(f"PRAGMA busy_timeout={int(config.busy_timeout_ms)}")
	conn.execute("PRAGMA foreign_keys=ON")


def _init_reader(conn: sqlite3.Connection, *, config: PoolConfig) -> None:
	conn.execute(f"PRAGMA busy_timeout={int(config.busy_timeout_ms)}")
	conn.execute("PRAGMA foreign_keys=ON")
	conn.execute("PRAGMA query_only=ON")


async def _wait_event(event: asyncio.Event, timeout: float) -> bool:
	try:
		await asyncio.wait_for(event.wait(), timeout)
	except TimeoutError:
		return False
	return True


async def _close_all(connections: list[PooledConnection]) -> None:
	for conn in connections:
		try:
			await conn.close()
		except (sqlite3.Error, StorageError) as exc:
			logger.warning("Error closing %s connection: %s", conn.name, exc)
