"""Campaign storage: the single entry point used by the application layer."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from campaign_store.backends.sqlite import SQLiteBackend
from campaign_store.config import StoreConfig
from campaign_store.errors import NotFoundError, StorageError
from campaign_store.executor import QueryExecutor, decode_row, decode_rows
from campaign_store.imports import read_systems_csv
from campaign_store.migrations import MigrationReport
from campaign_store.models import (
	CampaignSession,
	ControlEntry,
	Empire,
	Fleet,
	GroundType,
	Note,
	StarSystem,
	SystemView,
	_now_iso,
)
from campaign_store.pool import ConnectionPool
from campaign_store.repository import EntitySpec, IdPolicy, Repository
from campaign_store.schema import DEFAULT_REGISTRY, SchemaRegistry

logger = logging.getLogger(__name__)

TURN_KEY = "turn"

CONTROL = EntitySpec("control", ControlEntry, IdPolicy.EXTERNAL)
EMPIRES = EntitySpec("empires", Empire)
SYSTEMS = EntitySpec("systems", StarSystem)
FLEETS = EntitySpec("fleets", Fleet)
GROUND_TYPES = EntitySpec("ground_types", GroundType)
SESSIONS = EntitySpec("sessions", CampaignSession)
NOTES = EntitySpec("notes", Note)

_SYSTEMS_WITH_OWNERS = """SELECT s.*, COALESCE(e.name, 'None') AS owner_name
FROM systems s LEFT JOIN empires e ON e.id = s.owner"""


class Storage:
	"""An open campaign database.

	Construct with ``await Storage.open(path)``; the schema is migrated before
	the call returns, and repository traffic is admitted only after that.
	Release with ``await storage.close()`` or use ``async with``.
	"""

	def __init__(self, backend: SQLiteBackend, report: MigrationReport, path: str) -> None:
		self.backend = backend
		self.report = report
		self.path = path
		batch_size = backend.executor.batch_size
		self.control: Repository[ControlEntry] = Repository(backend, CONTROL, batch_size)
		self.empires: Repository[Empire] = Repository(backend, EMPIRES, batch_size)
		self.systems: Repository[StarSystem] = Repository(backend, SYSTEMS, batch_size)
		self.fleets: Repository[Fleet] = Repository(backend, FLEETS, batch_size)
		self.ground_types: Repository[GroundType] = Repository(backend, GROUND_TYPES, batch_size)
		self.sessions: Repository[CampaignSession] = Repository(backend, SESSIONS, batch_size)
		self.notes: Repository[Note] = Repository(backend, NOTES, batch_size)

	@classmethod
	async def open(
		cls,
		path: str | Path,
		config: StoreConfig | None = None,
		registry: SchemaRegistry = DEFAULT_REGISTRY,
	) -> Storage:
		"""Open (creating if needed) and migrate the database at ``path``.

		Raises:
			StorageIOError: The file cannot be opened.
			LockError: Another process holds the write lock.
			MigrationError: The schema could not be brought up to date; the
				application must not continue with this file.
		"""
		config = config or StoreConfig()
		pool = await ConnectionPool.open(path, config.pool)
		executor = QueryExecutor(config.executor.default_timeout, config.executor.batch_size)
		backend = SQLiteBackend(pool, executor)
		try:
			report = await backend.migrate(registry)
		except BaseException:
			await backend.close(drain_timeout=0)
			raise
		logger.info("Opened campaign storage %s at schema version %d", pool.path, report.to_version)
		return cls(backend, report, pool.path)

	async def close(self, drain_timeout: float | None = None) -> None:
		"""Drain (or, after ``drain_timeout``, cancel) in-flight work and release the file."""
		await self.backend.close(drain_timeout)

	@property
	def closed(self) -> bool:
		return self.backend.pool.closed

	async def __aenter__(self) -> Storage:
		return self

	async def __aexit__(self, *args: object) -> None:
		await self.close()

	async def schema_version(self) -> int:
		return await self.backend.schema_version()

	# -- Turn control --

	async def current_turn(self) -> int:
		entry = await self.control.get(TURN_KEY)
		try:
			return int(entry.value)
		except ValueError as exc:
			raise StorageError(f"control value for {TURN_KEY!r} is not a number: {entry.value!r}") from exc

	async def advance_turn(self) -> int:
		"""Increment the turn counter atomically and return the new turn."""
		async with self.backend.transaction() as tx:
			rs = await tx.execute(
				"""UPDATE control SET value = CAST(CAST(value AS INTEGER) + 1 AS TEXT), updated_at = ?
				WHERE key = ?""",
				(_now_iso(), TURN_KEY),
			)
			if rs.rowcount == 0:
				raise NotFoundError(f"control {TURN_KEY!r} not found")
			turn = (await tx.execute("SELECT value FROM control WHERE key = ?", (TURN_KEY,))).scalar()
		logger.info("Advanced campaign to turn %s", turn)
		return int(turn)

	async def title(self, name: str) -> str:
		"""Campaign title including turn number."""
		return f"{name} Turn {await self.current_turn()}"

	# -- Systems --

	async def systems_with_owners(self) -> list[SystemView]:
		"""All systems with the owning empire's name ("None" when unowned)."""
		async with self.backend.snapshot() as tx:
			rs = await tx.execute(_SYSTEMS_WITH_OWNERS + " ORDER BY s.name, s.id")
		return decode_rows(rs.rows, SystemView)

	async def get_system_by_name(self, name: str) -> SystemView:
		async with self.backend.snapshot() as tx:
			rs = await tx.execute(_SYSTEMS_WITH_OWNERS + " WHERE s.name = ? ORDER BY s.id LIMIT 1", (name,))
		row = rs.first()
		if row is None:
			raise NotFoundError(f"systems {name!r} not found")
		return decode_row(row, SystemView)

	async def import_systems(self, csv_path: str | Path) -> int:
		"""Insert every system in a CSV file in one transaction. Returns the count."""
		# File parsing stays off the event loop.
		systems = await asyncio.to_thread(read_systems_csv, csv_path)
		ids = await self.systems.insert_many(systems)
		logger.info("Imported %d systems from %s", len(ids), csv_path)
		return len(ids)

	async def counts(self) -> dict[str, Any]:
		"""Record counts per table, read from one snapshot."""
		tables = [r.table for r in (self.empires, self.systems, self.fleets, self.sessions, self.notes)]
		result: dict[str, Any] = {}
		async with self.backend.snapshot() as tx:
			for table in tables:
				rs = await tx.execute(f"SELECT COUNT(*) AS n FROM {table}")  # noqa: S608
				result[table] = int(rs.scalar() or 0)
		return result
