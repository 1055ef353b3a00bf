"""Startup schema migration.

The stored schema version lives in ``PRAGMA user_version`` so it can be read
before any table is trusted. Pending steps are applied inside a single
``BEGIN IMMEDIATE`` transaction: the file either ends at the latest version or
stays at the version it had before the run.

States follow NOT_STARTED -> APPLYING -> COMMITTED | FAILED.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum

from campaign_store.errors import ForwardIncompatibleError, MigrationError
from campaign_store.executor import QueryExecutor
from campaign_store.pool import PooledConnection
from campaign_store.schema import Migration, SchemaRegistry

logger = logging.getLogger(__name__)


class MigrationState(Enum):
	NOT_STARTED = "not_started"
	APPLYING = "applying"
	COMMITTED = "committed"
	FAILED = "failed"


@dataclass
class MigrationReport:
	"""Outcome of one migration run."""

	from_version: int = 0
	to_version: int = 0
	applied: list[str] = field(default_factory=list)
	state: MigrationState = MigrationState.NOT_STARTED


def read_user_version(conn: sqlite3.Connection) -> int:
	return int(conn.execute("PRAGMA user_version").fetchone()[0])


def _apply_step(conn: sqlite3.Connection, migration: Migration) -> None:
	migration.run(conn)
	# PRAGMA does not accept bound parameters; the value is an int from the registry.
	conn.execute(f"PRAGMA user_version = {int(migration.to_version)}")


class MigrationRunner:
	"""Brings one database file up to the registry's latest version."""

	def __init__(self, registry: SchemaRegistry, executor: QueryExecutor) -> None:
		self.registry = registry
		self.executor = executor
		self.state = MigrationState.NOT_STARTED
		self.current_step: Migration | None = None

	async def run(self, conn: PooledConnection) -> MigrationReport:
		"""Apply pending migrations on an exclusively held writer connection.

		Raises:
			ForwardIncompatibleError: The file is newer than the registry.
			MigrationError: A step failed; the transaction was rolled back.
		"""
		if self.state is not MigrationState.NOT_STARTED:
			raise MigrationError(f"migration runner already used (state={self.state.value})")
		latest = self.registry.latest_version()
		# Migrations are DDL; they get no statement timeout.
		stored = await self.executor.run(conn, read_user_version, timeout=None)
		report = MigrationReport(from_version=stored, to_version=stored)

		try:
			pending = self.registry.migrations_from(stored)
		except ForwardIncompatibleError:
			self._fail(report)
			logger.warning("Refusing to open %s: schema version %d > latest %d", conn.path, stored, latest)
			raise

		if not pending:
			self.state = report.state = MigrationState.COMMITTED
			logger.debug("Schema at version %d, nothing to migrate", stored)
			return report

		logger.info("Migrating %s from version %d to %d", conn.path, stored, latest)
		self.state = MigrationState.APPLYING
		try:
			await self.executor.execute(conn, "BEGIN IMMEDIATE", timeout=None)
			for migration in pending:
				self.current_step = migration
				logger.info(
					"Applying migration %d -> %d: %s",
					migration.from_version, migration.to_version, migration.name,
				)
				await self.executor.run(conn, _apply_step, migration, timeout=None, statement=migration.name)
				report.applied.append(migration.name)
			await self.executor.execute(conn, "COMMIT", timeout=None)
		except (Exception, asyncio.CancelledError) as exc:
			await self.executor.rollback(conn)
			step = self.current_step
			self._fail(report)
			report.applied.clear()
			if isinstance(exc, asyncio.CancelledError):
				logger.warning("Migration of %s cancelled; rolled back to version %d", conn.path, stored)
				raise
			logger.warning(
				"Migration %s failed, rolled back to version %d: %s",
				step.name if step else "?", stored, exc,
			)
			if step is None:
				raise MigrationError(f"migration of {conn.path} failed: {exc}") from exc
			raise MigrationError(
				f"migration {step.name!r} ({step.from_version} -> {step.to_version}) failed: {exc}"
			) from exc

		self.current_step = None
		self.state = report.state = MigrationState.COMMITTED
		report.to_version = latest
		logger.info("Schema migrated to version %d (%d steps)", latest, len(report.applied))
		return report

	def _fail(self, report: MigrationReport) -> None:
		self.state = report.state = MigrationState.FAILED

