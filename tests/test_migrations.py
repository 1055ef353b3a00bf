"""Tests for the startup migration runner."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

import pytest

from campaign_store.backends.sqlite import SQLiteBackend
from campaign_store.config import PoolConfig, StoreConfig
from campaign_store.errors import ForwardIncompatibleError, MigrationError
from campaign_store.executor import QueryExecutor
from campaign_store.migrations import MigrationRunner, MigrationState
from campaign_store.pool import ConnectionPool
from campaign_store.schema import CAMPAIGN_MIGRATIONS, DEFAULT_REGISTRY, Migration, SchemaRegistry
from campaign_store.storage import Storage
from conftest import make_session


def _user_version(path: Path) -> int:
	conn = sqlite3.connect(path)
	try:
		return conn.execute("PRAGMA user_version").fetchone()[0]
	finally:
		conn.close()


def _tables(path: Path) -> set[str]:
	conn = sqlite3.connect(path)
	try:
		return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
	finally:
		conn.close()


class TestFreshDatabase:
	@pytest.mark.asyncio
	async def test_zero_to_latest(self, db_path: Path, store_config: StoreConfig) -> None:
		async with await Storage.open(db_path, store_config) as storage:
			report = storage.report
			assert report.from_version == 0
			assert report.to_version == 3
			assert report.applied == ["control_and_empires", "systems_and_forces", "sessions_and_notes"]
			assert report.state is MigrationState.COMMITTED
			assert await storage.schema_version() == 3

			first = await storage.sessions.insert(make_session())
			assert first == 1
			assert (await storage.sessions.get(first)).name == "Opening moves"
		assert _user_version(db_path) == 3

	@pytest.mark.asyncio
	async def test_reopen_is_noop(self, db_path: Path, store_config: StoreConfig) -> None:
		async with await Storage.open(db_path, store_config):
			pass
		async with await Storage.open(db_path, store_config) as storage:
			assert storage.report.from_version == 3
			assert storage.report.applied == []
			assert storage.report.state is MigrationState.COMMITTED

	@pytest.mark.asyncio
	async def test_memory_database(self, store_config: StoreConfig) -> None:
		async with await Storage.open(":memory:", store_config) as storage:
			assert await storage.schema_version() == 3
			assert await storage.current_turn() == 0


class TestIncremental:
	@pytest.mark.asyncio
	async def test_upgrade_from_version_one(self, db_path: Path, store_config: StoreConfig) -> None:
		v1 = SchemaRegistry(CAMPAIGN_MIGRATIONS[:1])
		async with await Storage.open(db_path, store_config, registry=v1) as storage:
			assert storage.report.to_version == 1
		assert _user_version(db_path) == 1
		assert "systems" not in _tables(db_path)

		async with await Storage.open(db_path, store_config) as storage:
			assert storage.report.from_version == 1
			assert storage.report.applied == ["systems_and_forces", "sessions_and_notes"]
			assert await storage.current_turn() == 0
		assert _user_version(db_path) == 3


class TestAtomicity:
	@pytest.mark.asyncio
	async def test_failing_step_leaves_original_version(self, db_path: Path, store_config: StoreConfig) -> None:
		broken = SchemaRegistry([
			CAMPAIGN_MIGRATIONS[0],
			Migration(1, 2, "broken_step", ("CREATE TABLE half_done (v INTEGER)", "INSERT INTO nowhere VALUES (1)")),
		])
		with pytest.raises(MigrationError, match="broken_step"):
			await Storage.open(db_path, store_config, registry=broken)
		assert _user_version(db_path) == 0
		assert _tables(db_path).isdisjoint({"control", "empires", "half_done"})

	@pytest.mark.asyncio
	async def test_failure_on_partially_migrated_file(self, db_path: Path, store_config: StoreConfig) -> None:
		async with await Storage.open(db_path, store_config, registry=SchemaRegistry(CAMPAIGN_MIGRATIONS[:2])):
			pass

		def explode(conn: sqlite3.Connection) -> None:
			raise ValueError("seed data rejected")

		broken = SchemaRegistry([*CAMPAIGN_MIGRATIONS[:2], Migration(2, 3, "bad_seed", ("CREATE TABLE x (v)",), explode)])
		with pytest.raises(MigrationError) as exc_info:
			await Storage.open(db_path, store_config, registry=broken)
		assert isinstance(exc_info.value.__cause__, ValueError)
		assert _user_version(db_path) == 2
		assert "x" not in _tables(db_path)

		# The file is still usable by a correct build.
		async with await Storage.open(db_path, store_config) as storage:
			assert storage.report.applied == ["sessions_and_notes"]


class TestForwardIncompatible:
	@pytest.mark.asyncio
	async def test_newer_file_refused(self, db_path: Path, store_config: StoreConfig) -> None:
		conn = sqlite3.connect(db_path)
		conn.execute("PRAGMA user_version = 7")
		conn.close()
		with pytest.raises(ForwardIncompatibleError):
			await Storage.open(db_path, store_config)
		assert _user_version(db_path) == 7


class TestRunner:
	@pytest.mark.asyncio
	async def test_states_and_single_use(self, db_path: Path) -> None:
		pool = await ConnectionPool.open(db_path, PoolConfig(lock_timeout=0.5))
		runner = MigrationRunner(DEFAULT_REGISTRY, QueryExecutor())
		assert runner.state is MigrationState.NOT_STARTED
		try:
			async with pool.acquire_exclusive() as conn:
				report = await runner.run(conn)
				assert runner.state is MigrationState.COMMITTED
				assert report.to_version == 3
				with pytest.raises(MigrationError, match="already used"):
					await runner.run(conn)
		finally:
			await pool.close()

	@pytest.mark.asyncio
	async def test_failed_run_state(self, db_path: Path) -> None:
		pool = await ConnectionPool.open(db_path, PoolConfig(lock_timeout=0.5))
		broken = SchemaRegistry([Migration(0, 1, "oops", ("CREATE TABLE",))])
		runner = MigrationRunner(broken, QueryExecutor())
		try:
			async with pool.acquire_exclusive() as conn:
				with pytest.raises(MigrationError):
					await runner.run(conn)
			assert runner.state is MigrationState.FAILED
			assert runner.current_step is not None
			assert runner.current_step.name == "oops"
		finally:
			await pool.close()


class TestAdmissionGate:
	@pytest.mark.asyncio
	async def test_requests_before_migration_wait(self, db_path: Path) -> None:
		pool = await ConnectionPool.open(db_path, PoolConfig(lock_timeout=0.5))
		backend = SQLiteBackend(pool, QueryExecutor())

		async def read_turn() -> str:
			async with backend.snapshot() as tx:
				rs = await tx.execute("SELECT value FROM control WHERE key = 'turn'")
			return rs.scalar()

		try:
			early = asyncio.create_task(read_turn())
			await asyncio.sleep(0.05)
			assert not early.done()
			await backend.migrate(DEFAULT_REGISTRY)
			assert await asyncio.wait_for(early, 2) == "0"
		finally:
			await backend.close()

	@pytest.mark.asyncio
	async def test_gate_stays_shut_after_failure(self, db_path: Path) -> None:
		pool = await ConnectionPool.open(db_path, PoolConfig(lock_timeout=0.5))
		backend = SQLiteBackend(pool, QueryExecutor())
		broken = SchemaRegistry([Migration(0, 1, "oops", ("CREATE TABLE",))])
		try:
			with pytest.raises(MigrationError):
				await backend.migrate(broken)
			assert not pool.admitting
		finally:
			await backend.close()
