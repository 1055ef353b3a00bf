"""Abstract storage capability used by the repository layer."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from typing import Any

from campaign_store.executor import USE_DEFAULT, Params, RowSet
from campaign_store.migrations import MigrationReport
from campaign_store.schema import SchemaRegistry


class Transaction(ABC):
	"""Statements issued inside one open transaction."""

	@abstractmethod
	async def execute(self, sql: str, params: Params = (), *, timeout: float | None = USE_DEFAULT) -> RowSet:
		"""Run one statement and return its rows."""

	@abstractmethod
	def iterate(self, sql: str, params: Params = (), *, batch_size: int | None = None) -> AsyncIterator[dict[str, Any]]:
		"""Stream result rows in batches."""


class StorageBackend(ABC):
	"""Engine-specific storage. Repositories depend only on this interface."""

	@abstractmethod
	def transaction(self) -> AbstractAsyncContextManager[Transaction]:
		"""Exclusive write transaction: committed on exit, rolled back on error."""

	@abstractmethod
	def snapshot(self) -> AbstractAsyncContextManager[Transaction]:
		"""Read transaction that sees one consistent committed state."""

	@abstractmethod
	async def execute(self, sql: str, params: Params = (), *, timeout: float | None = USE_DEFAULT) -> RowSet:
		"""Run one statement in its own write transaction."""

	@abstractmethod
	async def migrate(self, registry: SchemaRegistry) -> MigrationReport:
		"""Bring the schema up to date and start admitting traffic."""

	@abstractmethod
	async def schema_version(self) -> int:
		"""Return the stored schema version."""

	@abstractmethod
	async def close(self, drain_timeout: float | None = None) -> None:
		"""Drain or cancel in-flight work and release the store."""
