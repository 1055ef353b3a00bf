"""Entity-shaped CRUD over the storage capability.

Policies, fixed per entity type:

- Identifiers are either GENERATED (integer ids assigned by the database;
  ``insert`` refuses a pre-set id) or EXTERNAL (caller-chosen keys; inserting an
  existing key raises ConflictError).
- ``update`` is last-writer-wins and never resurrects a deleted record.
- ``delete`` removes the row physically and is idempotent.
- Every mutation runs in exactly one write transaction.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import AsyncExitStack, aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from campaign_store.backends.base import StorageBackend, Transaction
from campaign_store.errors import ConflictError, NotFoundError, StorageError
from campaign_store.executor import decode_row
from campaign_store.models import TIMESTAMP_FIELDS, Record, _now_iso

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def _validate_identifier(name: str) -> None:
	"""Validate a SQL identifier before it is interpolated into a statement."""
	if not name or len(name) > 64 or not _IDENTIFIER_RE.match(name):
		raise ValueError(f"Invalid SQL identifier: {name!r}")


class IdPolicy(Enum):
	GENERATED = "generated"
	EXTERNAL = "external"


@dataclass(frozen=True)
class EntitySpec(Generic[R]):
	"""Maps a record type onto its table."""

	table: str
	model: type[R]
	id_policy: IdPolicy = IdPolicy.GENERATED
	default_order: str = ""

	def __post_init__(self) -> None:
		_validate_identifier(self.table)
		for column in self.columns:
			_validate_identifier(column)

	@property
	def id_column(self) -> str:
		return self.model.id_field

	@property
	def columns(self) -> tuple[str, ...]:
		return tuple(self.model.model_fields)

	@property
	def payload_columns(self) -> tuple[str, ...]:
		skip = {self.id_column, *TIMESTAMP_FIELDS}
		return tuple(c for c in self.columns if c not in skip)

	@property
	def order_column(self) -> str:
		return self.default_order or self.id_column


def _where(spec: EntitySpec[Any], filters: Mapping[str, Any] | None) -> tuple[str, list[Any]]:
	if not filters:
		return "", []
	clauses: list[str] = []
	params: list[Any] = []
	for column, value in filters.items():
		if column not in spec.columns:
			raise ValueError(f"{spec.table} has no column {column!r}")
		if value is None:
			clauses.append(f"{column} IS NULL")
		else:
			clauses.append(f"{column} = ?")
			params.append(value)
	return " WHERE " + " AND ".join(clauses), params


class RecordStream(Generic[R]):
	"""Lazily decoded records read from a single snapshot.

	The snapshot is taken when the stream is opened (``Repository.list``) and
	held until ``aclose()``. Iterating again while open replays the same
	snapshot, so writes committed after the stream was opened never appear.
	"""

	def __init__(
		self,
		backend: StorageBackend,
		model: type[R],
		sql: str,
		params: list[Any],
		count_sql: str,
		count_params: list[Any],
		batch_size: int | None = None,
		limit: int | None = None,
	) -> None:
		self._backend = backend
		self._model = model
		self._sql = sql
		self._params = params
		self._count_sql = count_sql
		self._count_params = count_params
		self._batch_size = batch_size
		self._limit = limit
		self._stack: AsyncExitStack | None = None
		self._tx: Transaction | None = None
		self.total = 0

	async def open(self) -> RecordStream[R]:
		if self._stack is not None:
			return self
		stack = AsyncExitStack()
		try:
			self._tx = await stack.enter_async_context(self._backend.snapshot())
			# The first read pins the snapshot.
			rs = await self._tx.execute(self._count_sql, self._count_params)
			self.total = int(rs.scalar() or 0)
			# A negative LIMIT means no limit in SQLite.
			if self._limit is not None and self._limit >= 0:
				self.total = min(self.total, self._limit)
		except BaseException:
			await stack.aclose()
			self._tx = None
			raise
		self._stack = stack
		return self

	@property
	def closed(self) -> bool:
		return self._stack is None

	def __aiter__(self) -> AsyncIterator[R]:
		if self._tx is None:
			raise StorageError("record stream is not open")
		return self._iterate(self._tx)

	async def _iterate(self, tx: Transaction) -> AsyncIterator[R]:
		async with aclosing(tx.iterate(self._sql, self._params, batch_size=self._batch_size)) as rows:
			async for row in rows:
				yield decode_row(row, self._model)

	async def collect(self) -> list[R]:
		return [record async for record in self]

	async def aclose(self) -> None:
		await self.__aexit__(None, None, None)

	async def __aenter__(self) -> RecordStream[R]:
		return await self.open()

	async def __aexit__(self, *exc_info: Any) -> None:
		stack, self._stack, self._tx = self._stack, None, None
		if stack is not None:
			await stack.__aexit__(*exc_info)


class Repository(Generic[R]):
	"""CRUD operations for one entity type."""

	def __init__(self, backend: StorageBackend, spec: EntitySpec[R], batch_size: int | None = None) -> None:
		self.backend = backend
		self.spec = spec
		self.batch_size = batch_size

	@property
	def table(self) -> str:
		return self.spec.table

	def _check_type(self, record: Record) -> None:
		if not isinstance(record, self.spec.model):
			raise TypeError(f"{self.table} stores {self.spec.model.__name__}, got {type(record).__name__}")

	def _insert_statement(self, record: R, now: str) -> tuple[str, list[Any]]:
		self._check_type(record)
		values = record.payload()
		if self.spec.id_policy is IdPolicy.GENERATED:
			if record.identifier is not None:
				raise ValueError(f"{self.table} assigns ids; got {self.spec.id_column}={record.identifier!r}")
		else:
			if record.identifier is None:
				raise ValueError(f"{self.table} requires a {self.spec.id_column}")
			values = {self.spec.id_column: record.identifier, **values}
		values["created_at"] = now
		values["updated_at"] = now
		columns = ", ".join(values)
		marks = ", ".join("?" for _ in values)
		return f"INSERT INTO {self.table} ({columns}) VALUES ({marks})", list(values.values())  # noqa: S608

	async def _insert_in(self, tx: Transaction, record: R, now: str) -> Any:
		sql, params = self._insert_statement(record, now)
		try:
			rs = await tx.execute(sql, params)
		except ConflictError as exc:
			if self.spec.id_policy is IdPolicy.EXTERNAL:
				raise ConflictError(f"{self.table} {record.identifier!r} already exists") from exc
			raise
		if self.spec.id_policy is IdPolicy.GENERATED:
			return rs.lastrowid
		return record.identifier

	async def insert(self, record: R) -> Any:
		"""Store a new record and return its identifier."""
		async with self.backend.transaction() as tx:
			new_id = await self._insert_in(tx, record, _now_iso())
		logger.debug("Inserted %s %r", self.table, new_id)
		return new_id

	async def insert_many(self, records: Iterable[R]) -> list[Any]:
		"""Insert all records in one transaction; none are stored if any fails."""
		now = _now_iso()
		ids: list[Any] = []
		async with self.backend.transaction() as tx:
			for record in records:
				ids.append(await self._insert_in(tx, record, now))
		logger.debug("Inserted %d %s records", len(ids), self.table)
		return ids

	async def _get_in(self, tx: Transaction, record_id: Any) -> R:
		rs = await tx.execute(
			f"SELECT * FROM {self.table} WHERE {self.spec.id_column} = ?",  # noqa: S608
			(record_id,),
		)
		row = rs.first()
		if row is None:
			raise NotFoundError(f"{self.table} {record_id!r} not found")
		return decode_row(row, self.spec.model)

	async def get(self, record_id: Any) -> R:
		"""Return the record, or raise NotFoundError."""
		async with self.backend.snapshot() as tx:
			return await self._get_in(tx, record_id)

	async def find(self, record_id: Any) -> R | None:
		"""Like get(), but returns None when absent."""
		try:
			return await self.get(record_id)
		except NotFoundError:
			return None

	async def update(self, record_id: Any, payload: Mapping[str, Any] | R) -> R:
		"""Replace payload fields of an existing record (last writer wins).

		Raises:
			NotFoundError: The record does not exist (or was deleted).
			ValueError: Unknown fields or values of the wrong type.
		"""
		if isinstance(payload, Record):
			self._check_type(payload)
			changes = payload.payload()
		else:
			changes = dict(payload)
		unknown = set(changes) - set(self.spec.payload_columns)
		if unknown:
			raise ValueError(f"{self.table} cannot update fields: {', '.join(sorted(unknown))}")

		async with self.backend.transaction() as tx:
			current = await self._get_in(tx, record_id)
			updated = self.spec.model.model_validate(
				{**current.model_dump(), **changes, "updated_at": _now_iso()}
			)
			values = {c: getattr(updated, c) for c in self.spec.payload_columns}
			values["updated_at"] = updated.updated_at
			assignments = ", ".join(f"{c} = ?" for c in values)
			await tx.execute(
				f"UPDATE {self.table} SET {assignments} WHERE {self.spec.id_column} = ?",  # noqa: S608
				[*values.values(), record_id],
			)
		logger.debug("Updated %s %r", self.table, record_id)
		return updated

	async def delete(self, record_id: Any) -> None:
		"""Physically remove the record. Deleting an absent id succeeds."""
		async with self.backend.transaction() as tx:
			rs = await tx.execute(
				f"DELETE FROM {self.table} WHERE {self.spec.id_column} = ?",  # noqa: S608
				(record_id,),
			)
		if rs.rowcount:
			logger.debug("Deleted %s %r", self.table, record_id)

	async def list(
		self,
		filters: Mapping[str, Any] | None = None,
		*,
		order_by: str | None = None,
		limit: int | None = None,
	) -> RecordStream[R]:
		"""Open a stream of matching records on a snapshot taken now.

		``RecordStream.total`` is the number of rows the stream yields, capped
		by ``limit``.
		"""
		where, params = _where(self.spec, filters)
		order = order_by or self.spec.order_column
		if order not in self.spec.columns:
			raise ValueError(f"{self.table} has no column {order!r}")
		sql = f"SELECT * FROM {self.table}{where} ORDER BY {order}, {self.spec.id_column}"  # noqa: S608
		list_params = list(params)
		if limit is not None:
			sql += " LIMIT ?"
			list_params.append(int(limit))
		count_sql = f"SELECT COUNT(*) AS n FROM {self.table}{where}"  # noqa: S608
		stream = RecordStream(
			self.backend, self.spec.model, sql, list_params, count_sql, params, self.batch_size, limit,
		)
		return await stream.open()

	async def all(
		self,
		filters: Mapping[str, Any] | None = None,
		*,
		order_by: str | None = None,
		limit: int | None = None,
	) -> list[R]:
		"""Every matching record as a list."""
		async with await self.list(filters, order_by=order_by, limit=limit) as stream:
			return await stream.collect()

	async def count(self, filters: Mapping[str, Any] | None = None) -> int:
		where, params = _where(self.spec, filters)
		async with self.backend.snapshot() as tx:
			rs = await tx.execute(f"SELECT COUNT(*) AS n FROM {self.table}{where}", params)  # noqa: S608
		return int(rs.scalar() or 0)

