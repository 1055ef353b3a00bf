"""Exception hierarchy for the campaign storage layer."""

from __future__ import annotations

import sqlite3

_BUSY_CODES: frozenset[int] = frozenset(
	code
	for code in (
		getattr(sqlite3, "SQLITE_BUSY", None),
		getattr(sqlite3, "SQLITE_LOCKED", None),
		getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
	)
	if isinstance(code, int)
)

_IO_CODES: frozenset[int] = frozenset(
	code
	for code in (
		getattr(sqlite3, "SQLITE_CANTOPEN", None),
		getattr(sqlite3, "SQLITE_IOERR", None),
		getattr(sqlite3, "SQLITE_FULL", None),
		getattr(sqlite3, "SQLITE_READONLY", None),
		getattr(sqlite3, "SQLITE_NOTADB", None),
		getattr(sqlite3, "SQLITE_CORRUPT", None),
		getattr(sqlite3, "SQLITE_PERM", None),
	)
	if isinstance(code, int)
)

_BUSY_SUBSTRINGS = (
	"database is locked",
	"database table is locked",
	"database schema is locked",
)

_IO_SUBSTRINGS = (
	"unable to open database file",
	"disk i/o error",
	"database or disk is full",
	"attempt to write a readonly database",
	"file is not a database",
	"database disk image is malformed",
)


class StorageError(Exception):
	"""Base class for every storage error."""


class StorageIOError(StorageError):
	"""File-system level failure such as a missing directory or a full disk."""


class LockError(StorageError):
	"""The database file is locked by another connection or process."""


class PoolClosedError(StorageError):
	"""The connection pool was closed before or while waiting for a connection."""


class OperationTimeoutError(StorageError, TimeoutError):
	"""A statement did not complete within its timeout and was aborted."""


class ConflictError(StorageError):
	"""A record with the same identifier already exists."""


class NotFoundError(StorageError):
	"""No record exists for the requested identifier."""


class DecodeError(StorageError):
	"""A column value does not match the declared field type."""

	def __init__(self, column: str, message: str) -> None:
		super().__init__(f"cannot decode column {column!r}: {message}")
		self.column = column


class MigrationError(StorageError):
	"""Schema migration failed; the file was left at its original version."""


class ForwardIncompatibleError(MigrationError):
	"""The file was written by a newer schema than this build knows."""


class SchemaChainError(StorageError):
	"""The registered migrations do not form a contiguous chain from version 0."""


def translate_sqlite_error(exc: sqlite3.Error) -> StorageError:
	"""Map a sqlite3 exception onto the storage taxonomy.

	The caller is expected to raise the result ``from exc`` so the original
	error stays attached.
	"""
	if isinstance(exc, StorageError):
		return exc
	code = getattr(exc, "sqlite_errorcode", None)
	# Extended codes carry the primary code in the low byte.
	primary = code & 0xFF if isinstance(code, int) else None
	message = str(exc)
	lowered = message.lower()

	if isinstance(exc, sqlite3.IntegrityError):
		return ConflictError(message)
	if primary in _BUSY_CODES or any(s in lowered for s in _BUSY_SUBSTRINGS):
		return LockError(message)
	if primary in _IO_CODES or any(s in lowered for s in _IO_SUBSTRINGS):
		return StorageIOError(message)
	return StorageError(message)
