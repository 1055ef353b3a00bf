"""Versioned schema definitions for campaign databases.

The registry is pure data: it never touches a connection. A registry whose
steps do not form a contiguous chain from version 0 is rejected when it is
constructed, so a broken chain fails at import time rather than mid-migration.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from campaign_store.errors import ForwardIncompatibleError, SchemaChainError


@dataclass(frozen=True)
class Migration:
	"""One step of the schema chain, from_version -> to_version."""

	from_version: int
	to_version: int
	name: str
	statements: tuple[str, ...] = ()
	apply: Callable[[sqlite3.Connection], None] | None = None

	def run(self, conn: sqlite3.Connection) -> None:
		"""Execute the step on a connection that is already inside a transaction."""
		# Statements go one at a time: executescript() would commit the
		# surrounding transaction.
		for statement in self.statements:
			conn.execute(statement)
		if self.apply is not None:
			self.apply(conn)


class SchemaRegistry:
	"""An ordered, gap-free chain of migrations."""

	def __init__(self, migrations: Iterable[Migration]) -> None:
		self._migrations: tuple[Migration, ...] = tuple(
			sorted(migrations, key=lambda m: m.from_version)
		)
		self._validate_chain(self._migrations)

	@staticmethod
	def _validate_chain(migrations: Sequence[Migration]) -> None:
		expected = 0
		for migration in migrations:
			if migration.from_version != expected:
				raise SchemaChainError(
					f"migration {migration.name!r} starts at version {migration.from_version}, "
					f"expected {expected}"
				)
			if migration.to_version != migration.from_version + 1:
				raise SchemaChainError(
					f"migration {migration.name!r} must advance exactly one version "
					f"({migration.from_version} -> {migration.to_version})"
				)
			expected = migration.to_version

	def latest_version(self) -> int:
		if not self._migrations:
			return 0
		return self._migrations[-1].to_version

	def migrations_from(self, version: int) -> tuple[Migration, ...]:
		"""Steps needed to bring a file at ``version`` up to the latest version."""
		latest = self.latest_version()
		if version > latest:
			raise ForwardIncompatibleError(
				f"database schema is newer than supported (file={version}, latest={latest})"
			)
		if version < 0:
			raise ValueError(f"invalid schema version: {version}")
		return self._migrations[version:]

	def __len__(self) -> int:
		return len(self._migrations)


_V1_CONTROL_AND_EMPIRES = (
	"""CREATE TABLE control (
	key TEXT PRIMARY KEY,
	value TEXT NOT NULL DEFAULT '',
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
)""",
	"""INSERT INTO control (key, value, created_at, updated_at)
	VALUES ('turn', '0', strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'), strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))""",
	"""CREATE TABLE empires (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	name TEXT NOT NULL,
	treasury INTEGER NOT NULL DEFAULT 0,
	tech INTEGER NOT NULL DEFAULT 0,
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
)""",
)

_V2_SYSTEMS_AND_FORCES = (
	"""CREATE TABLE systems (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	name TEXT NOT NULL,
	ptype TEXT NOT NULL DEFAULT '',
	raw INTEGER NOT NULL DEFAULT 0,
	cap INTEGER NOT NULL DEFAULT 0,
	pop INTEGER NOT NULL DEFAULT 0,
	mor INTEGER NOT NULL DEFAULT 0,
	ind INTEGER NOT NULL DEFAULT 0,
	dev INTEGER NOT NULL DEFAULT 0,
	fails INTEGER NOT NULL DEFAULT 0,
	owner INTEGER REFERENCES empires (id) ON DELETE SET NULL,
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
)""",
	"CREATE INDEX idx_systems_name ON systems(name)",
	"""CREATE TABLE fleets (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	name TEXT NOT NULL,
	owner INTEGER REFERENCES empires (id) ON DELETE SET NULL,
	location INTEGER REFERENCES systems (id) ON DELETE SET NULL,
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
)""",
	"""CREATE TABLE ground_types (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	name TEXT NOT NULL,
	abbr TEXT NOT NULL DEFAULT '',
	cost INTEGER NOT NULL DEFAULT 0,
	attack INTEGER NOT NULL DEFAULT 0,
	defense INTEGER NOT NULL DEFAULT 0,
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
)""",
	"""INSERT INTO ground_types (name, abbr, cost, attack, defense, created_at, updated_at)
	SELECT name, abbr, cost, attack, defense, ts, ts FROM (
		SELECT strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now') AS ts
	) JOIN (
		SELECT 'Militia' AS name, 'MIL' AS abbr, 2 AS cost, 4 AS attack, 4 AS defense
		UNION ALL SELECT 'Light Infantry', 'LI', 3, 4, 4
		UNION ALL SELECT 'Mobile Infantry', 'MI', 4, 4, 8
		UNION ALL SELECT 'Light Armor', 'LA', 4, 8, 4
		UNION ALL SELECT 'Mech Infantry', 'MECH', 8, 8, 8
		UNION ALL SELECT 'Marines', 'MAR', 6, 4, 8
	)""",
	"""CREATE TABLE ground_units (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	gtype INTEGER REFERENCES ground_types (id),
	loc INTEGER REFERENCES systems (id) ON DELETE SET NULL
)""",
	"""CREATE TABLE ship_types (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	class TEXT NOT NULL DEFAULT '',
	hull TEXT NOT NULL DEFAULT '',
	cost INTEGER NOT NULL DEFAULT 0,
	cr INTEGER NOT NULL DEFAULT 0,
	attack INTEGER NOT NULL DEFAULT 0,
	defense INTEGER NOT NULL DEFAULT 0,
	cap INTEGER NOT NULL DEFAULT 0,
	empire INTEGER REFERENCES empires (id) ON DELETE SET NULL
)""",
	"""CREATE TABLE ships (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	stype INTEGER REFERENCES ship_types (id),
	fleet INTEGER REFERENCES fleets (id) ON DELETE SET NULL,
	crippled INTEGER NOT NULL DEFAULT 0,
	mothballed INTEGER NOT NULL DEFAULT 0
)""",
)

_V3_SESSIONS_AND_NOTES = (
	"""CREATE TABLE sessions (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	name TEXT NOT NULL,
	turn INTEGER NOT NULL DEFAULT 0,
	summary TEXT NOT NULL DEFAULT '',
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
)""",
	"""CREATE TABLE notes (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	session_id INTEGER REFERENCES sessions (id) ON DELETE CASCADE,
	title TEXT NOT NULL,
	body TEXT NOT NULL DEFAULT '',
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
)""",
	"CREATE INDEX idx_notes_session ON notes(session_id)",
)

CAMPAIGN_MIGRATIONS: tuple[Migration, ...] = (
	Migration(0, 1, "control_and_empires", _V1_CONTROL_AND_EMPIRES),
	Migration(1, 2, "systems_and_forces", _V2_SYSTEMS_AND_FORCES),
	Migration(2, 3, "sessions_and_notes", _V3_SESSIONS_AND_NOTES),
)

DEFAULT_REGISTRY = SchemaRegistry(CAMPAIGN_MIGRATIONS)
