"""Record types for campaign data.

Records are strict pydantic models: values read back from SQLite must already
have the declared Python type, so a text value in an integer column is a
decode failure rather than a silent coercion.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

TIMESTAMP_FIELDS = ("created_at", "updated_at")


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


class Record(BaseModel):
	"""Base for every stored entity."""

	model_config = ConfigDict(strict=True, validate_assignment=True)

	id_field: ClassVar[str] = "id"

	created_at: str = Field(default_factory=_now_iso)
	updated_at: str = Field(default_factory=_now_iso)

	@property
	def identifier(self) -> Any:
		return getattr(self, self.id_field)

	def payload(self) -> dict[str, Any]:
		"""Field values without the identifier and timestamps."""
		return self.model_dump(exclude={self.id_field, *TIMESTAMP_FIELDS})


class ControlEntry(Record):
	"""A campaign-wide setting such as the current turn."""

	id_field: ClassVar[str] = "key"

	key: str
	value: str = ""


class Empire(Record):
	"""A player or NPC empire."""

	id: int | None = None
	name: str
	treasury: int = 0
	tech: int = 0


class StarSystem(Record):
	"""A star system on the campaign map."""

	id: int | None = None
	name: str
	ptype: str = ""
	raw: int = 0
	cap: int = 0
	pop: int = 0
	mor: int = 0
	ind: int = 0
	dev: int = 0
	fails: int = 0
	owner: int | None = None


class SystemView(StarSystem):
	"""A star system with its owner's name resolved."""

	owner_name: str = "None"

	def as_row(self) -> str:
		"""Tab-separated summary line used by list displays."""
		cols = [
			self.name, self.ptype, self.raw, self.cap, self.pop, self.mor,
			self.ind, self.dev, self.fails, self.owner_name,
		]
		return "\t".join(str(c) for c in cols)


class Fleet(Record):
	"""A group of ships owned by an empire."""

	id: int | None = None
	name: str
	owner: int | None = None
	location: int | None = None


class GroundType(Record):
	"""A ground unit type (militia, marines, ...)."""

	id: int | None = None
	name: str
	abbr: str = ""
	cost: int = 0
	attack: int = 0
	defense: int = 0


class CampaignSession(Record):
	"""One played session of the campaign."""

	id: int | None = None
	name: str
	turn: int = 0
	summary: str = ""


class Note(Record):
	"""A moderator note, optionally attached to a session."""

	id: int | None = None
	session_id: int | None = None
	title: str
	body: str = ""
