"""Named campaigns kept as one database file each under a data directory."""

from __future__ import annotations

import logging
from pathlib import Path

from campaign_store.config import DEFAULT_DATA_DIR, StoreConfig
from campaign_store.errors import ConflictError, NotFoundError, StorageIOError
from campaign_store.storage import Storage

logger = logging.getLogger(__name__)

DB_SUFFIX = ".db"
_SIDECARS = ("-wal", "-shm", "-journal")


def _file_stem(name: str) -> str:
	stem = name.strip().replace(" ", "_")
	if not stem or stem in (".", "..") or "/" in stem or "\\" in stem:
		raise ValueError(f"Invalid campaign name: {name!r}")
	return stem


class CampaignLibrary:
	"""Directory of campaign databases, ``<name>.db`` with spaces as underscores.

	Defaults to ~/.campaign-store.
	"""

	def __init__(self, data_dir: str | Path | None = None) -> None:
		self.data_dir = Path(data_dir) if data_dir else DEFAULT_DATA_DIR

	def available(self) -> list[str]:
		"""Campaign names found in the data directory, sorted."""
		if not self.data_dir.is_dir():
			return []
		return sorted(p.stem.replace("_", " ") for p in self.data_dir.glob(f"*{DB_SUFFIX}") if p.is_file())

	def path_for(self, name: str) -> Path:
		return self.data_dir / f"{_file_stem(name)}{DB_SUFFIX}"

	def exists(self, name: str) -> bool:
		return self.path_for(name).is_file()

	async def create(self, name: str, config: StoreConfig | None = None) -> Storage:
		"""Create a new campaign and return it open at the latest schema."""
		path = self.path_for(name)
		if path.exists():
			raise ConflictError(f"campaign {name!r} already exists")
		try:
			self.data_dir.mkdir(parents=True, exist_ok=True)
		except OSError as exc:
			raise StorageIOError(f"cannot create data directory {self.data_dir}: {exc}") from exc
		logger.info("Creating campaign %r at %s", name, path)
		return await Storage.open(path, config)

	async def open(self, name: str, config: StoreConfig | None = None) -> Storage:
		path = self.path_for(name)
		if not path.is_file():
			raise NotFoundError(f"campaign {name!r} not found in {self.data_dir}")
		return await Storage.open(path, config)

	def delete(self, name: str) -> None:
		"""Remove a campaign's database file and its sidecar files."""
		path = self.path_for(name)
		if not path.is_file():
			raise NotFoundError(f"campaign {name!r} not found in {self.data_dir}")
		try:
			path.unlink()
			for suffix in _SIDECARS:
				path.with_name(path.name + suffix).unlink(missing_ok=True)
		except OSError as exc:
			raise StorageIOError(f"cannot delete campaign {name!r}: {exc}") from exc
		logger.info("Deleted campaign %r", name)
