"""Shared pytest fixtures and factory functions for campaign-store tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from campaign_store.config import StoreConfig
from campaign_store.models import CampaignSession, ControlEntry, Empire, Note, StarSystem
from campaign_store.storage import Storage


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
	"""Path of a not-yet-created database file."""
	return tmp_path / "campaign.db"


@pytest.fixture()
def store_config() -> StoreConfig:
	"""Config with short timeouts so a hung test fails quickly."""
	cfg = StoreConfig()
	cfg.pool.lock_timeout = 0.5
	cfg.pool.busy_timeout_ms = 500
	cfg.pool.drain_timeout = 1.0
	cfg.executor.default_timeout = 10.0
	return cfg


@pytest_asyncio.fixture()
async def storage(db_path: Path, store_config: StoreConfig) -> AsyncIterator[Storage]:
	"""File-backed Storage migrated to the latest schema."""
	st = await Storage.open(db_path, store_config)
	yield st
	await st.close()


@pytest_asyncio.fixture()
async def memory_storage(store_config: StoreConfig) -> AsyncIterator[Storage]:
	"""In-memory Storage (single connection, no readers)."""
	st = await Storage.open(":memory:", store_config)
	yield st
	await st.close()


def make_empire(**overrides: Any) -> Empire:
	"""Create an Empire with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"name": "Terran Federation",
		"treasury": 100,
		"tech": 1,
	}
	defaults.update(overrides)
	return Empire(**defaults)


def make_system(**overrides: Any) -> StarSystem:
	"""Create a StarSystem with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"name": "Sol",
		"ptype": "T",
		"raw": 5,
		"cap": 10,
		"pop": 10,
		"mor": 5,
		"ind": 10,
	}
	defaults.update(overrides)
	return StarSystem(**defaults)


def make_session(**overrides: Any) -> CampaignSession:
	"""Create a CampaignSession with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"name": "Opening moves",
		"turn": 1,
	}
	defaults.update(overrides)
	return CampaignSession(**defaults)


def make_note(**overrides: Any) -> Note:
	"""Create a Note with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"title": "Reminder",
		"body": "Check supply lines",
	}
	defaults.update(overrides)
	return Note(**defaults)


def make_control(**overrides: Any) -> ControlEntry:
	"""Create a ControlEntry with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"key": "moderator",
		"value": "alice",
	}
	defaults.update(overrides)
	return ControlEntry(**defaults)


def write_systems_csv(path: Path, rows: list[str], header: str = "name,ptype,raw,cap,pop,mor,ind") -> Path:
	"""Write a systems CSV file and return its path."""
	path.write_text("\n".join([header, *rows]) + "\n", encoding="utf-8")
	return path
