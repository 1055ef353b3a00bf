"""TOML configuration loader for campaign-store."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_DATA_DIR = Path.home() / ".campaign-store"
ENV_DB_PATH = "CAMPAIGN_STORE_DB"
ENV_DATA_DIR = "CAMPAIGN_STORE_DATA_DIR"


@dataclass
class DatabaseConfig:
	"""Location of the campaign database file."""

	path: str = ""

	@property
	def resolved_path(self) -> Path:
		return Path(os.path.expanduser(self.path))


@dataclass
class PoolConfig:
	"""Connection pool settings."""

	readers: int = 2  # reader connections alongside the single writer
	busy_timeout_ms: int = 5000
	lock_timeout: float = 5.0  # seconds to wait for the write lock on open
	drain_timeout: float = 5.0  # seconds close() waits before interrupting


@dataclass
class ExecutorConfig:
	"""Statement execution settings."""

	default_timeout: float | None = 30.0  # seconds, None disables
	batch_size: int = 100  # rows fetched per round trip when streaming


@dataclass
class LibraryConfig:
	"""Where named campaigns are kept."""

	data_dir: str = ""

	@property
	def resolved_dir(self) -> Path:
		if not self.data_dir:
			return DEFAULT_DATA_DIR
		return Path(os.path.expanduser(self.data_dir))


@dataclass
class StoreConfig:
	"""Top-level campaign-store configuration."""

	database: DatabaseConfig = field(default_factory=DatabaseConfig)
	pool: PoolConfig = field(default_factory=PoolConfig)
	executor: ExecutorConfig = field(default_factory=ExecutorConfig)
	library: LibraryConfig = field(default_factory=LibraryConfig)


def _build_database(data: dict[str, Any]) -> DatabaseConfig:
	dc = DatabaseConfig()
	if "path" in data:
		dc.path = str(data["path"])
	return dc


def _build_pool(data: dict[str, Any]) -> PoolConfig:
	pc = PoolConfig()
	for key in ("readers", "busy_timeout_ms"):
		if key in data:
			setattr(pc, key, int(data[key]))
	for key in ("lock_timeout", "drain_timeout"):
		if key in data:
			setattr(pc, key, float(data[key]))
	return pc


def _build_executor(data: dict[str, Any]) -> ExecutorConfig:
	ec = ExecutorConfig()
	if "default_timeout" in data:
		value = data["default_timeout"]
		# 0 in TOML means "no timeout" since TOML has no null
		ec.default_timeout = float(value) if value else None
	if "batch_size" in data:
		ec.batch_size = int(data["batch_size"])
	return ec


def _build_library(data: dict[str, Any]) -> LibraryConfig:
	lc = LibraryConfig()
	if "data_dir" in data:
		lc.data_dir = str(data["data_dir"])
	return lc


def _apply_env(config: StoreConfig) -> StoreConfig:
	if not config.database.path:
		config.database.path = os.environ.get(ENV_DB_PATH, "")
	if not config.library.data_dir:
		config.library.data_dir = os.environ.get(ENV_DATA_DIR, "")
	return config


def default_config() -> StoreConfig:
	"""Return defaults with environment fallbacks applied."""
	return _apply_env(StoreConfig())


def load_config(path: str | Path) -> StoreConfig:
	"""Load a campaign-store.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed StoreConfig, with environment fallbacks applied to unset paths.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	sc = StoreConfig()
	if "database" in data:
		sc.database = _build_database(data["database"])
	if "pool" in data:
		sc.pool = _build_pool(data["pool"])
	if "executor" in data:
		sc.executor = _build_executor(data["executor"])
	if "library" in data:
		sc.library = _build_library(data["library"])
	return _apply_env(sc)


def validate_config(config: StoreConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded StoreConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	pool = config.pool
	if pool.readers < 0:
		issues.append(("error", f"pool.readers must not be negative: {pool.readers}"))
	elif pool.readers == 0 and config.database.path not in ("", ":memory:"):
		issues.append(("warning", "pool.readers is zero; reads will queue behind writes"))
	if pool.busy_timeout_ms < 0:
		issues.append(("error", f"pool.busy_timeout_ms is negative: {pool.busy_timeout_ms}"))
	if pool.lock_timeout < 0:
		issues.append(("error", f"pool.lock_timeout is negative: {pool.lock_timeout}"))
	if pool.drain_timeout < 0:
		issues.append(("error", f"pool.drain_timeout is negative: {pool.drain_timeout}"))

	ex = config.executor
	if ex.default_timeout is not None and ex.default_timeout < 0:
		issues.append(("error", f"executor.default_timeout is negative: {ex.default_timeout}"))
	if ex.batch_size < 1:
		issues.append(("error", f"executor.batch_size must be at least 1: {ex.batch_size}"))
	elif ex.batch_size > 10_000:
		issues.append(("warning", f"executor.batch_size is very high: {ex.batch_size}"))

	db_path = config.database.path
	if db_path and db_path != ":memory:":
		parent = config.database.resolved_path.parent
		if not parent.exists():
			issues.append(("error", f"database directory does not exist: {parent}"))

	data_dir = config.library.resolved_dir
	if data_dir.exists() and not os.access(data_dir, os.W_OK):
		issues.append(("error", f"library.data_dir is not writable: {data_dir}"))

	return issues
