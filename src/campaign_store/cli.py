"""CLI interface for campaign-store."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Coroutine
from typing import Any

from campaign_store.config import StoreConfig, default_config, load_config, validate_config
from campaign_store.errors import StorageError
from campaign_store.library import CampaignLibrary
from campaign_store.storage import Storage

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="campaign-store",
		description="Campaign storage - manage campaign databases",
	)
	parser.add_argument("--config", default=None, help="Config file path (TOML)")
	parser.add_argument("--data-dir", default=None, help="Directory holding campaign databases")
	parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
	sub = parser.add_subparsers(dest="command")

	# campaign-store list
	sub.add_parser("list", help="List available campaigns")

	# campaign-store new
	new = sub.add_parser("new", help="Create a new campaign")
	new.add_argument("name")

	# campaign-store delete
	delete = sub.add_parser("delete", help="Delete a campaign and its files")
	delete.add_argument("name")

	# campaign-store info
	info = sub.add_parser("info", help="Show schema version, turn and record counts")
	info.add_argument("name")

	# campaign-store import-systems
	imp = sub.add_parser("import-systems", help="Import star systems from a CSV file")
	imp.add_argument("name")
	imp.add_argument("csv", help="CSV with columns name,ptype,raw,cap,pop,mor,ind")

	# campaign-store systems
	systems = sub.add_parser("systems", help="List a campaign's systems with owners")
	systems.add_argument("name")

	# campaign-store migrate
	migrate = sub.add_parser("migrate", help="Bring a database file up to the latest schema")
	migrate.add_argument(
		"path", nargs="?", default=None,
		help="Database file (default: database.path from config or CAMPAIGN_STORE_DB)",
	)

	return parser


def _load(args: argparse.Namespace) -> StoreConfig:
	config = load_config(args.config) if args.config else default_config()
	if args.data_dir:
		config.library.data_dir = args.data_dir
	return config


def _library(config: StoreConfig) -> CampaignLibrary:
	return CampaignLibrary(config.library.resolved_dir)


def _run(coro: Coroutine[Any, Any, int]) -> int:
	try:
		return asyncio.run(coro)
	except StorageError as e:
		print(f"Error: {e}")
		return 1


def cmd_list(args: argparse.Namespace, config: StoreConfig) -> int:
	"""List campaigns in the data directory."""
	names = _library(config).available()
	if not names:
		print("No campaigns yet.")
		return 0
	for name in names:
		print(name)
	return 0


def cmd_new(args: argparse.Namespace, config: StoreConfig) -> int:
	"""Create an empty campaign at the latest schema version."""

	async def run() -> int:
		async with await _library(config).create(args.name, config) as storage:
			print(f"Created '{args.name}' -> {storage.path} (schema version {storage.report.to_version})")
		return 0

	return _run(run())


def cmd_delete(args: argparse.Namespace, config: StoreConfig) -> int:
	try:
		_library(config).delete(args.name)
	except StorageError as e:
		print(f"Error: {e}")
		return 1
	print(f"Deleted '{args.name}'")
	return 0


def cmd_info(args: argparse.Namespace, config: StoreConfig) -> int:
	"""Show campaign title, schema version and record counts."""

	async def run() -> int:
		async with await _library(config).open(args.name, config) as storage:
			print(await storage.title(args.name))
			print(f"Schema version: {await storage.schema_version()}")
			for table, n in (await storage.counts()).items():
				print(f"  {table}: {n}")
		return 0

	return _run(run())


def cmd_import_systems(args: argparse.Namespace, config: StoreConfig) -> int:
	async def run() -> int:
		async with await _library(config).open(args.name, config) as storage:
			try:
				count = await storage.import_systems(args.csv)
			except (FileNotFoundError, ValueError) as e:
				print(f"Error: {e}")
				return 1
		print(f"Imported {count} systems into '{args.name}'")
		return 0

	return _run(run())


def cmd_systems(args: argparse.Namespace, config: StoreConfig) -> int:
	"""Print systems one per line, tab separated."""

	async def run() -> int:
		async with await _library(config).open(args.name, config) as storage:
			systems = await storage.systems_with_owners()
		if not systems:
			print("No systems yet.")
			return 0
		for system in systems:
			print(system.as_row())
		return 0

	return _run(run())


def cmd_migrate(args: argparse.Namespace, config: StoreConfig) -> int:
	"""Open a database file directly, migrating it if needed."""
	if args.path:
		path = args.path
	elif config.database.path:
		path = str(config.database.resolved_path)
	else:
		print("Error: no database path given and database.path is not configured")
		return 1

	async def run() -> int:
		async with await Storage.open(path, config) as storage:
			report = storage.report
		if report.applied:
			print(f"Migrated {path} from version {report.from_version} to {report.to_version}")
			for name in report.applied:
				print(f"  applied {name}")
		else:
			print(f"{path} is up to date (schema version {report.to_version})")
		return 0

	return _run(run())


COMMANDS = {
	"list": cmd_list,
	"new": cmd_new,
	"delete": cmd_delete,
	"info": cmd_info,
	"import-systems": cmd_import_systems,
	"systems": cmd_systems,
	"migrate": cmd_migrate,
}


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)

	if args.command is None:
		parser.print_help()
		return 0

	try:
		config = _load(args)
	except FileNotFoundError as e:
		print(f"Error: {e}")
		return 1
	for level, msg in validate_config(config):
		if level == "error":
			print(f"Config error: {msg}")
			return 1
		logger.warning("Config: %s", msg)

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	return handler(args, config)


if __name__ == "__main__":
	sys.exit(main())
