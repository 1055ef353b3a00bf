"""CSV import of star systems."""

from __future__ import annotations

import csv
from pathlib import Path

from pydantic import ValidationError

from campaign_store.models import StarSystem

SYSTEM_CSV_FIELDS = ("name", "ptype", "raw", "cap", "pop", "mor", "ind")
_INT_FIELDS = ("raw", "cap", "pop", "mor", "ind")


def read_systems_csv(path: str | Path) -> list[StarSystem]:
	"""Parse systems from a CSV file with a header row.

	Required columns: name, ptype, raw, cap, pop, mor, ind. Extra columns are
	ignored.

	Raises:
		FileNotFoundError: If the file doesn't exist.
		ValueError: On a missing column or a malformed row (the message names the line).
	"""
	csv_path = Path(path)
	if not csv_path.exists():
		raise FileNotFoundError(f"CSV file not found: {csv_path}")

	systems: list[StarSystem] = []
	with open(csv_path, newline="", encoding="utf-8") as f:
		reader = csv.DictReader(f)
		header = [h.strip().lower() for h in reader.fieldnames or []]
		missing = [c for c in SYSTEM_CSV_FIELDS if c not in header]
		if missing:
			raise ValueError(f"{csv_path}: missing columns: {', '.join(missing)}")
		reader.fieldnames = header
		for row in reader:
			line = reader.line_num
			if not any((v or "").strip() for v in row.values()):
				continue
			try:
				values: dict[str, object] = {
					"name": (row["name"] or "").strip(),
					"ptype": (row["ptype"] or "").strip(),
				}
				for key in _INT_FIELDS:
					values[key] = int((row[key] or "").strip())
				if not values["name"]:
					raise ValueError("name is empty")
				systems.append(StarSystem.model_validate(values))
			except (ValueError, ValidationError) as exc:
				raise ValueError(f"{csv_path}:{line}: {exc}") from exc
	return systems
