"""Tests for CSV import parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from campaign_store.imports import read_systems_csv
from conftest import write_systems_csv


class TestReadSystemsCsv:
	def test_parses_rows(self, tmp_path: Path) -> None:
		path = write_systems_csv(tmp_path / "s.csv", ["Sol,T,5,10,10,5,10", "Vega,A,3,4,2,3,1"])
		systems = read_systems_csv(path)
		assert [s.name for s in systems] == ["Sol", "Vega"]
		assert systems[1].cap == 4
		assert all(s.id is None and s.owner is None for s in systems)

	def test_header_case_and_extra_columns(self, tmp_path: Path) -> None:
		path = write_systems_csv(
			tmp_path / "s.csv", ["Sol,T,5,10,10,5,10,ignored"], header="Name,PType,RAW,Cap,Pop,Mor,Ind,Notes",
		)
		assert read_systems_csv(path)[0].ptype == "T"

	def test_skips_blank_lines(self, tmp_path: Path) -> None:
		path = write_systems_csv(tmp_path / "s.csv", ["Sol,T,5,10,10,5,10", "", "Vega,A,3,4,2,3,1"])
		assert len(read_systems_csv(path)) == 2

	def test_missing_column(self, tmp_path: Path) -> None:
		path = write_systems_csv(tmp_path / "s.csv", ["Sol,T,5"], header="name,ptype,raw")
		with pytest.raises(ValueError, match="missing columns: cap, pop, mor, ind"):
			read_systems_csv(path)

	def test_bad_number_names_line(self, tmp_path: Path) -> None:
		path = write_systems_csv(tmp_path / "s.csv", ["Sol,T,5,10,10,5,10", "Vega,A,x,4,2,3,1"])
		with pytest.raises(ValueError, match="s.csv:3"):
			read_systems_csv(path)

	def test_empty_name(self, tmp_path: Path) -> None:
		path = write_systems_csv(tmp_path / "s.csv", [" ,T,5,10,10,5,10"])
		with pytest.raises(ValueError, match="name is empty"):
			read_systems_csv(path)

	def test_missing_file(self, tmp_path: Path) -> None:
		with pytest.raises(FileNotFoundError):
			read_systems_csv(tmp_path / "absent.csv")
