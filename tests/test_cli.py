"""Tests for the RecycleMart CLI — proves commands parse and dispatch."""

import json
from pathlib import Path

import pytest

from recyclemart.cli import DEFAULT_CONFIG, _make_service, build_parser, main


def _run(tmp_path: Path, *argv: str) -> int:
    return main(["--config", str(DEFAULT_CONFIG), "--data", str(tmp_path), *argv])


class TestCLIParsing:
    def test_status_command(self) -> None:
        args = build_parser().parse_args(["status"])
        assert args.command == "status"

    def test_quote_command(self) -> None:
        args = build_parser().parse_args([
            "quote", "--category", "plastic", "--weight", "2", "--reward", "8",
        ])
        assert args.command == "quote"
        assert args.category == "plastic"
        assert args.weight == "2"
        assert args.reward == "8"

    def test_quote_rejects_unknown_category(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["quote", "--category", "textiles", "--weight", "2"])

    def test_list_jobs_filters(self) -> None:
        args = build_parser().parse_args(["list-jobs", "--status", "claimed", "--poster", "0xa"])
        assert args.status == "claimed"
        assert args.poster == "0xa"
        assert args.search is None

    def test_data_dir_override(self, tmp_path: Path) -> None:
        args = build_parser().parse_args(["--data", str(tmp_path), "status"])
        assert args.data == tmp_path


class TestCLIExecution:
    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0
        assert "recyclemart" in capsys.readouterr().out

    def test_status_runs(self, tmp_path: Path, capsys) -> None:
        assert _run(tmp_path, "status") == 0
        output = json.loads(capsys.readouterr().out)
        assert output["stats"]["total_jobs"] == 0

    def test_quote(self, tmp_path: Path, capsys) -> None:
        assert _run(tmp_path, "quote", "--category", "plastic", "--weight", "2") == 0
        output = json.loads(capsys.readouterr().out)
        assert output["reward"] == "5"
        assert output["collector_net"] == "4.75"
        assert output["clamped_to_minimum"] is True

    def test_quote_invalid_weight(self, tmp_path: Path) -> None:
        assert _run(tmp_path, "quote", "--category", "plastic", "--weight", "0") == 1

    def test_list_jobs(self, tmp_path: Path, capsys) -> None:
        service = _make_service(DEFAULT_CONFIG, tmp_path)
        service.create_job(
            "0xposter", "Old newspapers", "", "paper", "8", "Shah Alam",
            "https://example.invalid/paper.jpg",
        )
        assert _run(tmp_path, "list-jobs", "--status", "posted") == 0
        listed = json.loads(capsys.readouterr().out)
        assert [j["title"] for j in listed] == ["Old newspapers"]
        assert "contact" not in listed[0]

        assert _run(tmp_path, "list-jobs", "--search", "cardboard") == 0
        assert json.loads(capsys.readouterr().out) == []

    def test_export_and_import(self, tmp_path: Path) -> None:
        data_dir = tmp_path / "data"
        service = _make_service(DEFAULT_CONFIG, data_dir)
        service.create_job(
            "0xposter", "Cans", "", "metal", "3", "Klang", "https://example.invalid/cans.jpg",
        )
        backup = tmp_path / "backup.json"
        assert _run(data_dir, "export", "--output", str(backup)) == 0
        exported = json.loads(backup.read_text(encoding="utf-8"))
        assert exported["schema_version"] == 1
        assert len(exported["jobs"]) == 1

        assert _run(data_dir, "clear-all", "--yes") == 0
        assert _make_service(DEFAULT_CONFIG, data_dir).list_jobs() == []

        assert _run(data_dir, "import", "--input", str(backup)) == 0
        assert len(_make_service(DEFAULT_CONFIG, data_dir).list_jobs()) == 1

    def test_import_rejects_other_version(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"schema_version": 5}), encoding="utf-8")
        assert _run(tmp_path / "data", "import", "--input", str(bad)) == 1

    def test_clear_all_requires_confirmation(self, tmp_path: Path) -> None:
        assert _run(tmp_path, "clear-all") == 1
