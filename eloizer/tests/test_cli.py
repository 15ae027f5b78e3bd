"""Tests for the command-line interface."""

from __future__ import annotations

import json

import pytest

from eloizer import __version__
from eloizer.cli.main import build_parser, load_units, main


@pytest.fixture
def project(tmp_path, seed_sharing_units):
    """A directory of ``*.ast.json`` trees for the seed-sharing scenario."""
    for unit in seed_sharing_units:
        target = tmp_path / f"{unit.path}.ast.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(unit.tree.model_dump_json(), encoding="utf-8")
    return tmp_path


class TestParser:
    def test_analyze_arguments(self):
        args = build_parser().parse_args([
            "analyze", "--path", "p", "--ignore", "low", "--ignore-rules", "unsafe-unwrap",
            "-f", "json", "-o", "out.json",
        ])
        assert args.command == "analyze"
        assert args.path == "p"
        assert args.ignore == "low"
        assert args.ignore_rules == "unsafe-unwrap"
        assert args.format == "json"
        assert args.output == "out.json"

    def test_analyze_requires_path(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["analyze"])

    def test_version(self, capsys):
        assert main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == f"eloizer {__version__}"


class TestLoadUnits:
    def test_paths_relative_to_root(self, project):
        units = load_units(project)
        assert [u.path for u in units] == [
            "programs/vault/src/instructions/deposit.rs",
            "programs/vault/src/instructions/withdraw.rs",
        ]
        assert all(u.tree is not None for u in units)

    def test_undecodable_tree(self, tmp_path):
        (tmp_path / "lib.rs.ast.json").write_text("not json", encoding="utf-8")
        [unit] = load_units(tmp_path)
        assert unit.path == "lib.rs"
        assert unit.tree is None

    def test_source_attached(self, project):
        source = project / "programs/vault/src/instructions/deposit.rs"
        source.write_text("use anchor_lang::prelude::*;\n", encoding="utf-8")
        units = {u.path: u for u in load_units(project)}
        assert units["programs/vault/src/instructions/deposit.rs"].source.startswith("use anchor_lang")
        assert units["programs/vault/src/instructions/withdraw.rs"].source is None


class TestAnalyzeCommand:
    def test_json_output_and_exit_code(self, project, capsys):
        code = main(["--no-color", "analyze", "--path", str(project), "--format", "json"])
        assert code == 1
        report = json.loads(capsys.readouterr().out)
        high = [f for f in report["findings"] if f["severity"] == "high"]
        assert [f["rule_id"] for f in high] == ["pda-sharing-cwe-345"]
        assert report["counts_by_severity"]["high"] == 1

    def test_ignoring_high_exits_zero(self, project, capsys):
        assert main(["--no-color", "analyze", "--path", str(project), "--ignore", "high", "-f", "json"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["counts_by_severity"]["high"] == 0

    def test_table_output(self, project, capsys):
        main(["--no-color", "analyze", "--path", str(project)])
        out = capsys.readouterr().out
        assert "pda-sharing-cwe-345" in out
        assert "Analysis complete" in out

    def test_markdown_file(self, project, tmp_path):
        target = tmp_path / "report.md"
        main(["--no-color", "-q", "analyze", "--path", str(project), "-f", "markdown", "-o", str(target)])
        text = target.read_text(encoding="utf-8")
        assert text.startswith("# ELOIZER Analysis Report")
        assert "`pda-sharing-cwe-345`" in text

    def test_model_export(self, project):
        main(["--no-color", "-q", "analyze", "--path", str(project), "--ast", "-f", "json"])
        exported = project / "programs/vault/src/instructions/deposit.rs.model.json"
        data = json.loads(exported.read_text(encoding="utf-8"))
        assert data["file_path"] == "programs/vault/src/instructions/deposit.rs"
        assert data["account_structs"][0]["name"] == "Deposit"

    def test_missing_path(self, tmp_path):
        assert main(["--no-color", "analyze", "--path", str(tmp_path / "nope")]) == 2

    def test_no_trees(self, tmp_path):
        assert main(["--no-color", "analyze", "--path", str(tmp_path)]) == 2

    def test_unknown_ignored_rule(self, project, capsys):
        assert main(["--no-color", "analyze", "--path", str(project), "--ignore-rules", "nope"]) == 2
        assert "Configuration error" in capsys.readouterr().err


class TestCatalogCommands:
    def test_list_rules(self, capsys):
        assert main(["--no-color", "list-rules"]) == 0
        out = capsys.readouterr().out
        assert "pda-sharing-cwe-345" in out
        assert "Total: 23 rules" in out

    def test_list_rules_bad_severity(self):
        assert main(["--no-color", "list-rules", "--severity", "critical"]) == 2

    def test_rule_info(self, capsys):
        assert main(["--no-color", "rule-info", "missing-signer-check-cwe-862"]) == 0
        assert "CWE-862" in capsys.readouterr().out

    def test_rule_info_not_found(self, capsys):
        assert main(["--no-color", "rule-info", "no-such-rule"]) == 1
        assert "Rule not found" in capsys.readouterr().err

    def test_config(self, capsys):
        assert main(["--no-color", "config"]) == 0
        assert "max_workers" in capsys.readouterr().out
