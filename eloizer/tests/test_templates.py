"""Tests for YAML rule templates."""

from __future__ import annotations

import textwrap

import pytest

from eloizer.core.errors import ConfigurationError
from eloizer.core.types import RuleCategory, Severity
from eloizer.rules.templates import load_rule_templates, load_template_file, parse_template


def _write(path, body: str):
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


_SINGLE = """\
    id: no-msg
    title: msg! in handler
    severity: low
    categories: general
    recommendation: Remove debug logging.
    message: "`{where}` logs with `{name}!`"
    match:
      macro: msg
"""

_LIST = """\
    rules:
      - id: external-process
        title: Call into external_program
        severity: medium
        categories: [solana, general]
        match:
          call: "external_program::*"
      - id: raw-accounts
        title: Raw account
        severity: info
        categories: [anchor]
        match:
          account_type: [UncheckedAccount, AccountInfo]
"""


class TestParseTemplate:
    def test_single_mapping(self, tmp_path):
        [r] = load_template_file(_write(tmp_path / "msg.yaml", _SINGLE))
        assert r.id == "no-msg"
        assert r.severity is Severity.LOW
        assert r.categories == frozenset({RuleCategory.GENERAL})
        assert r.origin.endswith("msg.yaml")

    def test_rules_list(self, tmp_path):
        rules = load_template_file(_write(tmp_path / "many.yml", _LIST))
        assert [r.id for r in rules] == ["external-process", "raw-accounts"]
        assert rules[1].severity is Severity.INFORMATIONAL

    @pytest.mark.parametrize("data,match", [
        ({"title": "t", "severity": "low", "categories": ["general"], "match": {"macro": "x"}}, "'id'"),
        ({"id": "a", "title": "t", "severity": "low", "categories": ["general"]}, "'match'"),
        ({"id": "a", "title": "t", "severity": "fatal", "categories": ["general"], "match": {"macro": "x"}},
         "Unknown severity"),
        ({"id": "a", "title": "t", "severity": "low", "categories": ["evm"], "match": {"macro": "x"}},
         "Unknown rule category"),
        ({"id": "a", "title": "t", "severity": "low", "categories": ["general"], "match": {"opcode": "x"}},
         "unknown selector"),
        ({"id": "a", "title": "t", "severity": "low", "categories": ["general"], "match": {"macro": [1]}},
         "string pattern"),
        ({"id": "a", "title": "t", "severity": "low", "categories": ["general"], "match": {"macro": "x"},
          "message": "{account}"}, "unknown field"),
        ({"id": "Bad Id", "title": "t", "severity": "low", "categories": ["general"], "match": {"macro": "x"}},
         "kebab-case"),
    ])
    def test_invalid(self, data, match):
        with pytest.raises(ConfigurationError, match=match):
            parse_template(data, "inline.yaml")

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            parse_template(["id"], "inline.yaml")

    def test_malformed_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError, match="cannot read"):
            load_template_file(_write(tmp_path / "bad.yaml", "id: [unclosed\n"))


class TestLoadDirectory:
    def test_sorted_and_filtered(self, tmp_path):
        _write(tmp_path / "b.yaml", _SINGLE)
        _write(tmp_path / "a.yml", _LIST)
        _write(tmp_path / "notes.txt", "ignored")
        assert [r.id for r in load_rule_templates(tmp_path)] == ["external-process", "raw-accounts", "no-msg"]

    def test_duplicate_id_across_files(self, tmp_path):
        _write(tmp_path / "a.yaml", _SINGLE)
        _write(tmp_path / "b.yaml", _SINGLE)
        with pytest.raises(ConfigurationError, match="already defined"):
            load_rule_templates(tmp_path)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_rule_templates(tmp_path / "nope")


class TestTemplateMatching:
    def test_call_selector(self, tmp_path, resolve, unknown_callee_unit):
        [external, raw] = load_template_file(_write(tmp_path / "many.yaml", _LIST))
        context = resolve(unknown_callee_unit())

        [finding] = external.evaluate(context)
        assert finding.rule_id == "external-process"
        assert finding.severity is Severity.MEDIUM
        assert finding.location.start_line == 42
        assert finding.metadata == {"selector": "call", "pattern": "external_program::*"}

        [account] = raw.evaluate(context)
        assert account.location.start_line == 5
        assert "`Relay` matches `target`" == account.message

    def test_message_template(self, tmp_path, rs, resolve):
        [r] = load_template_file(_write(tmp_path / "msg.yaml", _SINGLE))
        unit = rs.unit(
            "src/lib.rs",
            rs.fn("log_it", [], rs.stmt(rs.macro("msg", rs.lit('"hi"'), line=3), line=3), line=1),
        )
        [finding] = r.evaluate(resolve(unit))
        assert finding.message == "`log_it` logs with `msg!`"
        assert finding.recommendation == "Remove debug logging."
