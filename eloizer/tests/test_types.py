"""Tests for eloizer.core.types and eloizer.core.errors."""

from __future__ import annotations

import json

import pytest

from eloizer.core.errors import BuildError, EloizerError, RuleEvaluationError
from eloizer.core.raw import RawNode, Span, node
from eloizer.core.types import (
    AnalysisReport,
    Diagnostic,
    DiagnosticKind,
    Finding,
    Location,
    RuleCategory,
    Severity,
)


def _finding(rule_id: str = "r", severity: Severity = Severity.LOW, file: str = "a.rs", line: int = 1) -> Finding:
    return Finding(
        rule_id=rule_id,
        title="t",
        severity=severity,
        location=Location(file_path=file, start_line=line, end_line=line),
        message="m",
    )


class TestSeverity:
    def test_order(self):
        ranks = [s.rank for s in (Severity.HIGH, Severity.MEDIUM, Severity.LOW, Severity.INFORMATIONAL)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4

    @pytest.mark.parametrize("raw,expected", [
        ("HIGH", Severity.HIGH),
        ("Medium", Severity.MEDIUM),
        (" low ", Severity.LOW),
        ("info", Severity.INFORMATIONAL),
        ("informational", Severity.INFORMATIONAL),
    ])
    def test_parse(self, raw, expected):
        assert Severity.parse(raw) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown severity"):
            Severity.parse("critical")

    def test_label(self):
        assert Severity.INFORMATIONAL.label == "Informational"


class TestRuleCategory:
    def test_parse(self):
        assert RuleCategory.parse("Anchor") is RuleCategory.ANCHOR

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            RuleCategory.parse("evm")


class TestLocation:
    def test_overlaps_same_file(self):
        a = Location(file_path="a.rs", start_line=1, end_line=5)
        b = Location(file_path="a.rs", start_line=5, end_line=9)
        assert a.overlaps(b)
        assert b.overlaps(a)

    def test_disjoint(self):
        a = Location(file_path="a.rs", start_line=1, end_line=4)
        b = Location(file_path="a.rs", start_line=5, end_line=9)
        assert not a.overlaps(b)

    def test_other_file(self):
        a = Location(file_path="a.rs", start_line=1, end_line=5)
        b = Location(file_path="b.rs", start_line=1, end_line=5)
        assert not a.overlaps(b)


class TestFinding:
    def test_sort_key_severity_first(self):
        high = _finding(severity=Severity.HIGH, file="z.rs", line=99)
        low = _finding(severity=Severity.LOW, file="a.rs", line=1)
        assert sorted([low, high], key=Finding.sort_key) == [high, low]

    def test_sort_key_then_file_line_rule(self):
        a = _finding(rule_id="b-rule", file="a.rs", line=2)
        b = _finding(rule_id="a-rule", file="a.rs", line=2)
        c = _finding(rule_id="a-rule", file="a.rs", line=1)
        assert sorted([a, b, c], key=Finding.sort_key) == [c, b, a]

    def test_frozen(self):
        f = _finding()
        with pytest.raises(Exception):
            f.rule_id = "other"


class TestAnalysisReport:
    def test_views(self):
        report = AnalysisReport(
            findings=(_finding("x"), _finding("y")),
            diagnostics=(
                Diagnostic(kind=DiagnosticKind.BUILD_FAILURE, subject="a.rs", message="bad"),
                Diagnostic(kind=DiagnosticKind.RULE_FAILURE, subject="y", message="boom"),
            ),
            build_failure_count=1,
        )
        assert [f.rule_id for f in report.findings_for("x")] == ["x"]
        assert len(report.build_failures) == 1
        assert report.rule_failures[0].subject == "y"

    def test_to_dict_is_json(self):
        report = AnalysisReport(findings=(_finding(severity=Severity.HIGH),), counts_by_severity={"high": 1})
        data = report.to_dict()
        assert data["findings"][0]["severity"] == "high"
        json.dumps(data)

    def test_finding_metadata_is_read_only(self):
        finding = Finding(
            rule_id="r", title="t", severity=Severity.LOW, message="m",
            location=Location(file_path="a.rs", start_line=1, end_line=1),
            metadata={"accounts": ["a", "b"]},
        )
        assert finding.metadata["accounts"] == ("a", "b")
        with pytest.raises(TypeError):
            finding.metadata["accounts"] = []
        assert finding.model_dump()["metadata"] == {"accounts": ["a", "b"]}


class TestRawNode:
    def test_json_round_trip(self):
        tree = node("file", "", node("struct", "Vault", node("field", "authority", node("type", "Pubkey"), line=3)))
        restored = RawNode.model_validate_json(tree.model_dump_json())
        assert restored == tree
        assert restored.find_all("field")[0].text == "authority"

    def test_props_are_read_only(self):
        ref = node("ref", "", node("path", "x"), mutable=True)
        assert ref.prop("mutable") is True
        with pytest.raises(TypeError):
            ref.props["mutable"] = False
        assert json.loads(ref.model_dump_json())["props"] == {"mutable": True}

    def test_span_with_file(self):
        span = Span(start_line=3, end_line=4)
        assert span.with_file("a.rs").file == "a.rs"
        assert span.last_line == 4


class TestErrors:
    def test_build_error_message(self):
        err = BuildError("a.rs", "bad tree", Span(file="a.rs", start_line=7))
        assert isinstance(err, EloizerError)
        assert str(err) == "a.rs:7: bad tree"

    def test_rule_evaluation_error(self):
        err = RuleEvaluationError("my-rule", KeyError("x"))
        assert err.rule_id == "my-rule"
        assert "KeyError" in str(err)
