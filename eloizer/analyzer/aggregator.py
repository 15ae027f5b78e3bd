"""Finding aggregator — sort, deduplicate and count.

Pure: the same inputs always produce the same ``AnalysisReport``, and
aggregating a report's own findings again changes nothing.
"""

from __future__ import annotations

from typing import Iterable

from eloizer.core.types import AnalysisReport, Diagnostic, DiagnosticKind, Finding, Severity

_DIAGNOSTIC_ORDER = {
    DiagnosticKind.BUILD_FAILURE: 0,
    DiagnosticKind.RULE_FAILURE: 1,
    DiagnosticKind.CANCELLED: 2,
}


def deduplicate(findings: Iterable[Finding]) -> list[Finding]:
    """Sorted findings with same-rule, same-file, overlapping-line duplicates dropped.

    Findings of different rules are never collapsed, even on identical
    evidence.
    """
    kept: list[Finding] = []
    by_rule_file: dict[tuple[str, str], list[Finding]] = {}
    for finding in sorted(findings, key=Finding.sort_key):
        bucket = by_rule_file.setdefault((finding.rule_id, finding.file), [])
        if any(k.location.overlaps(finding.location) for k in bucket):
            continue
        bucket.append(finding)
        kept.append(finding)
    return kept


def count_by_severity(findings: Iterable[Finding]) -> dict[str, int]:
    counts = {s.value: 0 for s in sorted(Severity, key=lambda s: s.rank)}
    for f in findings:
        counts[f.severity.value] += 1
    return counts


def sort_diagnostics(diagnostics: Iterable[Diagnostic]) -> list[Diagnostic]:
    return sorted(
        diagnostics,
        key=lambda d: (_DIAGNOSTIC_ORDER[d.kind], d.subject, d.line or 0, d.message),
    )


def aggregate(
    findings: Iterable[Finding],
    *,
    analyzed_files: Iterable[str] = (),
    diagnostics: Iterable[Diagnostic] = (),
    rules_run: Iterable[str] = (),
    partial: bool = False,
) -> AnalysisReport:
    """Build the ``AnalysisReport`` of one run."""
    unique = deduplicate(findings)
    ordered_diagnostics = sort_diagnostics(diagnostics)
    return AnalysisReport(
        findings=tuple(unique),
        analyzed_files=tuple(sorted(set(analyzed_files))),
        build_failure_count=sum(1 for d in ordered_diagnostics if d.kind == DiagnosticKind.BUILD_FAILURE),
        diagnostics=tuple(ordered_diagnostics),
        counts_by_severity=count_by_severity(unique),
        rules_run=tuple(sorted(set(rules_run))),
        partial=partial,
    )
