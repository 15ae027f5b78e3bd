"""ELOIZER CLI — static analyzer for Solana / Anchor programs.

The CLI reads raw syntax trees (``*.ast.json``, one RawNode tree per Rust
file) produced by the external parser, runs ``analyze`` and prints the
report.

Usage:
    eloizer analyze --path <dir>        Analyze every *.ast.json under <dir>
    eloizer list-rules                  List the built-in rule catalog
    eloizer rule-info <rule-id>         Show one rule
    eloizer config                      Show current settings

Examples:
    eloizer analyze --path ./programs --ignore low,informational
    eloizer analyze --path ./programs --templates ./rules --format json -o report.json
    eloizer list-rules --severity high --detailed
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from eloizer import __version__
from eloizer.analyzer.pipeline import RuleSummary, analyze, list_rules, rule_info
from eloizer.core.config import get_settings
from eloizer.core.errors import BuildError, ConfigurationError
from eloizer.core.logging import setup_logging
from eloizer.core.raw import RawNode, SourceUnit
from eloizer.core.types import AnalysisReport, Severity
from eloizer.model.builder import build_program_model
from eloizer.rules.templates import load_rule_templates

logger = logging.getLogger(__name__)


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

_SEV_COLOR = {
    "high": _RED,
    "medium": _YELLOW,
    "low": _CYAN,
    "informational": _DIM,
}

_USE_COLOR = True


def _c(text: str, code: str) -> str:
    if not _USE_COLOR:
        return text
    return f"{code}{text}{_RESET}"


# ── CLI argument parser ─────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="eloizer",
        description="ELOIZER — static analyzer for Solana smart contracts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-color", action="store_true", help="Disable coloured output")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Errors only")

    sub = parser.add_subparsers(dest="command")

    # ── analyze ──────────────────────────────────────────────────────────────
    analyze_p = sub.add_parser("analyze", help="Analyze a project's parsed syntax trees")
    analyze_p.add_argument("--path", "-p", required=True, help="Project directory or a single .ast.json file")
    analyze_p.add_argument("--templates", "-t", help="Directory of YAML rule templates")
    analyze_p.add_argument(
        "--ignore", "-i",
        help="Severities to ignore (comma-separated: high,medium,low,informational)",
    )
    analyze_p.add_argument("--ignore-rules", help="Rule ids to ignore (comma-separated)")
    analyze_p.add_argument(
        "--categories",
        help="Rule categories to run (comma-separated: solana,anchor,general)",
    )
    analyze_p.add_argument("--ast", action="store_true", help="Write each unit's semantic model as JSON")
    analyze_p.add_argument(
        "--format", "-f",
        default="table",
        choices=["table", "json", "markdown"],
        help="Output format (default: table)",
    )
    analyze_p.add_argument("--output", "-o", help="Write output to file instead of stdout")

    # ── list-rules ───────────────────────────────────────────────────────────
    list_p = sub.add_parser("list-rules", help="List available detection rules")
    list_p.add_argument("--severity", "-s", help="Only rules of this severity")
    list_p.add_argument("--detailed", "-d", action="store_true", help="Show descriptions")
    list_p.add_argument("--templates", "-t", help="Include rules from a template directory")

    # ── rule-info ────────────────────────────────────────────────────────────
    info_p = sub.add_parser("rule-info", help="Show information about a rule")
    info_p.add_argument("rule_id", help="Rule id")
    info_p.add_argument("--templates", "-t", help="Also search a template directory")

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    return parser


# ── Input loading ────────────────────────────────────────────────────────────


def _unit_path(ast_file: Path, root: Path, suffix: str) -> str:
    rel = ast_file.relative_to(root) if root.is_dir() else Path(ast_file.name)
    name = rel.as_posix()
    return name[: -len(suffix)] if name.endswith(suffix) else name


def load_units(path: str | Path, suffix: str | None = None) -> list[SourceUnit]:
    """Read ``*<suffix>`` syntax trees under ``path``.

    A tree that cannot be decoded becomes a unit without a tree, which the
    pipeline records as a build failure. The Rust source next to the tree
    (``lib.rs`` for ``lib.rs.ast.json``) is attached for snippets when present.
    """
    suffix = suffix or get_settings().ast_suffix
    root = Path(path)
    files = [root] if root.is_file() else sorted(root.rglob(f"*{suffix}"))
    units: list[SourceUnit] = []
    for ast_file in files:
        unit_path = _unit_path(ast_file, root, suffix)
        try:
            tree: RawNode | None = RawNode.model_validate_json(ast_file.read_text(encoding="utf-8"))
        except ValidationError as exc:
            logger.warning("Cannot decode syntax tree %s: %d error(s)", ast_file, exc.error_count())
            tree = None
        source_file = ast_file.with_name(ast_file.name[: -len(suffix)]) if ast_file.name.endswith(suffix) else None
        source = None
        if source_file is not None and source_file.is_file():
            source = source_file.read_text(encoding="utf-8", errors="replace")
        units.append(SourceUnit(path=unit_path, tree=tree, source=source))
    return units


def _write_models(units: list[SourceUnit], root: Path, suffix: str) -> int:
    """Export each unit's ``ProgramModel`` beside its syntax tree."""
    written = 0
    base = root if root.is_dir() else root.parent
    for unit in units:
        try:
            model = build_program_model(unit)
        except BuildError:
            continue
        target = base / f"{unit.path}.model.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(model.model_dump_json(indent=2), encoding="utf-8")
        written += 1
    return written


# ── Output ───────────────────────────────────────────────────────────────────


def _summary_line(report: AnalysisReport) -> str:
    parts = []
    for sev, count in report.counts_by_severity.items():
        if count:
            parts.append(_c(f"{count} {sev.upper()}", _SEV_COLOR.get(sev, "")))
    return " · ".join(parts) if parts else _c("no findings", _GREEN)


def _print_table(report: AnalysisReport, quiet: bool = False) -> None:
    """Pretty-print findings as a coloured table."""
    if not quiet:
        print(f"\n{_c('Analysis complete', _BOLD)}  {len(report.analyzed_files)} file(s), {len(report.rules_run)} rule(s)")
        if report.partial:
            print(_c("  Run was cancelled: results are partial.", _YELLOW))
        print(f"  {_summary_line(report)}\n")

    for i, f in enumerate(report.findings, 1):
        badge = _c(f" {f.severity.value.upper()} ", _SEV_COLOR.get(f.severity.value, "") + _BOLD)
        loc = _c(f"  {f.location.file_path}:{f.location.start_line}", _DIM)
        print(f"  {i:>3}. {badge} {_c(f.title, _BOLD)} [{f.rule_id}]{loc}")
        print(f"       {f.message}")
        if f.location.snippet and not quiet:
            for line in f.location.snippet.splitlines():
                print(f"       {_c('│ ' + line, _DIM)}")
        for rel in f.related_locations:
            print(f"       {_c(f'see {rel.file_path}:{rel.start_line}', _DIM)}")
        print()

    for d in report.diagnostics:
        where = f"{d.subject}:{d.line}" if d.line else d.subject
        print(_c(f"  ! {d.kind.value}: {where}: {d.message}", _YELLOW), file=sys.stderr)


def render_markdown(report: AnalysisReport) -> str:
    lines = ["# ELOIZER Analysis Report", ""]
    lines.append(f"- Files analyzed: {len(report.analyzed_files)}")
    lines.append(f"- Rules run: {len(report.rules_run)}")
    for sev, count in report.counts_by_severity.items():
        lines.append(f"- {sev.capitalize()}: {count}")
    if report.partial:
        lines.append("- **Partial run** (cancelled)")
    lines.append("")

    for f in report.findings:
        lines.append(f"## [{f.severity.label}] {f.title}")
        lines.append("")
        lines.append(f"- Rule: `{f.rule_id}`")
        lines.append(f"- Location: `{f.location.file_path}:{f.location.start_line}`")
        for rel in f.related_locations:
            lines.append(f"- Related: `{rel.file_path}:{rel.start_line}`")
        lines.append("")
        lines.append(f.message)
        if f.location.snippet:
            lines += ["", "```rust", f.location.snippet, "```"]
        if f.recommendation:
            lines += ["", f"**Recommendation:** {f.recommendation}"]
        lines.append("")

    if report.diagnostics:
        lines += ["## Diagnostics", ""]
        for d in report.diagnostics:
            lines.append(f"- {d.kind.value}: `{d.subject}` {d.message}")
    return "\n".join(lines) + "\n"


def _emit(output: str, target: str | None, quiet: bool) -> None:
    if target:
        Path(target).write_text(output, encoding="utf-8")
        if not quiet:
            print(f"  Written to {_c(target, _CYAN)}")
    else:
        print(output)


# ── Commands ─────────────────────────────────────────────────────────────────


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _run_analyze(args: argparse.Namespace) -> int:
    root = Path(args.path)
    if not root.exists():
        print(_c(f"Error: path '{root}' does not exist.", _RED), file=sys.stderr)
        return 2

    suffix = get_settings().ast_suffix
    units = load_units(root, suffix)
    if not units:
        print(_c(f"Error: no {suffix} files found in '{root}'.", _RED), file=sys.stderr)
        return 2

    config: dict[str, Any] = {
        "ignore_severities": _split(args.ignore),
        "ignore_rule_ids": _split(args.ignore_rules),
    }
    if args.categories:
        config["include_categories"] = _split(args.categories)
    else:
        config["include_categories"] = get_settings().include_categories
    if args.templates:
        config["custom_rule_templates_dir"] = args.templates

    if not args.quiet and args.format == "table":
        print(f"  Analyzing {_c(str(len(units)), _CYAN)} unit(s) in {root}…")

    report = analyze(units, config)

    if args.ast:
        written = _write_models(units, root, suffix)
        if not args.quiet:
            print(f"  Wrote {written} model file(s)", file=sys.stderr)

    if args.format == "table" and not args.output:
        _print_table(report, quiet=args.quiet)
    elif args.format == "markdown":
        _emit(render_markdown(report), args.output, args.quiet)
    elif args.format == "table":
        _emit(render_markdown(report), args.output, args.quiet)
    else:
        _emit(json.dumps(report.to_dict(), indent=2), args.output, args.quiet)

    # Exit code: 1 if any high findings
    return 1 if report.counts_by_severity.get(Severity.HIGH.value, 0) else 0


def _templates(args: argparse.Namespace) -> list:
    return load_rule_templates(args.templates) if getattr(args, "templates", None) else []


def _run_list_rules(args: argparse.Namespace) -> int:
    rules = list_rules(args.severity, detailed=args.detailed, extra_rules=_templates(args))
    if not rules:
        print(_c("  No rules found", _YELLOW))
        return 0

    print(f"\n{_c('Available Detection Rules', _BOLD + _CYAN)}\n")
    for sev in sorted(Severity, key=lambda s: s.rank):
        group = [r for r in rules if r.severity == sev]
        if not group:
            continue
        print(f"{_c(f'{sev.label} Severity', _SEV_COLOR[sev.value] + _BOLD)} ({len(group)} rules)\n")
        for r in group:
            print(f"  • {_c(r.id, _BOLD)} - {r.title}")
            if args.detailed:
                print(f"    {_c(r.description, _DIM)}\n")
        print()
    print(f"Total: {_c(str(len(rules)), _BOLD)} rules\n")
    return 0


def _print_rule(r: RuleSummary) -> None:
    print(f"\n{_c('Rule Information', _BOLD + _CYAN)}\n")
    print(f"  {_c('ID:', _BOLD)} {r.id}")
    print(f"  {_c('Title:', _BOLD)} {r.title}")
    print(f"  {_c('Severity:', _BOLD)} {_c(r.severity.label, _SEV_COLOR[r.severity.value])}")
    print(f"  {_c('Categories:', _BOLD)} {', '.join(r.categories)}")
    if r.cwe:
        print(f"  {_c('Reference:', _BOLD)} {r.cwe}")
    if r.origin != "builtin":
        print(f"  {_c('Origin:', _BOLD)} {r.origin}")
    print(f"\n  {_c('Description:', _BOLD)}\n  {r.description}\n")
    if r.recommendation:
        print(f"  {_c('Recommendation:', _BOLD)}\n  {r.recommendation}\n")


def _run_rule_info(args: argparse.Namespace) -> int:
    lookup = rule_info(args.rule_id, extra_rules=_templates(args))
    if not lookup.found or lookup.rule is None:
        print(_c(f"Rule not found: {args.rule_id}", _RED), file=sys.stderr)
        print(f"\nUse {_c('eloizer list-rules', _CYAN)} to see all available rules\n", file=sys.stderr)
        return 1
    _print_rule(lookup.rule)
    return 0


def _run_config() -> int:
    """Print current settings."""
    s = get_settings()
    print(f"\n{_c('ELOIZER Configuration', _BOLD)}\n")
    for field_name in sorted(type(s).model_fields.keys()):
        print(f"  {_c(field_name + ':', _DIM)}  {getattr(s, field_name, '')}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    global _USE_COLOR

    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()

    if args.version:
        print(f"eloizer {__version__}")
        return 0

    _USE_COLOR = not (args.no_color or settings.no_color) and sys.stdout.isatty()
    level = "DEBUG" if args.verbose else "ERROR" if args.quiet else settings.log_level
    setup_logging(settings.app_env, level, use_color=_USE_COLOR)

    if not args.command:
        parser.print_help()
        return 0

    try:
        if args.command == "config":
            return _run_config()
        if args.command == "analyze":
            return _run_analyze(args)
        if args.command == "list-rules":
            return _run_list_rules(args)
        if args.command == "rule-info":
            return _run_rule_info(args)
    except ConfigurationError as exc:
        print(_c(f"Configuration error: {exc}", _RED), file=sys.stderr)
        return 2

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
