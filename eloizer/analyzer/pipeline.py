"""Public entry points: ``analyze``, ``list_rules`` and ``rule_info``.

``analyze`` runs the two-phase pipeline:

  1. Build one ``ProgramModel`` per source unit, in parallel. A unit that
     fails to build is recorded as a diagnostic and excluded.
  2. Barrier: resolve all models into one read-only ``AnalysisContext``.
  3. Evaluate the active rule set against the context, in parallel.
  4. Aggregate findings and diagnostics into the ``AnalysisReport``.

The core performs no I/O of its own besides loading rule templates from
``custom_rule_templates_dir`` when the caller configures one.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, Mapping, Union

from pydantic import BaseModel, ConfigDict

from eloizer.analyzer.aggregator import aggregate
from eloizer.analyzer.engine import CancellationToken, RuleEngine, build_ruleset
from eloizer.core.config import AnalysisConfig, get_settings, load_config
from eloizer.core.errors import BuildError, ConfigurationError
from eloizer.core.raw import RawNode, SourceUnit
from eloizer.core.types import AnalysisReport, Diagnostic, DiagnosticKind, Severity
from eloizer.model.builder import SemanticModelBuilder
from eloizer.model.program import ProgramModel
from eloizer.model.resolver import resolve_models
from eloizer.rules.base import Rule
from eloizer.rules.registry import registry
from eloizer.rules.templates import load_rule_templates

logger = logging.getLogger(__name__)

UnitInput = Union[SourceUnit, tuple[str, Union[RawNode, None]]]

__all__ = [
    "CancellationToken",
    "DiagnosticCollector",
    "RuleLookup",
    "RuleSummary",
    "analyze",
    "build_models",
    "list_rules",
    "rule_info",
]


# ── Diagnostics collector ────────────────────────────────────────────────────


class DiagnosticCollector:
    """Lock-protected append-only diagnostics list shared by builder threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: list[Diagnostic] = []

    def add(self, diagnostic: Diagnostic) -> None:
        with self._lock:
            self._items.append(diagnostic)

    def items(self) -> list[Diagnostic]:
        with self._lock:
            return list(self._items)


# ── Build phase ──────────────────────────────────────────────────────────────


def _normalize_units(units: Iterable[UnitInput]) -> list[SourceUnit]:
    normalized: list[SourceUnit] = []
    for unit in units:
        if isinstance(unit, SourceUnit):
            normalized.append(unit)
        else:
            path, tree = unit
            normalized.append(SourceUnit(path=path, tree=tree))
    normalized.sort(key=lambda u: u.path)
    seen: set[str] = set()
    for unit in normalized:
        if unit.path in seen:
            raise ConfigurationError(f"Duplicate source unit path: {unit.path}")
        seen.add(unit.path)
    return normalized


def _build_one(unit: SourceUnit, collector: DiagnosticCollector) -> ProgramModel | None:
    try:
        return SemanticModelBuilder(unit).build()
    except BuildError as exc:
        logger.warning("Build failed for %s: %s", unit.path, exc.message, extra={"file_path": unit.path})
        collector.add(Diagnostic(
            kind=DiagnosticKind.BUILD_FAILURE,
            subject=unit.path,
            message=exc.message,
            line=exc.span.start_line if exc.span else None,
        ))
        return None
    except Exception as exc:
        message = f"{type(exc).__name__}: {exc}"
        logger.warning("Build crashed for %s: %s", unit.path, message, exc_info=True, extra={"file_path": unit.path})
        collector.add(Diagnostic(kind=DiagnosticKind.BUILD_FAILURE, subject=unit.path, message=message))
        return None


def build_models(
    units: list[SourceUnit],
    collector: DiagnosticCollector,
    *,
    parallel: bool = True,
    max_workers: int = 4,
    cancel: CancellationToken | None = None,
) -> tuple[list[ProgramModel], bool]:
    """Build every unit's model. Returns the models and whether scheduling was cancelled."""
    cancelled = False
    results: list[ProgramModel | None] = []
    if parallel and len(units) > 1:
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="eloizer-build") as pool:
            futures = []
            for unit in units:
                if cancel is not None and cancel.cancelled:
                    cancelled = True
                    break
                futures.append(pool.submit(_build_one, unit, collector))
            results = [f.result() for f in futures]
    else:
        for unit in units:
            if cancel is not None and cancel.cancelled:
                cancelled = True
                break
            results.append(_build_one(unit, collector))

    if cancelled:
        logger.warning("Build cancelled; %d of %d unit(s) scheduled", len(results), len(units))
    return [m for m in results if m is not None], cancelled


# ── analyze ──────────────────────────────────────────────────────────────────


def _default_config() -> AnalysisConfig:
    return load_config({"include_categories": get_settings().include_categories})


def analyze(
    units: Iterable[UnitInput],
    config: AnalysisConfig | Mapping[str, Any] | None = None,
    *,
    extra_rules: Iterable[Rule] = (),
    cancel: CancellationToken | None = None,
    max_workers: int | None = None,
) -> AnalysisReport:
    """Analyze a project given as (path, raw tree) pairs or ``SourceUnit`` objects.

    Args:
        units: Parsed source units. A ``None`` tree is recorded as a build failure.
        config: Rule-set configuration (``AnalysisConfig`` or a plain mapping).
        extra_rules: Already-constructed rules merged into the catalog.
        cancel: Token that stops scheduling new builds and rule evaluations.
        max_workers: Thread pool size override.

    Returns:
        The aggregated ``AnalysisReport``; ``partial`` is set when the run
        was cancelled.

    Raises:
        ConfigurationError: invalid configuration, unknown ignored rule id,
            duplicate rule id or invalid rule template. Raised before any
            unit is built.
    """
    settings = get_settings()
    cfg = _default_config() if config is None else load_config(config)
    extras = list(extra_rules)
    if cfg.custom_rule_templates_dir is not None:
        extras.extend(load_rule_templates(cfg.custom_rule_templates_dir))
    ruleset = build_ruleset(cfg, extras)
    sources = _normalize_units(units)

    parallel = settings.parallel if cfg.parallel is None else cfg.parallel
    workers = max_workers or cfg.max_workers or settings.max_workers
    run_id = uuid.uuid4().hex[:12]
    start = time.monotonic()
    logger.info(
        "Analyzing %d unit(s) with %d rule(s)", len(sources), len(ruleset), extra={"run_id": run_id},
    )

    collector = DiagnosticCollector()
    models, build_cancelled = build_models(
        sources, collector, parallel=parallel, max_workers=workers, cancel=cancel,
    )

    # Barrier: resolution needs every model.
    context = resolve_models(
        models,
        sources={u.path: u.source for u in sources if u.source},
        helper_depth=settings.helper_depth,
    )

    engine = RuleEngine(ruleset, parallel=parallel, max_workers=workers)
    evaluation = engine.evaluate(context, cancel)
    for diagnostic in evaluation.diagnostics:
        collector.add(diagnostic)

    partial = build_cancelled or evaluation.cancelled
    if partial:
        collector.add(Diagnostic(
            kind=DiagnosticKind.CANCELLED,
            subject="run",
            message="analysis cancelled before all units and rules were scheduled",
        ))

    report = aggregate(
        evaluation.findings,
        analyzed_files=[m.file_path for m in models],
        diagnostics=collector.items(),
        rules_run=evaluation.rules_run,
        partial=partial,
    )
    logger.info(
        "Analysis finished: %d finding(s), %d build failure(s), %d rule failure(s)",
        len(report.findings), report.build_failure_count, len(report.rule_failures),
        extra={"run_id": run_id, "duration_ms": round((time.monotonic() - start) * 1000, 2)},
    )
    return report


# ── Catalog introspection ────────────────────────────────────────────────────


class RuleSummary(BaseModel):
    """Read-only view of a rule for listings."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    severity: Severity
    categories: tuple[str, ...]
    description: str = ""
    recommendation: str = ""
    cwe: str = ""
    origin: str = "builtin"

    @classmethod
    def of(cls, rule: Rule, detailed: bool = True) -> "RuleSummary":
        return cls(
            id=rule.id,
            title=rule.title,
            severity=rule.severity,
            categories=tuple(rule.category_names),
            description=rule.description if detailed else "",
            recommendation=rule.recommendation if detailed else "",
            cwe=rule.cwe,
            origin=rule.origin,
        )


class RuleLookup(BaseModel):
    """Result of ``rule_info``: ``found`` is False for unknown ids."""

    model_config = ConfigDict(frozen=True)

    query: str
    found: bool
    rule: RuleSummary | None = None


def list_rules(
    severity_filter: Severity | str | None = None,
    detailed: bool = False,
    extra_rules: Iterable[Rule] = (),
) -> list[RuleSummary]:
    """Catalog rules, most severe first, then by id.

    Raises:
        ConfigurationError: unknown severity name.
    """
    severity = None
    if severity_filter is not None:
        try:
            severity = Severity.parse(severity_filter)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    rules = registry.get_all() + list(extra_rules)
    rules.sort(key=lambda r: (r.severity.rank, r.id))
    return [RuleSummary.of(r, detailed) for r in rules if severity is None or r.severity == severity]


def rule_info(rule_id: str, extra_rules: Iterable[Rule] = ()) -> RuleLookup:
    """Look a rule up by id, case-insensitively."""
    found = registry.get_by_id(rule_id)
    if found is None:
        key = rule_id.strip().lower()
        found = next((r for r in extra_rules if r.id.lower() == key), None)
    if found is None:
        return RuleLookup(query=rule_id, found=False)
    return RuleLookup(query=rule_id, found=True, rule=RuleSummary.of(found))
