"""Rule engine — rule-set construction and isolated parallel evaluation.

Each active rule runs once against the read-only ``AnalysisContext`` and
returns its own finding list; the lists are merged in rule order after
every evaluation has finished. A rule that raises is recorded as a
``rule_failure`` diagnostic and the remaining rules still run.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from eloizer.core.config import AnalysisConfig
from eloizer.core.errors import ConfigurationError, RuleEvaluationError
from eloizer.core.types import Diagnostic, DiagnosticKind, Finding
from eloizer.model.resolver import AnalysisContext
from eloizer.rules.base import Rule
from eloizer.rules.registry import registry

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation shared by the build and evaluation stages.

    Cancelling stops new work from being scheduled; work already running
    is allowed to finish.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ── Rule set ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RuleSet:
    """The ordered active rules of one run."""

    rules: tuple[Rule, ...]

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(r.id for r in self.rules)

    def __len__(self) -> int:
        return len(self.rules)


def build_ruleset(
    config: AnalysisConfig,
    extra_rules: Iterable[Rule] = (),
    catalog: Sequence[Rule] | None = None,
) -> RuleSet:
    """Merge the built-in catalog with extra rules and apply the config filters.

    A rule is active only if it belongs to an included category, its id
    is not ignored and its severity is not ignored.

    Raises:
        ConfigurationError: an extra rule reuses an existing id, or an
            ignored rule id matches no known rule.
    """
    rules = list(catalog if catalog is not None else registry.get_all())
    known = {r.id.lower() for r in rules}
    for extra in extra_rules:
        if extra.id.lower() in known:
            raise ConfigurationError(f"Duplicate rule id {extra.id!r} (from {extra.origin})")
        known.add(extra.id.lower())
        rules.append(extra)

    ignored = {rid.lower() for rid in config.ignore_rule_ids}
    unknown = sorted(ignored - known)
    if unknown:
        raise ConfigurationError(f"Unknown rule id(s) in ignore list: {', '.join(unknown)}")

    active = tuple(
        r for r in rules
        if r.categories & config.include_categories
        and r.id.lower() not in ignored
        and r.severity not in config.ignore_severities
    )
    logger.debug("Active rules: %d of %d", len(active), len(rules))
    return RuleSet(active)


# ── Evaluation ───────────────────────────────────────────────────────────────


@dataclass
class EvaluationResult:
    """Merged output of one engine run."""

    findings: list[Finding] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    rules_run: list[str] = field(default_factory=list)
    cancelled: bool = False


def run_rule(rule: Rule, context: AnalysisContext) -> list[Finding]:
    """Evaluate one rule, wrapping any matcher failure in ``RuleEvaluationError``."""
    start = time.monotonic()
    try:
        findings = rule.evaluate(context)
    except Exception as exc:
        raise RuleEvaluationError(rule.id, exc) from exc
    logger.debug(
        "%d finding(s)", len(findings),
        extra={"rule_id": rule.id, "duration_ms": round((time.monotonic() - start) * 1000, 2)},
    )
    return findings


class RuleEngine:
    """Evaluate a ``RuleSet`` against one ``AnalysisContext``."""

    def __init__(self, ruleset: RuleSet, parallel: bool = True, max_workers: int = 4) -> None:
        self.ruleset = ruleset
        self.parallel = parallel
        self.max_workers = max_workers

    def evaluate(self, context: AnalysisContext, cancel: CancellationToken | None = None) -> EvaluationResult:
        result = EvaluationResult()
        scheduled: list[tuple[Rule, Future[list[Finding]] | None]] = []

        if self.parallel and len(self.ruleset) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="eloizer-rule") as pool:
                for r in self.ruleset.rules:
                    if cancel is not None and cancel.cancelled:
                        result.cancelled = True
                        break
                    scheduled.append((r, pool.submit(run_rule, r, context)))
                outcomes = [(r, _outcome(fut)) for r, fut in scheduled]
        else:
            outcomes = []
            for r in self.ruleset.rules:
                if cancel is not None and cancel.cancelled:
                    result.cancelled = True
                    break
                outcomes.append((r, _outcome_of(r, context)))

        # Fan-in in rule order, independent of completion order.
        for r, outcome in outcomes:
            result.rules_run.append(r.id)
            if isinstance(outcome, RuleEvaluationError):
                logger.warning("%s", outcome, extra={"rule_id": r.id})
                result.diagnostics.append(Diagnostic(
                    kind=DiagnosticKind.RULE_FAILURE,
                    subject=r.id,
                    message=f"{type(outcome.cause).__name__}: {outcome.cause}",
                ))
            else:
                result.findings.extend(outcome)

        if result.cancelled:
            skipped = len(self.ruleset) - len(outcomes)
            logger.warning("Rule evaluation cancelled; %d rule(s) not scheduled", skipped)
        return result


def _outcome(future: Future[list[Finding]]) -> list[Finding] | RuleEvaluationError:
    try:
        return future.result()
    except RuleEvaluationError as exc:
        return exc


def _outcome_of(rule: Rule, context: AnalysisContext) -> list[Finding] | RuleEvaluationError:
    try:
        return run_rule(rule, context)
    except RuleEvaluationError as exc:
        return exc
