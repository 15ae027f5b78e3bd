"""Rule record — all built-in and template rules are instances of ``Rule``.

A rule is a closed data record (id, title, severity, categories, texts)
plus a pure matcher ``AnalysisContext -> Iterable[Match]``. The matcher
only reports evidence; ``Rule.evaluate`` turns it into ``Finding``
objects and stamps the rule's id and severity on every one of them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from eloizer.core.errors import ConfigurationError
from eloizer.core.raw import Span
from eloizer.core.types import Finding, RuleCategory, Severity
from eloizer.model.resolver import AnalysisContext

_RULE_ID_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


@dataclass(frozen=True)
class Match:
    """Evidence for one finding, produced by a matcher."""

    span: Span
    message: str
    related: tuple[Span, ...] = ()
    snippet: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)


Matcher = Callable[[AnalysisContext], Iterable[Match]]


@dataclass(frozen=True)
class Rule:
    """One detection routine.

    Attributes:
        id: Globally unique kebab-case id (e.g. ``pda-sharing-cwe-345``).
        severity: Copied onto every finding the rule produces.
        categories: Non-empty subset of solana / anchor / general.
        matcher: Pure function over the read-only ``AnalysisContext``.
        origin: ``builtin`` or the template file the rule came from.
    """

    id: str
    title: str
    severity: Severity
    categories: frozenset[RuleCategory]
    matcher: Matcher
    description: str = ""
    recommendation: str = ""
    cwe: str = ""
    origin: str = "builtin"

    def __post_init__(self) -> None:
        if not _RULE_ID_RE.match(self.id or ""):
            raise ConfigurationError(f"Invalid rule id {self.id!r}: expected kebab-case")
        if not isinstance(self.severity, Severity):
            try:
                object.__setattr__(self, "severity", Severity.parse(self.severity))
            except ValueError as exc:
                raise ConfigurationError(f"Rule {self.id}: {exc}") from exc
        try:
            categories = frozenset(RuleCategory.parse(c) for c in self.categories)
        except ValueError as exc:
            raise ConfigurationError(f"Rule {self.id}: {exc}") from exc
        if not categories:
            raise ConfigurationError(f"Rule {self.id} has no category")
        object.__setattr__(self, "categories", categories)

    def evaluate(self, context: AnalysisContext) -> list[Finding]:
        """Run the matcher and build findings. Exceptions propagate to the engine."""
        findings = []
        for match in self.matcher(context):
            findings.append(Finding(
                rule_id=self.id,
                title=self.title,
                severity=self.severity,
                location=context.location(match.span, match.snippet),
                message=match.message,
                recommendation=self.recommendation,
                related_locations=tuple(context.location(s) for s in match.related),
                metadata=dict(match.metadata),
            ))
        return findings

    @property
    def category_names(self) -> list[str]:
        return sorted(c.value for c in self.categories)


def rule(
    id: str,
    title: str,
    severity: Severity,
    categories: Iterable[RuleCategory | str],
    description: str = "",
    recommendation: str = "",
    cwe: str = "",
) -> Callable[[Matcher], Rule]:
    """Decorator turning a matcher function into a ``Rule`` record."""

    def wrap(matcher: Matcher) -> Rule:
        return Rule(
            id=id,
            title=title,
            severity=severity,
            categories=frozenset(categories),
            matcher=matcher,
            description=description or (matcher.__doc__ or "").strip(),
            recommendation=recommendation,
            cwe=cwe,
        )

    return wrap
