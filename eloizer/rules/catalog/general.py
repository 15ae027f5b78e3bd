"""General code-quality rules."""

from __future__ import annotations

from typing import Iterator

from eloizer.core.types import RuleCategory, Severity
from eloizer.model.program import SiteKind
from eloizer.model.resolver import AnalysisContext
from eloizer.rules.base import Match, rule
from eloizer.rules.queries import account_uses


@rule(
    id="unsafe-unwrap",
    title="unwrap / expect in program code",
    severity=Severity.LOW,
    categories=(RuleCategory.GENERAL,),
    description="A panic aborts the transaction with an opaque error instead of a program error code.",
    recommendation="Propagate errors with `?` and `ok_or(ErrorCode::...)`.",
)
def unsafe_unwrap(context: AnalysisContext) -> Iterator[Match]:
    for h in context.handlers:
        for site in h.sites_of(SiteKind.METHOD_CALL, "unwrap", "expect"):
            yield Match(
                span=site.span,
                message=f"`{h.qualified_name}` calls `.{site.name}()`: `{site.text}`",
                snippet=site.text,
            )


@rule(
    id="unknown-constraint-syntax",
    title="Unrecognized account constraint",
    severity=Severity.INFORMATIONAL,
    categories=(RuleCategory.ANCHOR,),
    description=(
        "A constraint could not be interpreted; checks that depend on it were not "
        "credited, which can cause false positives elsewhere."
    ),
    recommendation="Review the constraint manually.",
)
def unknown_constraint_syntax(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        unknown = use.account.constraints.unknown
        if not unknown:
            continue
        yield Match(
            span=use.account.span,
            message=(
                f"`{use.account.name}` in `{use.where}` has unrecognized constraint(s): "
                + ", ".join(f"`{u}`" for u in unknown)
            ),
            metadata={"unknown": list(unknown)},
        )
