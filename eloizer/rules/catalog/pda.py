"""Program-derived address rules: seed sharing, bump handling, static seeds."""

from __future__ import annotations

from typing import Iterator

from eloizer.core.types import RuleCategory, Severity
from eloizer.model.program import BumpSource, SiteKind
from eloizer.model.resolver import AnalysisContext, SeedEntry
from eloizer.model.seeds import literal_fingerprint
from eloizer.rules.base import Match, rule
from eloizer.rules.queries import account_uses


# ── Seed sharing ─────────────────────────────────────────────────────────────


def _distinguished(a: SeedEntry, b: SeedEntry) -> bool:
    """Two PDA declarations cannot be confused for one another."""
    x, y = a.account, b.account
    if literal_fingerprint(x.constraints.seeds) != literal_fingerprint(y.constraints.seeds):
        return True
    if x.kind.checks_discriminator and y.kind.checks_discriminator and x.inner_type != y.inner_type:
        return True
    x_owner = x.constraints.owner or x.constraints.seeds_program
    y_owner = y.constraints.owner or y.constraints.seeds_program
    if x_owner and y_owner and x_owner != y_owner:
        return True
    return False


def _components(entries: tuple[SeedEntry, ...]) -> list[list[SeedEntry]]:
    """Connected components of the "not distinguished" relation."""
    parent = list(range(len(entries)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(entries)):
        for j in range(i + 1, len(entries)):
            if not _distinguished(entries[i], entries[j]):
                parent[find(j)] = find(i)

    groups: dict[int, list[SeedEntry]] = {}
    for i, entry in enumerate(entries):
        groups.setdefault(find(i), []).append(entry)
    return [groups[k] for k in sorted(groups)]


@rule(
    id="pda-sharing-cwe-345",
    title="PDA seeds shared across instructions",
    severity=Severity.HIGH,
    categories=(RuleCategory.SOLANA, RuleCategory.ANCHOR),
    description=(
        "Several instructions derive PDAs from structurally identical seeds with no "
        "discriminator, owner or literal prefix separating them, so an account created "
        "for one purpose can be passed where another is expected."
    ),
    recommendation=(
        "Prefix every PDA's seeds with a distinct literal (e.g. b\"vault\", b\"pool\") "
        "and type each PDA with its own `Account<'info, T>`."
    ),
    cwe="CWE-345",
)
def pda_sharing(context: AnalysisContext) -> Iterator[Match]:
    for signature, entries in context.seed_index.items():
        if len(entries) < 2:
            continue
        for group in _components(entries):
            handler_ids = sorted({hid for e in group for hid in e.handler_ids})
            declarations = {e.account.key for e in group}
            if len(handler_ids) < 2 or len(declarations) < 2:
                continue
            handlers = [context.handler(hid) for hid in handler_ids]
            handlers = [h for h in handlers if h is not None]
            first = group[0].account
            seeds = ", ".join(s.text for s in first.constraints.seeds)
            yield Match(
                span=first.span,
                message=(
                    f"PDA seeds [{seeds}] (shape {'/'.join(signature)}) are shared by "
                    f"{len(handlers)} instructions ({', '.join(h.name for h in handlers)}) "
                    "with no discriminator or owner distinction"
                ),
                related=tuple(h.span for h in handlers),
                metadata={
                    "signature": list(signature),
                    "handlers": handler_ids,
                    "declarations": [f"{e.account.scope}.{e.account.name}" for e in group],
                },
            )


# ── Bumps ────────────────────────────────────────────────────────────────────


@rule(
    id="non-canonical-bump-cwe-330",
    title="Non-canonical PDA bump",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.SOLANA, RuleCategory.ANCHOR),
    description=(
        "A PDA is validated with a bump taken from instruction data, or derived with "
        "`create_program_address` without first finding the canonical bump. Several "
        "valid addresses then exist for the same seeds."
    ),
    recommendation=(
        "Use a bare `bump` constraint or `bump = account.bump` with the stored canonical "
        "bump; derive addresses with `find_program_address`."
    ),
    cwe="CWE-330",
)
def non_canonical_bump(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        cs = use.account.constraints
        if cs.is_pda and cs.bump == BumpSource.INSTRUCTION_ARG:
            yield Match(
                span=use.account.span,
                message=(
                    f"PDA `{use.account.name}` in `{use.where}` uses the caller-supplied bump "
                    f"`{cs.bump_expression}`"
                ),
            )
    for h in context.handlers:
        finds = h.sites_of(SiteKind.FIND_PROGRAM_ADDRESS)
        for site in h.sites_of(SiteKind.CREATE_PROGRAM_ADDRESS):
            if any(f.order < site.order for f in finds):
                continue
            yield Match(
                span=site.span,
                message=(
                    f"`{h.qualified_name}` derives a PDA with create_program_address without "
                    "finding the canonical bump"
                ),
                snippet=site.text,
            )


@rule(
    id="static-pda-seeds",
    title="PDA derived from constant seeds only",
    severity=Severity.INFORMATIONAL,
    categories=(RuleCategory.SOLANA,),
    description=(
        "A PDA's seeds are all literals, so exactly one such account exists per program. "
        "This is correct for global singletons and a bug for per-user state."
    ),
    recommendation="Include the owning user's or parent account's key in the seeds if the account is not a singleton.",
)
def static_pda_seeds(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        seeds = [s for s in use.account.constraints.seeds if s.shape != "bump"]
        if seeds and all(s.shape == "literal" for s in seeds):
            yield Match(
                span=use.account.span,
                message=(
                    f"PDA `{use.account.name}` in `{use.where}` is derived only from constant "
                    f"seeds [{', '.join(s.text for s in seeds)}]"
                ),
            )
