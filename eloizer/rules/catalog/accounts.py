"""Account lifecycle and layout rules."""

from __future__ import annotations

from typing import Iterator

from eloizer.core.types import RuleCategory, Severity
from eloizer.model.program import AccessKind, AccountKind, AccountOrigin, CheckKind, SiteKind
from eloizer.model.resolver import AnalysisContext, declarative_checks
from eloizer.rules.base import Match, rule
from eloizer.rules.queries import account_uses, accessed, type_identity

_WRITES = (AccessKind.WRITE, AccessKind.LAMPORTS_WRITE, AccessKind.DATA_BORROW_MUT)

_DISCRIMINATOR_FIELDS = {"discriminator", "account_type", "account_key", "key", "kind", "tag", "version"}

# Deserializers that never look at a type discriminator.
_UNCHECKED_DESERIALIZERS = {
    "try_from_slice", "deserialize", "try_from_slice_unchecked", "try_deserialize_unchecked",
    "unpack_unchecked", "unpack_from_slice",
}


@rule(
    id="init-if-needed-reinit-cwe-665",
    title="init_if_needed without re-initialization guard",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.ANCHOR,),
    description=(
        "`init_if_needed` accepts an account that already exists; without an explicit "
        "initialized check, its state can be reset by calling the instruction again."
    ),
    recommendation="Check an `is_initialized` flag (or equivalent) before writing initial state.",
    cwe="CWE-665",
)
def init_if_needed_reinit(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        if not use.account.constraints.init_if_needed:
            continue
        name = use.account.name
        guarded = bool(use.handlers) and all(
            context.has_check(h, CheckKind.INITIALIZED, name)
            or any("init" in a.member.lower() for a in h.accesses_of(name, AccessKind.READ))
            for h in use.handlers
        )
        if guarded:
            continue
        yield Match(
            span=use.account.span,
            message=f"`{use.account.name}` in `{use.where}` uses init_if_needed with no initialized check",
        )


@rule(
    id="insecure-account-close-cwe-459",
    title="Insecure manual account close",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.SOLANA,),
    description=(
        "An account is closed by draining its lamports without clearing its data or "
        "marking it closed; it can be revived within the same transaction."
    ),
    recommendation="Use Anchor's `close = <destination>` constraint, or zero the data and assign it to the system program.",
    cwe="CWE-459",
)
def insecure_account_close(context: AnalysisContext) -> Iterator[Match]:
    for h in context.handlers:
        for drain in h.accesses:
            if drain.kind != AccessKind.LAMPORTS_WRITE or not drain.text.replace(" ", "").endswith("=0"):
                continue
            acct = h.account(drain.account)
            if acct is not None and acct.constraints.close:
                continue
            cleared = any(
                a.kind in (AccessKind.DATA_BORROW_MUT, AccessKind.WRITE)
                for a in h.accesses_of(drain.account)
                if a is not drain and a.kind != AccessKind.LAMPORTS_WRITE
            ) or any(
                s.name in ("assign", "realloc", "fill") and drain.account in s.accounts
                for s in h.sites_of(SiteKind.METHOD_CALL)
            )
            if cleared:
                continue
            yield Match(
                span=drain.span,
                message=(
                    f"`{h.qualified_name}` drains `{drain.account}` lamports without clearing its data"
                ),
                snippet=drain.text,
            )


@rule(
    id="duplicate-mutable-accounts-cwe-694",
    title="Duplicate mutable accounts",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.SOLANA, RuleCategory.ANCHOR),
    description=(
        "Two mutable accounts of the same type can be the same account; writes to one "
        "are overwritten by the other when Anchor serializes them back."
    ),
    recommendation="Add `constraint = a.key() != b.key()` to one of the accounts.",
    cwe="CWE-694",
)
def duplicate_mutable_accounts(context: AnalysisContext) -> Iterator[Match]:
    for model in context.models:
        for struct in model.account_structs:
            users = context.handlers_using_struct(struct)
            candidates = [
                a for a in struct.fields
                if a.is_mut and a.kind.checks_discriminator
                and not (a.constraints.is_init or a.constraints.init_if_needed or a.constraints.is_pda)
            ]
            for i, first in enumerate(candidates):
                for second in candidates[i + 1:]:
                    if type_identity(first) != type_identity(second):
                        continue
                    distinct = any(
                        c.covers(first.name) and c.covers(second.name)
                        for h in users
                        for c in context.checks_for(h, CheckKind.KEY_EQUALITY)
                    ) or any(
                        c.covers(first.name) and c.covers(second.name)
                        and c.kind == CheckKind.KEY_EQUALITY
                        for acct in (first, second)
                        for c in _declared_checks(context, struct.name, acct.name)
                    )
                    if distinct:
                        continue
                    yield Match(
                        span=second.span,
                        message=(
                            f"`{first.name}` and `{second.name}` in `{struct.name}` are both mutable "
                            f"{type_identity(first)} and may alias"
                        ),
                        related=(first.span,),
                    )


def _declared_checks(context: AnalysisContext, struct_name: str, account: str):
    struct = context.account_structs.get(struct_name)
    if struct is None:
        return []
    acct = struct.field(account)
    if acct is None:
        return []
    return declarative_checks(acct, [f.name for f in struct.fields])


@rule(
    id="type-cosplay-cwe-843",
    title="Type cosplay",
    severity=Severity.HIGH,
    categories=(RuleCategory.SOLANA, RuleCategory.ANCHOR),
    description=(
        "Account data is deserialized without checking a type discriminator, so an "
        "account of another type with a compatible layout is accepted."
    ),
    recommendation=(
        "Use `Account<'info, T>` (8-byte discriminator) or add an explicit account-type "
        "field to every Borsh state struct and check it after deserializing."
    ),
    cwe="CWE-843",
)
def type_cosplay(context: AnalysisContext) -> Iterator[Match]:
    borsh_states = [s for s in context.state_structs.values() if not s.anchor]
    for h in context.handlers:
        for access in h.accesses:
            if access.kind != AccessKind.DESERIALIZE or access.member not in _UNCHECKED_DESERIALIZERS:
                continue
            head = access.text.split("(", 1)[0]
            type_name = head.rsplit("::", 1)[0].rsplit("::", 1)[-1] if "::" in head else ""
            state = context.state_struct(type_name)
            if state is None:
                continue
            if any(f.name.lower() in _DISCRIMINATOR_FIELDS for f in state.fields):
                continue
            if access.member != "try_deserialize_unchecked" and (state.anchor or len(borsh_states) < 2):
                continue
            if context.has_check(h, CheckKind.DISCRIMINATOR, access.account, before=access.order):
                continue
            yield Match(
                span=access.span,
                message=(
                    f"`{h.qualified_name}` deserializes `{access.account}` as `{state.name}` with "
                    f"`{access.member}` and no discriminator check"
                ),
                related=(state.span,),
                snippet=access.text,
            )


@rule(
    id="missing-mut-constraint",
    title="Written account not marked mutable",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.ANCHOR,),
    description=(
        "An accounts-struct field is written, closed into or has lamports moved, but "
        "lacks the `mut` constraint; the write is not persisted or the transaction fails."
    ),
    recommendation="Add `#[account(mut)]` to the account.",
)
def missing_mut_constraint(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        acct = use.account
        cs = acct.constraints
        if acct.origin != AccountOrigin.ACCOUNTS_STRUCT or cs.is_mut:
            continue
        if cs.is_init or cs.init_if_needed or acct.kind.is_program or acct.kind == AccountKind.SYSVAR:
            continue
        reason = None
        if cs.close:
            reason = f"is closed into `{cs.close}`"
        elif any(s.constraints.close == acct.name for s in use.siblings):
            reason = "receives lamports from a closed account"
        elif accessed(use, *_WRITES):
            reason = "is written"
        if reason is None:
            continue
        yield Match(
            span=acct.span,
            message=f"`{acct.name}` in `{use.where}` {reason} but is not `mut`",
        )


@rule(
    id="realloc-without-zero",
    title="Realloc without zero-initialization",
    severity=Severity.LOW,
    categories=(RuleCategory.ANCHOR, RuleCategory.SOLANA),
    description=(
        "Reallocating without zeroing can expose stale bytes when an account shrinks "
        "and grows again within one transaction."
    ),
    recommendation="Use `realloc::zero = true` (or `realloc(new_len, true)`) unless the account only grows.",
)
def realloc_without_zero(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        cs = use.account.constraints
        if cs.realloc is not None and cs.realloc_zero is not True:
            yield Match(
                span=use.account.span,
                message=f"`{use.account.name}` in `{use.where}` reallocs to `{cs.realloc}` without zeroing",
            )
    for h in context.handlers:
        for site in h.sites_of(SiteKind.METHOD_CALL, "realloc"):
            if site.text.replace(" ", "").endswith(",false)"):
                yield Match(
                    span=site.span,
                    message=f"`{h.qualified_name}` calls `{site.text}` without zeroing",
                    snippet=site.text,
                )
