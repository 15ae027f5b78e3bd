"""Access-control rules: signer, owner and has_one validation."""

from __future__ import annotations

from typing import Iterator

from eloizer.core.types import RuleCategory, Severity
from eloizer.model.program import AccessKind, AccountKind, AccountOrigin, CheckKind
from eloizer.model.resolver import AnalysisContext
from eloizer.rules.base import Match, rule
from eloizer.rules.queries import (
    DATA_BEARING,
    AccountUse,
    account_uses,
    accessed,
    covered,
    is_authority_name,
    is_system_field,
    is_sysvar_name,
)


# ── Signer ───────────────────────────────────────────────────────────────────


def _authority_reason(use: AccountUse) -> str | None:
    """Why an account acts as an authority, or None if it does not."""
    acct = use.account
    cs = acct.constraints
    if acct.is_signer or acct.kind in DATA_BEARING:
        return None
    if cs.is_pda or cs.address or cs.is_init or cs.init_if_needed:
        return None
    if is_authority_name(acct.name):
        return "is named as an authority"
    for sibling in use.siblings:
        if acct.name in sibling.constraints.has_one:
            return f"is the has_one target of `{sibling.name}`"
        if sibling.constraints.payer == acct.name:
            return f"pays for the creation of `{sibling.name}`"
    if acct.is_mut and (acct.kind.is_raw or acct.kind == AccountKind.SYSTEM_ACCOUNT):
        for h in use.handlers:
            for access in h.accesses_of(acct.name, AccessKind.LAMPORTS_WRITE):
                if "-=" in access.text:
                    return "has lamports debited"
    return None


@rule(
    id="missing-signer-check-cwe-862",
    title="Missing signer check",
    severity=Severity.HIGH,
    categories=(RuleCategory.SOLANA, RuleCategory.ANCHOR),
    description=(
        "An account that authorizes the instruction (an authority, has_one target, "
        "payer or lamports source) is never required to sign the transaction."
    ),
    recommendation=(
        "Declare the account as `Signer<'info>`, add a `signer` constraint, or check "
        "`account.is_signer` before using it."
    ),
    cwe="CWE-862",
)
def missing_signer_check(context: AnalysisContext) -> Iterator[Match]:
    """Candidates are accounts acting as authorities, a narrower set than every
    mutable account: accounts named as an authority, has_one targets, payers and
    raw accounts whose lamports are debited.
    """
    for use in account_uses(context):
        reason = _authority_reason(use)
        if reason is None or covered(context, use, CheckKind.SIGNER):
            continue
        yield Match(
            span=use.account.span,
            message=(
                f"Account `{use.account.name}` in `{use.where}` {reason} but no signer "
                "check covers it"
            ),
            metadata={"account": use.account.name, "scope": use.where},
        )


# ── Owner ────────────────────────────────────────────────────────────────────


_DATA_ACCESS = (AccessKind.DATA_BORROW, AccessKind.DATA_BORROW_MUT, AccessKind.DESERIALIZE)


@rule(
    id="missing-owner-check-cwe-284",
    title="Missing account owner check",
    severity=Severity.HIGH,
    categories=(RuleCategory.SOLANA, RuleCategory.ANCHOR),
    description=(
        "Data of a raw AccountInfo / UncheckedAccount is read without verifying which "
        "program owns the account; an attacker can substitute an account with forged data."
    ),
    recommendation=(
        "Use `Account<'info, T>` (owner + discriminator checks), add an `owner = ...` "
        "constraint, or compare `account.owner` with the expected program id before reading."
    ),
    cwe="CWE-284",
)
def missing_owner_check(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        acct = use.account
        if not acct.kind.is_raw or acct.is_signer:
            continue
        if is_system_field(acct.name) or is_sysvar_name(acct.name):
            continue
        uses_data = accessed(use, *_DATA_ACCESS) or any(
            a.member == "data" for h in use.handlers for a in h.accesses_of(acct.name, AccessKind.READ)
        )
        if not uses_data:
            continue
        if covered(context, use, CheckKind.OWNER, CheckKind.KEY_EQUALITY, CheckKind.PROGRAM_ID):
            continue
        yield Match(
            span=acct.span,
            message=(
                f"Data of raw account `{acct.name}` ({acct.kind.value}) in `{use.where}` is used "
                "without an owner check"
            ),
            metadata={"account": acct.name, "documented": acct.has_check_doc},
        )


@rule(
    id="unchecked-account-doc",
    title="Unchecked account without safety documentation",
    severity=Severity.LOW,
    categories=(RuleCategory.ANCHOR,),
    description=(
        "An `UncheckedAccount` / `AccountInfo` field has no `/// CHECK:` comment "
        "explaining why no validation is needed."
    ),
    recommendation="Document the validation with `/// CHECK: <reason>` or use a typed account wrapper.",
)
def unchecked_account_doc(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        acct = use.account
        if acct.origin != AccountOrigin.ACCOUNTS_STRUCT or not acct.kind.is_raw:
            continue
        if acct.has_check_doc or is_system_field(acct.name):
            continue
        yield Match(
            span=acct.span,
            message=f"`{acct.name}` in `{use.where}` is a {acct.kind.value} without a `/// CHECK:` comment",
        )


# ── has_one ──────────────────────────────────────────────────────────────────


@rule(
    id="missing-has-one-cwe-639",
    title="Stored authority not bound to the passed account",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.ANCHOR,),
    description=(
        "An account's data stores the key of another account of the same instruction "
        "(e.g. `vault.authority`), but nothing checks that the passed account matches it."
    ),
    recommendation="Add `has_one = <field>` to the account constraint or compare the keys with `require_keys_eq!`.",
    cwe="CWE-639",
)
def missing_has_one(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        acct = use.account
        cs = acct.constraints
        if acct.origin != AccountOrigin.ACCOUNTS_STRUCT or not acct.kind.checks_discriminator:
            continue
        if cs.is_init or cs.init_if_needed:
            continue
        state = context.state_struct(acct.inner_type)
        if state is None:
            continue
        siblings = {s.name: s for s in use.siblings}
        for field_name in state.pubkey_fields():
            sibling = siblings.get(field_name)
            if sibling is None or sibling.name == acct.name or field_name in cs.has_one:
                continue
            if not (acct.is_mut or sibling.is_signer):
                continue
            bound = any(
                c.covers(acct.name) and c.covers(field_name)
                for h in use.handlers
                for c in context.checks_for(h, CheckKind.KEY_EQUALITY)
            )
            if bound:
                continue
            yield Match(
                span=acct.span,
                message=(
                    f"`{acct.name}` ({state.name}) stores `{field_name}` but `{use.where}` never "
                    f"checks it against the passed `{field_name}` account"
                ),
                related=(state.span, sibling.span),
                metadata={"account": acct.name, "field": field_name, "state": state.name},
            )
