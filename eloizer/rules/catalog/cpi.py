"""Cross-program invocation and external call rules."""

from __future__ import annotations

from typing import Iterator

from eloizer.core.types import RuleCategory, Severity
from eloizer.model.program import AccessKind, CallKind, CheckKind
from eloizer.model.resolver import AnalysisContext
from eloizer.rules.base import Match, rule
from eloizer.rules.queries import account_uses, is_sysvar_name

_RELOADABLE = ("Account", "AccountLoader", "InterfaceAccount")


@rule(
    id="unchecked-external-call-cwe-20",
    title="Unresolved external call with unvalidated mutable account",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.GENERAL, RuleCategory.SOLANA),
    description=(
        "A call to a function or program the analyzer cannot resolve receives a mutable "
        "account whose owner was not verified before the call."
    ),
    recommendation=(
        "Verify the owner of every mutable account (typed `Account<'info, T>`, `owner =` "
        "constraint or explicit `owner` comparison) before handing it to external code."
    ),
    cwe="CWE-20",
)
def unchecked_external_call(context: AnalysisContext) -> Iterator[Match]:
    for h in context.handlers:
        for edge in h.calls:
            if not edge.is_unknown:
                continue
            unchecked: list[str] = []
            for binding in edge.arguments:
                if binding.account in unchecked:
                    continue
                acct = h.account(binding.account)
                mutable = binding.mutable_ref or (acct is not None and acct.is_mut)
                if not mutable:
                    continue
                if context.has_check(h, CheckKind.OWNER, binding.account, before=edge.order):
                    continue
                unchecked.append(binding.account)
            if not unchecked:
                continue
            names = ", ".join(f"`{a}`" for a in unchecked)
            yield Match(
                span=edge.span,
                message=(
                    f"`{h.qualified_name}` calls unresolved `{edge.callee_name}` with mutable "
                    f"account(s) {names} and no preceding owner check"
                ),
                metadata={"callee": edge.callee_name, "accounts": unchecked, "kind": edge.kind.value},
            )


@rule(
    id="arbitrary-cpi-cwe-829",
    title="Arbitrary cross-program invocation",
    severity=Severity.HIGH,
    categories=(RuleCategory.SOLANA, RuleCategory.ANCHOR),
    description=(
        "A CPI targets a program account passed by the caller without verifying its "
        "program id, so an attacker can substitute a malicious program."
    ),
    recommendation=(
        "Type the program as `Program<'info, T>`, add an `address = <program>::ID` "
        "constraint, or compare its key with the expected id before invoking."
    ),
    cwe="CWE-829",
)
def arbitrary_cpi(context: AnalysisContext) -> Iterator[Match]:
    for h in context.handlers:
        for edge in h.calls:
            if edge.kind != CallKind.CPI or not edge.program_account:
                continue
            program = edge.program_account
            acct = h.account(program)
            if acct is not None and acct.kind.is_program:
                continue
            if any(
                context.has_check(h, kind, program, before=edge.order)
                for kind in (CheckKind.PROGRAM_ID, CheckKind.KEY_EQUALITY)
            ):
                continue
            yield Match(
                span=edge.span,
                message=(
                    f"`{h.qualified_name}` invokes `{edge.callee_name}` on program account "
                    f"`{program}` whose id is never verified"
                ),
                metadata={"program_account": program, "callee": edge.callee_name},
            )


@rule(
    id="stale-account-after-cpi",
    title="Account data read after CPI without reload",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.SOLANA, RuleCategory.ANCHOR),
    description=(
        "A deserialized account is passed to a CPI and its fields are read afterwards. "
        "Anchor does not refresh deserialized data after a CPI, so the values are stale."
    ),
    recommendation="Call `account.reload()?` after the CPI before reading the account again.",
)
def stale_account_after_cpi(context: AnalysisContext) -> Iterator[Match]:
    for h in context.handlers:
        cpis = [e for e in h.calls if e.kind == CallKind.CPI]
        if not cpis:
            continue
        reported: set[str] = set()
        for edge in cpis:
            for binding in edge.arguments:
                name = binding.account
                acct = h.account(name)
                if name in reported or acct is None or acct.kind.value not in _RELOADABLE:
                    continue
                reloads = [a.order for a in h.accesses_of(name, AccessKind.RELOAD) if a.order > edge.order]
                for read in h.accesses_of(name, AccessKind.READ):
                    if read.order <= edge.order or not read.member:
                        continue
                    if any(r < read.order for r in reloads):
                        continue
                    reported.add(name)
                    yield Match(
                        span=read.span,
                        message=(
                            f"`{name}.{read.member}` is read in `{h.qualified_name}` after CPI "
                            f"`{edge.callee_name}` without `{name}.reload()`"
                        ),
                        related=(edge.span,),
                    )
                    break


@rule(
    id="deprecated-load-instruction-at",
    title="Deprecated load_instruction_at",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.SOLANA,),
    description=(
        "`load_instruction_at` does not verify that the account passed is the "
        "instructions sysvar, allowing a forged instruction list."
    ),
    recommendation="Use `load_instruction_at_checked` (or `get_instruction_relative`).",
)
def deprecated_load_instruction_at(context: AnalysisContext) -> Iterator[Match]:
    for h in context.handlers:
        for edge in h.calls:
            if edge.last_segment == "load_instruction_at":
                yield Match(
                    span=edge.span,
                    message=f"`{h.qualified_name}` calls deprecated `{edge.callee_name}`",
                )


_SYSVAR_VALIDATING_CALLS = {
    "from_account_info", "load_instruction_at_checked", "load_current_index_checked",
    "get_instruction_relative",
}


@rule(
    id="unchecked-sysvar-account",
    title="Sysvar account without address check",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.SOLANA,),
    description=(
        "A raw account used as a sysvar (rent, clock, instructions, ...) is never "
        "verified to be the real sysvar."
    ),
    recommendation="Use `Sysvar<'info, T>`, an `address = sysvar::<name>::ID` constraint, or a checked loader.",
)
def unchecked_sysvar_account(context: AnalysisContext) -> Iterator[Match]:
    for use in account_uses(context):
        acct = use.account
        if not acct.kind.is_raw or not is_sysvar_name(acct.name):
            continue
        validated = bool(use.handlers) and all(
            context.has_check(h, CheckKind.PROGRAM_ID, acct.name)
            or context.has_check(h, CheckKind.KEY_EQUALITY, acct.name)
            or any(
                edge.last_segment in _SYSVAR_VALIDATING_CALLS and any(b.account == acct.name for b in edge.arguments)
                for edge in h.calls
            )
            for h in use.handlers
        )
        if validated:
            continue
        yield Match(
            span=acct.span,
            message=f"Sysvar account `{acct.name}` in `{use.where}` is a {acct.kind.value} with no address check",
        )
