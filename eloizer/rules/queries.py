"""Shared read-only queries over an ``AnalysisContext`` used by rule matchers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator

from eloizer.model.program import (
    AccessKind,
    AccountDefinition,
    AccountKind,
    AccountOrigin,
    AccountStruct,
    CheckKind,
    InstructionHandler,
)
from eloizer.model.resolver import AnalysisContext

AUTHORITY_RE = re.compile(
    r"(^|_)(authority|admin|owner|signer|payer|manager|operator|governor|creator|initializer)(_|$)"
)

# Names that mark a data account rather than the authority itself.
_NON_AUTHORITY_SUFFIXES = ("_account", "_ata", "_mint", "_vault", "_pda", "_config", "_state", "_program")

SYSTEM_FIELD_NAMES = {
    "system_program", "token_program", "rent", "clock", "associated_token_program",
    "sysvar_rent", "sysvar_clock", "program", "token_2022_program",
}

SYSVAR_NAMES = {
    "rent", "clock", "instructions", "instruction_sysvar", "instructions_sysvar",
    "sysvar_instructions", "recent_blockhashes", "slot_hashes", "stake_history",
    "epoch_schedule", "sysvar_rent", "sysvar_clock", "fees",
}

# Wrapper types whose data layout Anchor validates; never authorities by themselves.
DATA_BEARING = (
    AccountKind.ACCOUNT,
    AccountKind.ACCOUNT_LOADER,
    AccountKind.INTERFACE_ACCOUNT,
    AccountKind.PROGRAM,
    AccountKind.INTERFACE,
    AccountKind.SYSVAR,
)


@dataclass(frozen=True)
class AccountUse:
    """An account declaration together with the functions that see it."""

    account: AccountDefinition
    struct: AccountStruct | None
    handlers: tuple[InstructionHandler, ...]
    siblings: tuple[AccountDefinition, ...]

    @property
    def where(self) -> str:
        if self.struct is not None:
            return self.struct.name
        return self.handlers[0].qualified_name if self.handlers else self.account.scope


def account_uses(context: AnalysisContext) -> Iterator[AccountUse]:
    """Every account declaration in the project, in file and declaration order."""
    for model in context.models:
        for struct in model.account_structs:
            users = tuple(context.handlers_using_struct(struct))
            for acct in struct.fields:
                yield AccountUse(acct, struct, users, struct.fields)
        for h in model.handlers:
            own = tuple(a for a in h.accounts if a.origin != AccountOrigin.ACCOUNTS_STRUCT)
            handler = context.handler(h.id) or h
            for acct in own:
                yield AccountUse(acct, None, (handler,), own)


def covered(context: AnalysisContext, use: AccountUse, *kinds: CheckKind, name: str | None = None) -> bool:
    """Every function seeing the account has an effective check of one of ``kinds`` on it.

    Each handler is judged on its own checks; a struct no function uses is
    never covered.
    """
    target = name or use.account.name
    if not use.handlers:
        return False
    return all(any(context.has_check(h, kind, target) for kind in kinds) for h in use.handlers)


def accessed(use: AccountUse, *kinds: AccessKind, name: str | None = None) -> bool:
    target = name or use.account.name
    return any(h.accesses_of(target, *kinds) for h in use.handlers)


def is_authority_name(name: str) -> bool:
    lowered = name.lower()
    if lowered.endswith(_NON_AUTHORITY_SUFFIXES):
        return False
    return AUTHORITY_RE.search(lowered) is not None


def is_system_field(name: str) -> bool:
    lowered = name.lower().rstrip("_")
    return lowered in SYSTEM_FIELD_NAMES or lowered.endswith("_program")


def is_sysvar_name(name: str) -> bool:
    lowered = name.lower().rstrip("_")
    return lowered in SYSVAR_NAMES or lowered.startswith("sysvar_") or lowered.endswith("_sysvar")


def type_identity(account: AccountDefinition) -> str:
    """``Account<'info, TokenAccount>`` -> ``Account<TokenAccount>``."""
    if account.inner_type:
        return f"{account.kind.value}<{account.inner_type}>"
    return account.kind.value
