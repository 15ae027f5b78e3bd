"""Semantic model of a Solana / Anchor program.

Produced by ``SemanticModelBuilder`` from one raw syntax tree:
  - Account definitions (``#[derive(Accounts)]`` fields, native
    ``next_account_info`` bindings, account-typed helper parameters)
  - Normalized constraint sets, with unrecognized syntax kept as
    ``unknown`` tags
  - State structs (``#[account]`` data layouts)
  - Instruction handlers and helper functions with their body facts:
    runtime checks, call edges, arithmetic, account accesses, code sites

Every model is a frozen pydantic model so a ``ProgramModel`` can be
exported as JSON and shared read-only across rule evaluations.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field

from eloizer.core.raw import Span
from eloizer.core.types import FrozenMap, empty_map


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ── Enums ────────────────────────────────────────────────────────────────────


class AccountKind(str, Enum):
    """Wrapper type an account is declared with."""

    SIGNER = "Signer"
    ACCOUNT = "Account"
    ACCOUNT_LOADER = "AccountLoader"
    PROGRAM = "Program"
    INTERFACE = "Interface"
    INTERFACE_ACCOUNT = "InterfaceAccount"
    SYSTEM_ACCOUNT = "SystemAccount"
    SYSVAR = "Sysvar"
    UNCHECKED_ACCOUNT = "UncheckedAccount"
    ACCOUNT_INFO = "AccountInfo"
    UNKNOWN = "unknown"

    @property
    def is_raw(self) -> bool:
        """No owner, discriminator or signer guarantee from the type."""
        return self in (AccountKind.UNCHECKED_ACCOUNT, AccountKind.ACCOUNT_INFO)

    @property
    def checks_discriminator(self) -> bool:
        return self in (
            AccountKind.ACCOUNT,
            AccountKind.ACCOUNT_LOADER,
            AccountKind.INTERFACE_ACCOUNT,
        )

    @property
    def checks_owner(self) -> bool:
        return self in (
            AccountKind.ACCOUNT,
            AccountKind.ACCOUNT_LOADER,
            AccountKind.INTERFACE_ACCOUNT,
            AccountKind.SYSTEM_ACCOUNT,
            AccountKind.SYSVAR,
        )

    @property
    def is_program(self) -> bool:
        return self in (AccountKind.PROGRAM, AccountKind.INTERFACE)


class AccountOrigin(str, Enum):
    ACCOUNTS_STRUCT = "accounts_struct"
    NATIVE_BINDING = "native_binding"
    PARAMETER = "parameter"


class BumpSource(str, Enum):
    NONE = "none"
    CANONICAL = "canonical"      # bare `bump`, Anchor finds the canonical bump
    STORED = "stored"            # `bump = account.bump`
    INSTRUCTION_ARG = "instruction_arg"
    EXPRESSION = "expression"


class HandlerKind(str, Enum):
    ANCHOR = "anchor"            # Context<T> signature or #[program] module
    NATIVE = "native"            # (program_id, accounts: &[AccountInfo], data)
    HELPER = "helper"


class CheckKind(str, Enum):
    SIGNER = "signer"
    OWNER = "owner"
    ARITHMETIC_GUARD = "arithmetic_guard"
    KEY_EQUALITY = "key_equality"
    PROGRAM_ID = "program_id"
    DISCRIMINATOR = "discriminator"
    INITIALIZED = "initialized"
    RENT_EXEMPT = "rent_exempt"


class CheckOrigin(str, Enum):
    BODY = "body"                # explicit statement in the function body
    DECLARATIVE = "declarative"  # implied by an account type or constraint
    INHERITED = "inherited"      # performed by a caller or resolved helper


class CallKind(str, Enum):
    CPI = "cpi"
    HELPER = "helper"


class CallResolution(str, Enum):
    LOCAL = "local"
    CROSS_UNIT = "cross_unit"
    UNKNOWN = "unknown"          # external/unknown callee, retained


class AccessKind(str, Enum):
    READ = "read"
    WRITE = "write"
    LAMPORTS_WRITE = "lamports_write"
    DATA_BORROW = "data_borrow"
    DATA_BORROW_MUT = "data_borrow_mut"
    DESERIALIZE = "deserialize"
    RELOAD = "reload"


class SiteKind(str, Enum):
    METHOD_CALL = "method_call"
    MACRO = "macro"
    CAST = "cast"
    DIVISION_BEFORE_MULTIPLICATION = "division_before_multiplication"
    CREATE_PROGRAM_ADDRESS = "create_program_address"
    FIND_PROGRAM_ADDRESS = "find_program_address"


# ── Accounts ─────────────────────────────────────────────────────────────────


class SeedComponent(_Frozen):
    """One element of a PDA seeds expression.

    ``shape`` is one of: ``literal``, ``account_key``, ``account_data``,
    ``instruction_arg``, ``bump``, ``expression``.
    """

    shape: str
    text: str
    literal: str | None = None
    account: str | None = None


class ConstraintSet(_Frozen):
    """Normalized ``#[account(...)]`` constraints of one account."""

    is_signer: bool = False
    is_mut: bool = False
    is_init: bool = False
    init_if_needed: bool = False
    is_zero: bool = False
    is_pda: bool = False
    seeds: tuple[SeedComponent, ...] = ()
    seeds_program: str | None = None
    bump: BumpSource = BumpSource.NONE
    bump_expression: str | None = None
    owner: str | None = None
    address: str | None = None
    close: str | None = None
    payer: str | None = None
    space: str | None = None
    has_one: tuple[str, ...] = ()
    expressions: tuple[str, ...] = ()
    realloc: str | None = None
    realloc_zero: bool | None = None
    token: FrozenMap = Field(default_factory=empty_map)
    unknown: tuple[str, ...] = ()

    @property
    def mentions(self) -> str:
        """All free-form constraint text, for syntactic reference tests."""
        return " ".join(self.expressions)


class AccountDefinition(_Frozen):
    """A declared account parameter or accounts-struct field."""

    name: str
    declared_type: str
    kind: AccountKind = AccountKind.UNKNOWN
    inner_type: str | None = None
    constraints: ConstraintSet = Field(default_factory=ConstraintSet)
    scope: str
    origin: AccountOrigin = AccountOrigin.ACCOUNTS_STRUCT
    has_check_doc: bool = False
    is_optional: bool = False
    span: Span

    @property
    def is_mut(self) -> bool:
        return self.constraints.is_mut

    @property
    def is_signer(self) -> bool:
        return self.kind == AccountKind.SIGNER or self.constraints.is_signer

    @property
    def key(self) -> tuple[str, int, int, str]:
        """Declaration identity across the project."""
        return (self.span.file, self.span.start_line, self.span.start_col, self.name)


class AccountStruct(_Frozen):
    """A ``#[derive(Accounts)]`` struct."""

    name: str
    fields: tuple[AccountDefinition, ...] = ()
    instruction_args: tuple[str, ...] = ()
    span: Span

    def field(self, name: str) -> AccountDefinition | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None


def unique_by_name(accounts: Iterable[AccountDefinition]) -> tuple[AccountDefinition, ...]:
    """One definition per name; a later binding shadows an earlier one."""
    latest: dict[str, AccountDefinition] = {}
    for acct in accounts:
        latest.pop(acct.name, None)
        latest[acct.name] = acct
    return tuple(latest.values())


class StateField(_Frozen):
    name: str
    declared_type: str
    span: Span


class StateStruct(_Frozen):
    """An ``#[account]``, zero-copy or Borsh-serialized data struct."""

    name: str
    fields: tuple[StateField, ...] = ()
    zero_copy: bool = False
    anchor: bool = True          # `#[account]`; False for plain Borsh structs
    span: Span

    def pubkey_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.declared_type.replace(" ", "") in ("Pubkey", "[u8;32]")]

    def field(self, name: str) -> StateField | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None


# ── Body facts ───────────────────────────────────────────────────────────────


class RuntimeCheck(_Frozen):
    """An explicit or implied verification covering one or more accounts.

    ``order`` is the pre-order position of the check in its function body;
    declarative checks use -1 (they run before the body).
    """

    kind: CheckKind
    accounts: tuple[str, ...] = ()
    operands: tuple[str, ...] = ()
    order: int = -1
    origin: CheckOrigin = CheckOrigin.BODY
    text: str = ""
    span: Span

    def covers(self, account: str) -> bool:
        return account in self.accounts


class AccountBinding(_Frozen):
    """An account passed (directly or through locals) as a call argument."""

    position: int
    account: str
    expression: str
    mutable_ref: bool = False


class CallEdge(_Frozen):
    """An invocation from a function to another function or program."""

    caller: str
    callee_name: str
    callee: str | None = None
    kind: CallKind = CallKind.HELPER
    resolution: CallResolution = CallResolution.UNKNOWN
    arguments: tuple[AccountBinding, ...] = ()
    argument_texts: tuple[str, ...] = ()
    program_account: str | None = None
    forwards_context: bool = False
    order: int = 0
    span: Span

    @property
    def is_unknown(self) -> bool:
        return self.resolution == CallResolution.UNKNOWN

    @property
    def last_segment(self) -> str:
        return self.callee_name.rsplit("::", 1)[-1]


class ArithmeticOp(_Frozen):
    op: str
    left: str
    right: str
    compound: bool = False
    accounts: tuple[str, ...] = ()
    order: int = 0
    text: str = ""
    span: Span


class AccountAccess(_Frozen):
    account: str
    kind: AccessKind
    member: str = ""
    order: int = 0
    text: str = ""
    span: Span


class CodeSite(_Frozen):
    """A syntactic site of interest (method call, macro, cast, ...)."""

    kind: SiteKind
    name: str
    text: str = ""
    accounts: tuple[str, ...] = ()
    order: int = 0
    span: Span


class Parameter(_Frozen):
    name: str
    type_text: str = ""
    is_context: bool = False
    is_account: bool = False


class Statement(_Frozen):
    kind: str
    text: str
    order: int = 0
    span: Span


class InstructionHandler(_Frozen):
    """One function: an instruction entry point or a helper."""

    id: str
    name: str
    qualified_name: str
    kind: HandlerKind = HandlerKind.HELPER
    file: str
    module_path: tuple[str, ...] = ()
    context_struct: str | None = None
    context_param: str | None = None
    params: tuple[Parameter, ...] = ()
    accounts: tuple[AccountDefinition, ...] = ()
    statements: tuple[Statement, ...] = ()
    calls: tuple[CallEdge, ...] = ()
    checks: tuple[RuntimeCheck, ...] = ()
    arithmetic: tuple[ArithmeticOp, ...] = ()
    accesses: tuple[AccountAccess, ...] = ()
    sites: tuple[CodeSite, ...] = ()
    span: Span

    @property
    def is_entrypoint(self) -> bool:
        return self.kind != HandlerKind.HELPER

    def account(self, name: str) -> AccountDefinition | None:
        for acct in self.accounts:
            if acct.name == name:
                return acct
        return None

    def sites_of(self, kind: SiteKind, *names: str) -> list[CodeSite]:
        return [s for s in self.sites if s.kind == kind and (not names or s.name in names)]

    def accesses_of(self, account: str, *kinds: AccessKind) -> list[AccountAccess]:
        return [a for a in self.accesses if a.account == account and (not kinds or a.kind in kinds)]


class ProgramModel(_Frozen):
    """The semantic model of one source unit."""

    file_path: str
    program_id: str | None = None
    module_path: tuple[str, ...] = ()
    accounts: tuple[AccountDefinition, ...] = ()
    account_structs: tuple[AccountStruct, ...] = ()
    state_structs: tuple[StateStruct, ...] = ()
    handlers: tuple[InstructionHandler, ...] = ()
    call_edges: tuple[CallEdge, ...] = ()

    @property
    def entrypoints(self) -> list[InstructionHandler]:
        return [h for h in self.handlers if h.is_entrypoint]

    def handler(self, name: str) -> InstructionHandler | None:
        for h in self.handlers:
            if h.name == name or h.qualified_name == name:
                return h
        return None
