"""Function body scanning.

``BodyScanner`` walks one function body in pre-order and records, each
with its pre-order position:
  - Runtime checks recognized syntactically (``if``/``require!`` conditions,
    checked math, ``Account::try_from``, well-known assertion helpers)
  - Call edges (helpers and cross-program invocations)
  - Arithmetic operations, account accesses and code sites
  - Native ``next_account_info`` account bindings

Checks are recognized by expression shape only. A check that sits in a
branch that never runs on the vulnerable path still counts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from eloizer.core.raw import RawNode, Span
from eloizer.model.expressions import AccountScope, is_id_like, is_literal, render, unwrap
from eloizer.model.program import (
    AccessKind,
    AccountAccess,
    AccountBinding,
    ArithmeticOp,
    CallEdge,
    CallKind,
    CallResolution,
    CheckKind,
    CodeSite,
    RuntimeCheck,
    SiteKind,
    Statement,
)

logger = logging.getLogger(__name__)

# ── Vocabulary ───────────────────────────────────────────────────────────────

CHECK_MACROS = {
    "require", "require_eq", "require_neq", "require_keys_eq", "require_keys_neq",
    "require_gt", "require_gte", "assert", "assert_eq", "assert_ne", "check",
    "debug_assert", "assert_keys_eq", "assert_keys_neq",
}

_EQ_MACROS = {"require_eq", "require_keys_eq", "assert_eq", "assert_keys_eq"}
_NEQ_MACROS = {"require_neq", "require_keys_neq", "assert_ne", "assert_keys_neq"}
_ORDER_MACROS = {"require_gt": ">", "require_gte": ">="}

_COMPARISONS = {"==", "!=", "<", "<=", ">", ">="}
_ORDERING = {"<", "<=", ">", ">="}
_ARITHMETIC = {"+", "-", "*"}
_COMPOUND = {"+=": "+", "-=": "-", "*=": "*"}

_GUARD_PREFIXES = ("checked_", "saturating_", "overflowing_", "wrapping_")

INVOKE_NAMES = {"invoke", "invoke_signed", "invoke_unchecked", "invoke_signed_unchecked"}

CPI_MODULES = (
    "token::", "token_interface::", "token_2022::", "system_program::",
    "associated_token::", "anchor_spl::", "spl_token::", "spl_token_2022::",
)

_BUILTIN_CALLS = {
    "Ok", "Err", "Some", "Box::new", "Vec::new", "Vec::with_capacity", "String::from",
    "String::new", "Pubkey::new_from_array", "Pubkey::from", "Pubkey::default",
    "Pubkey::new_unique", "Default::default", "Clock::get", "Rent::get", "EpochSchedule::get",
    "CpiContext::new", "CpiContext::new_with_signer", "AccountMeta::new",
    "AccountMeta::new_readonly", "Instruction::new_with_bytes", "Instruction::new_with_borsh",
    "next_account_info", "msg", "panic", "drop", "Rc::new", "RefCell::new",
}

_BUILTIN_PREFIXES = (
    "std::", "core::", "alloc::", "u8::", "u16::", "u32::", "u64::", "u128::", "i8::",
    "i16::", "i32::", "i64::", "i128::", "usize::", "isize::", "Vec::", "String::",
    "Option::", "Result::", "Box::", "Rc::", "RefCell::", "ErrorCode::",
)

_LOCAL_PREFIXES = ("crate::", "super::", "self::", "Self::")

_DESERIALIZERS = {
    "try_from_slice", "deserialize", "try_deserialize", "try_deserialize_unchecked",
    "unpack", "unpack_unchecked", "unpack_from_slice", "try_from_slice_unchecked",
}

# Unresolved helper names that by convention assert something about an account.
_ASSERTION_VERBS = ("assert", "check", "verify", "require", "ensure", "validate")
_ASSERTION_TOPICS = (
    ("signer", CheckKind.SIGNER),
    ("owner", CheckKind.OWNER),
    ("owned", CheckKind.OWNER),
    ("program", CheckKind.PROGRAM_ID),
    ("rent_exempt", CheckKind.RENT_EXEMPT),
    ("initialized", CheckKind.INITIALIZED),
    ("discriminator", CheckKind.DISCRIMINATOR),
    ("keys_eq", CheckKind.KEY_EQUALITY),
    ("key", CheckKind.KEY_EQUALITY),
)

NARROW_INTEGERS = {"u8", "u16", "u32", "u64", "i8", "i16", "i32", "i64", "usize", "isize"}


def assertion_kind(name: str) -> CheckKind | None:
    """Check kind implied by a helper named like ``assert_signer``."""
    last = name.rsplit("::", 1)[-1].lower()
    if not last.startswith(_ASSERTION_VERBS):
        return None
    for topic, kind in _ASSERTION_TOPICS:
        if topic in last:
            return kind
    return None


def is_builtin_call(name: str) -> bool:
    return name in _BUILTIN_CALLS or name.startswith(_BUILTIN_PREFIXES)


@dataclass
class BodyFacts:
    """Everything recorded for one function body."""

    statements: list[Statement] = field(default_factory=list)
    checks: list[RuntimeCheck] = field(default_factory=list)
    calls: list[CallEdge] = field(default_factory=list)
    arithmetic: list[ArithmeticOp] = field(default_factory=list)
    accesses: list[AccountAccess] = field(default_factory=list)
    sites: list[CodeSite] = field(default_factory=list)
    native_accounts: list[tuple[str, Span]] = field(default_factory=list)
    writable_checked: set[str] = field(default_factory=set)


class BodyScanner:
    """Scan one function body into ``BodyFacts``.

    Args:
        file: Unit path used for every recorded span.
        caller: Id of the function being scanned.
        scope: Account names visible in the body; extended by native
            bindings and ``let`` aliases while scanning.
        local_functions: Maps bare and qualified names of functions defined
            in the same unit to their ids.
        context_struct: Accounts struct of the function, if any, so
            ``ctx.accounts.method()`` calls resolve to ``Struct::method``.
    """

    def __init__(
        self,
        file: str,
        caller: str,
        scope: AccountScope,
        local_functions: dict[str, str],
        context_struct: str | None = None,
    ) -> None:
        self.file = file
        self.caller = caller
        self.scope = scope
        self.local_functions = local_functions
        self.context_struct = context_struct
        self.facts = BodyFacts()
        self._order = 0
        self._cpi_locals: dict[str, str | None] = {}

    # ── Entry ────────────────────────────────────────────────────────────

    def scan(self, body: RawNode | None) -> BodyFacts:
        if body is None:
            return self.facts
        for stmt in body.children:
            self.facts.statements.append(Statement(
                kind=stmt.kind,
                text=render(stmt),
                order=self._order,
                span=self._span(stmt),
            ))
            self._visit(stmt, in_condition=False)
        logger.debug(
            "Scanned %s: %d checks, %d calls, %d accesses",
            self.caller, len(self.facts.checks), len(self.facts.calls), len(self.facts.accesses),
        )
        return self.facts

    # ── Walk ─────────────────────────────────────────────────────────────

    def _span(self, n: RawNode) -> Span:
        return n.span.with_file(self.file)

    def _next(self) -> int:
        self._order += 1
        return self._order

    def _visit(self, n: RawNode, in_condition: bool, lhs: bool = False) -> None:
        order = self._next()
        k = n.kind
        if k == "let":
            self._visit_let(n)
        elif k == "if":
            self._visit_if(n)
        elif k == "macro":
            self._visit_macro(n, order)
        elif k == "binary":
            self._visit_binary(n, order, in_condition)
        elif k == "assign":
            self._visit_assign(n, order)
        elif k == "method_call":
            self._visit_method_call(n, order, in_condition, lhs)
        elif k == "call":
            self._visit_call(n, order, in_condition)
        elif k == "field_access":
            self._visit_field_access(n, order, in_condition, lhs)
        elif k == "cast":
            self._visit_cast(n, order, in_condition)
        elif k in ("fn", "struct", "impl", "mod"):
            return
        else:
            for ch in n.children:
                self._visit(ch, in_condition, lhs)

    def _visit_children(self, n: RawNode, in_condition: bool, lhs: bool = False) -> None:
        for ch in n.children:
            self._visit(ch, in_condition, lhs)

    def _visit_let(self, n: RawNode) -> None:
        init = n.children[0] if n.children else None
        if init is not None:
            self._visit(init, in_condition=False)
        name = n.text.strip()
        if name.startswith("mut "):
            name = name[4:].strip()
        if not name or not name.isidentifier() or init is None:
            return
        core = unwrap(init)
        if core.kind == "call" and core.children and core.children[0].text.endswith("next_account_info"):
            self.scope.accounts.add(name)
            self.scope.aliases.pop(name, None)
            self.facts.native_accounts.append((name, self._span(n)))
            return
        cpi_program = self._cpi_context_program(core)
        if cpi_program is not False:
            self._cpi_locals[name] = cpi_program
        self.scope.bind(name, init)

    def _visit_if(self, n: RawNode) -> None:
        if not n.children:
            return
        self._visit(n.children[0], in_condition=True)
        for ch in n.children[1:]:
            self._visit(ch, in_condition=False)

    def _visit_macro(self, n: RawNode, order: int) -> None:
        name = n.text.rstrip("!")
        accounts = tuple(self.scope.references(n))
        self.facts.sites.append(CodeSite(
            kind=SiteKind.MACRO, name=name, text=render(n), accounts=accounts,
            order=order, span=self._span(n),
        ))
        if name not in CHECK_MACROS:
            self._visit_children(n, in_condition=False)
            return
        args = n.children
        if len(args) >= 2 and (name in _EQ_MACROS or name in _NEQ_MACROS):
            op = "==" if name in _EQ_MACROS else "!="
            self._comparison(op, args[0], args[1], n, order)
        elif len(args) >= 2 and name in _ORDER_MACROS:
            self._comparison(_ORDER_MACROS[name], args[0], args[1], n, order)
        self._visit_children(n, in_condition=True)

    def _visit_binary(self, n: RawNode, order: int, in_condition: bool) -> None:
        op = n.text
        c = n.children
        if len(c) >= 2:
            if op in _COMPARISONS and in_condition:
                self._comparison(op, c[0], c[1], n, order)
            elif op in _ARITHMETIC and not (is_literal(c[0]) and is_literal(c[1])):
                self._arithmetic(op, c[0], c[1], n, order, compound=False)
            if op == "*" and any(unwrap(x).kind == "binary" and unwrap(x).text == "/" for x in c[:2]):
                self.facts.sites.append(CodeSite(
                    kind=SiteKind.DIVISION_BEFORE_MULTIPLICATION, name="/*", text=render(n),
                    accounts=tuple(self.scope.references(n)), order=order, span=self._span(n),
                ))
        self._visit_children(n, in_condition)

    def _visit_assign(self, n: RawNode, order: int) -> None:
        c = n.children
        if len(c) < 2:
            self._visit_children(n, in_condition=False)
            return
        target, value = c[0], c[1]
        op = n.text or "="
        if op in _COMPOUND:
            self._arithmetic(_COMPOUND[op], target, value, n, order, compound=True)
        account = self.scope.account_of(target)
        if account is not None:
            text = render(target)
            kind = AccessKind.LAMPORTS_WRITE if "lamports" in text else AccessKind.WRITE
            member = unwrap(target).text if unwrap(target).kind == "field_access" else ""
            self.facts.accesses.append(AccountAccess(
                account=account, kind=kind, member=member, order=order,
                text=render(n), span=self._span(n),
            ))
        self._visit(target, in_condition=False, lhs=True)
        self._visit(value, in_condition=False)

    def _visit_method_call(self, n: RawNode, order: int, in_condition: bool, lhs: bool) -> None:
        name = n.text
        recv = n.children[0] if n.children else None
        args = n.children[1:]
        account = self.scope.account_of(recv) if recv is not None else None
        refs = tuple(self.scope.references(n))
        span = self._span(n)
        self.facts.sites.append(CodeSite(
            kind=SiteKind.METHOD_CALL, name=name, text=render(n),
            accounts=(account,) if account else refs, order=order, span=span,
        ))

        if name.startswith(_GUARD_PREFIXES):
            self._check(CheckKind.ARITHMETIC_GUARD, refs, n, order,
                        operands=(render(recv),) + tuple(render(a) for a in args))
        elif name == "is_exempt":
            self._check(CheckKind.RENT_EXEMPT, refs, n, order)
        elif name in ("eq", "ne") and recv is not None and args and in_condition:
            self._comparison("==" if name == "eq" else "!=", recv, args[0], n, order)

        if account is not None:
            member = self._member_of(recv)
            if name == "reload":
                self._access(account, AccessKind.RELOAD, "", n, order)
            elif name in ("try_borrow_mut_data", "data_borrow_mut") or (
                name in ("borrow_mut", "try_borrow_mut") and member == "data"
            ):
                self._access(account, AccessKind.DATA_BORROW_MUT, "data", n, order)
            elif name in ("try_borrow_data",) or (name in ("borrow", "try_borrow") and member == "data"):
                self._access(account, AccessKind.DATA_BORROW, "data", n, order)
            elif name in ("try_borrow_mut_lamports",) or (
                name in ("borrow_mut", "try_borrow_mut") and member == "lamports"
            ):
                self._access(account, AccessKind.LAMPORTS_WRITE, "lamports", n, order)
            elif name in ("set_inner", "load_mut", "load_init", "exit", "realloc", "close", "assign"):
                self._access(account, AccessKind.WRITE, name, n, order)
            elif name == "load":
                self._access(account, AccessKind.READ, name, n, order)

        if recv is not None and self.scope.is_context_accounts(recv):
            self._call_edge(n, f"{self.context_struct}::{name}" if self.context_struct else name,
                            args, order, helper_only=True)
        elif recv is not None and unwrap(recv).kind == "path" and unwrap(recv).text == "self" \
                and self.context_struct:
            qualified = f"{self.context_struct}::{name}"
            if qualified in self.local_functions:
                self._call_edge(n, qualified, args, order, helper_only=True)

        if recv is not None:
            self._visit(recv, in_condition, lhs)
        for a in args:
            self._visit(a, in_condition=in_condition if name in ("eq", "ne") else False)

    def _visit_call(self, n: RawNode, order: int, in_condition: bool) -> None:
        if not n.children:
            return
        callee_node = n.children[0]
        name = callee_node.text.replace(" ", "")
        last = name.rsplit("::", 1)[-1]
        args = n.children[1:]
        refs = tuple(self.scope.references(n))

        if last in ("try_from", "try_from_unchecked") and "Account" in name:
            self._check(CheckKind.DISCRIMINATOR, refs, n, order)
            if last == "try_from":
                self._check(CheckKind.OWNER, refs, n, order)
            for acct in refs:
                self._access(acct, AccessKind.DESERIALIZE, last, n, order)
        elif last in _DESERIALIZERS:
            if last == "try_deserialize":
                self._check(CheckKind.DISCRIMINATOR, refs, n, order)
            for acct in refs:
                self._access(acct, AccessKind.DESERIALIZE, last, n, order)
        elif last == "create_program_address":
            self.facts.sites.append(CodeSite(
                kind=SiteKind.CREATE_PROGRAM_ADDRESS, name=name, text=render(n),
                accounts=refs, order=order, span=self._span(n),
            ))
        elif last in ("find_program_address", "try_find_program_address"):
            self.facts.sites.append(CodeSite(
                kind=SiteKind.FIND_PROGRAM_ADDRESS, name=name, text=render(n),
                accounts=refs, order=order, span=self._span(n),
            ))
        elif not is_builtin_call(name):
            self._call_edge(n, name, args, order)

        for a in args:
            self._visit(a, in_condition=False)

    def _visit_field_access(self, n: RawNode, order: int, in_condition: bool, lhs: bool) -> None:
        base = n.children[0] if n.children else None
        if base is None:
            return
        member = n.text
        if in_condition:
            account = self.scope.account_of(base)
            accounts = (account,) if account else tuple(self.scope.references(base))
            if member == "is_signer":
                self._check(CheckKind.SIGNER, accounts, n, order)
            elif member == "is_initialized":
                self._check(CheckKind.INITIALIZED, accounts, n, order)
            elif member == "discriminator":
                self._check(CheckKind.DISCRIMINATOR, accounts, n, order)
            elif member == "is_writable":
                self.facts.writable_checked.update(accounts)
        if not lhs and not self.scope.is_context_accounts(base):
            account = self._account_expr(base)
            if account is not None:
                self._access(account, AccessKind.READ, member, n, order)
        self._visit(base, in_condition, lhs)

    def _visit_cast(self, n: RawNode, order: int, in_condition: bool) -> None:
        target = n.text.strip()
        if n.children and target in NARROW_INTEGERS and not is_literal(n.children[0]):
            self.facts.sites.append(CodeSite(
                kind=SiteKind.CAST, name=target, text=render(n),
                accounts=tuple(self.scope.references(n)), order=order, span=self._span(n),
            ))
        self._visit_children(n, in_condition)

    # ── Recording ────────────────────────────────────────────────────────

    def _check(
        self,
        kind: CheckKind,
        accounts: tuple[str, ...] | list[str],
        n: RawNode,
        order: int,
        operands: tuple[str, ...] = (),
    ) -> None:
        self.facts.checks.append(RuntimeCheck(
            kind=kind, accounts=tuple(accounts), operands=operands, order=order,
            text=render(n), span=self._span(n),
        ))

    def _access(self, account: str, kind: AccessKind, member: str, n: RawNode, order: int) -> None:
        self.facts.accesses.append(AccountAccess(
            account=account, kind=kind, member=member, order=order,
            text=render(n), span=self._span(n),
        ))

    def _arithmetic(
        self, op: str, left: RawNode, right: RawNode, n: RawNode, order: int, compound: bool,
    ) -> None:
        self.facts.arithmetic.append(ArithmeticOp(
            op=op, left=render(left), right=render(right), compound=compound,
            accounts=tuple(self.scope.references(n)), order=order,
            text=render(n), span=self._span(n),
        ))

    def _comparison(self, op: str, left: RawNode, right: RawNode, n: RawNode, order: int) -> None:
        refs = tuple(self.scope.references(left)) + tuple(
            a for a in self.scope.references(right) if a not in self.scope.references(left)
        )
        if op in _ORDERING:
            self._check(CheckKind.ARITHMETIC_GUARD, refs, n, order,
                        operands=(render(left), render(right)))
            return
        if op not in ("==", "!="):
            return

        for side in (left, right):
            owner_of = self._owner_subject(side)
            if owner_of is not None:
                self._check(CheckKind.OWNER, (owner_of,), n, order)

        text = render(left) + " " + render(right)
        if "discriminator" in text.lower():
            self._check(CheckKind.DISCRIMINATOR, refs, n, order)

        left_key = self.scope.mentions_key(left)
        right_key = self.scope.mentions_key(right)
        if not (left_key or right_key):
            return
        if left_key and is_id_like(render(right)) and not self.scope.references(right):
            self._check(CheckKind.PROGRAM_ID, tuple(self.scope.references(left)), n, order)
        elif right_key and is_id_like(render(left)) and not self.scope.references(left):
            self._check(CheckKind.PROGRAM_ID, tuple(self.scope.references(right)), n, order)
        else:
            self._check(CheckKind.KEY_EQUALITY, refs, n, order)

    def _call_edge(
        self,
        n: RawNode,
        name: str,
        args: tuple[RawNode, ...] | list[RawNode],
        order: int,
        helper_only: bool = False,
    ) -> None:
        bindings: list[AccountBinding] = []
        texts: list[str] = []
        program_account: str | None = None
        is_cpi = False
        forwards = False
        for pos, arg in enumerate(args):
            texts.append(render(arg))
            core = unwrap(arg)
            if core.kind == "path" and self.scope.context_param and core.text == self.scope.context_param:
                forwards = True
            mutable = any(x.kind == "ref" and x.prop("mutable") for x in arg.walk())
            for acct in self.scope.references(arg):
                bindings.append(AccountBinding(
                    position=pos, account=acct, expression=render(arg), mutable_ref=mutable,
                ))
            if not helper_only:
                cpi_program = self._cpi_context_program(core)
                if cpi_program is False and core.kind == "path" and core.text in self._cpi_locals:
                    cpi_program = self._cpi_locals[core.text]
                if cpi_program is not False:
                    is_cpi = True
                    program_account = program_account or cpi_program

        last = name.rsplit("::", 1)[-1]
        if not helper_only and (last in INVOKE_NAMES or name.startswith(CPI_MODULES)):
            is_cpi = True
            if last in INVOKE_NAMES and args:
                program_account = program_account or self._instruction_program(args[0])

        callee = self.local_functions.get(name)
        if callee is None and ("::" not in name or name.startswith(_LOCAL_PREFIXES)):
            callee = self.local_functions.get(last)

        if callee is None and not is_cpi:
            kind = assertion_kind(name)
            if kind is not None:
                self._check(kind, tuple(b.account for b in bindings), n, order)

        self.facts.calls.append(CallEdge(
            caller=self.caller,
            callee_name=name,
            callee=callee,
            kind=CallKind.CPI if is_cpi else CallKind.HELPER,
            resolution=CallResolution.LOCAL if callee else CallResolution.UNKNOWN,
            arguments=tuple(bindings),
            argument_texts=tuple(texts),
            program_account=program_account,
            forwards_context=forwards,
            order=order,
            span=self._span(n),
        ))

    # ── Shapes ───────────────────────────────────────────────────────────

    def _cpi_context_program(self, core: RawNode) -> str | None | bool:
        """Program account of a ``CpiContext::new*`` expression, False if not one."""
        core = unwrap(core)
        while core.kind == "method_call" and core.text == "with_signer" and core.children:
            core = unwrap(core.children[0])
        if core.kind != "call" or not core.children:
            return False
        if not core.children[0].text.replace(" ", "").startswith("CpiContext::new"):
            return False
        if len(core.children) < 2:
            return None
        return self.scope.account_of(core.children[1])

    def _instruction_program(self, ix: RawNode) -> str | None:
        """Program account an instruction value targets, if derivable."""
        core = unwrap(ix)
        if core.kind == "path" and core.text in self.scope.locals:
            core = unwrap(self.scope.locals[core.text])
        if core.kind == "struct_lit":
            for fv in core.children:
                if fv.kind == "field_value" and fv.text == "program_id" and fv.children:
                    return self.scope.account_of(fv.children[0])
            return None
        if core.kind == "call" and len(core.children) > 1:
            builder = core.children[0].text
            if builder.startswith(("system_instruction::", "solana_program::system_instruction::")):
                return None
            return self.scope.account_of(core.children[1])
        return None

    def _owner_subject(self, side: RawNode) -> str | None:
        core = unwrap(side)
        while core.kind == "method_call" and core.text in ("as_ref", "key", "clone", "to_owned") and core.children:
            core = unwrap(core.children[0])
        if core.kind in ("field_access", "method_call") and core.text == "owner" and core.children:
            return self.scope.account_of(core.children[0])
        return None

    def _account_expr(self, n: RawNode) -> str | None:
        """Account name when ``n`` is the account itself, not a member of it."""
        core = unwrap(n)
        if core.kind == "field_access" and core.children:
            base = unwrap(core.children[0])
            if self.scope.is_context_accounts(base):
                return core.text
            if base.kind == "path" and base.text == "self" and (
                self.scope.self_is_accounts or core.text in self.scope.accounts
            ):
                return core.text
            return None
        if core.kind == "path" and "::" not in core.text:
            return self.scope.account_of(core)
        return None

    def _member_of(self, recv: RawNode) -> str:
        core = unwrap(recv)
        if core.kind == "field_access":
            return core.text
        return ""
