"""Shared fixtures for the ELOIZER test suite.

Syntax trees are built in memory with ``RustTrees``, a thin layer over
``eloizer.core.raw.node`` that mirrors the shapes the external parser
emits (``#[account(...)]`` attributes, ``ctx.accounts.x`` accesses, ...).
"""

from __future__ import annotations

from typing import Callable

import pytest

from eloizer.core.raw import RawNode, SourceUnit, node
from eloizer.model.builder import build_program_model
from eloizer.model.resolver import AnalysisContext, resolve_models


# ── Tree construction helpers ────────────────────────────────────────────────


class RustTrees:
    """Constructors for the raw node shapes used across the tests."""

    # Expressions
    def path(self, text: str, line: int = 0) -> RawNode:
        return node("path", text, line=line)

    def lit(self, text: str) -> RawNode:
        return node("lit", text)

    def fa(self, base: RawNode, member: str, line: int = 0) -> RawNode:
        return node("field_access", member, base, line=line)

    def acc(self, name: str, line: int = 0) -> RawNode:
        """``ctx.accounts.<name>``"""
        return self.fa(self.fa(self.path("ctx"), "accounts"), name, line=line)

    def mcall(self, recv: RawNode, method: str, *args: RawNode, line: int = 0) -> RawNode:
        return node("method_call", method, recv, *args, line=line)

    def call(self, callee: str, *args: RawNode, line: int = 0) -> RawNode:
        return node("call", "", self.path(callee), *args, line=line)

    def macro(self, name: str, *args: RawNode, line: int = 0) -> RawNode:
        return node("macro", name, *args, line=line)

    def binary(self, op: str, left: RawNode, right: RawNode, line: int = 0) -> RawNode:
        return node("binary", op, left, right, line=line)

    def assign(self, op: str, target: RawNode, value: RawNode, line: int = 0) -> RawNode:
        return node("assign", op, target, value, line=line)

    def ref(self, inner: RawNode, mutable: bool = False) -> RawNode:
        if mutable:
            return node("ref", "", inner, mutable=True)
        return node("ref", "", inner)

    def deref(self, inner: RawNode) -> RawNode:
        return node("deref", "", inner)

    def stmt(self, expr: RawNode, line: int = 0) -> RawNode:
        return node("expr_stmt", "", expr, line=line)

    def let(self, name: str, init: RawNode, line: int = 0) -> RawNode:
        return node("let", name, init, line=line)

    def ok(self) -> RawNode:
        return self.call("Ok", node("tuple"))

    # Attributes
    def attr(self, name: str, *metas: RawNode) -> RawNode:
        return node("attribute", name, *metas)

    def flag(self, name: str) -> RawNode:
        return node("meta_path", name)

    def kv(self, name: str, value: RawNode) -> RawNode:
        return node("meta_name_value", name, value)

    def account(self, *metas: RawNode) -> RawNode:
        """``#[account(...)]``"""
        return self.attr("account", *metas)

    def seeds(self, *elements: RawNode) -> RawNode:
        return self.kv("seeds", node("array", "", *elements))

    def key_seed(self, account: str) -> RawNode:
        """``<account>.key().as_ref()``"""
        return self.mcall(self.mcall(self.path(account), "key"), "as_ref")

    # Items
    def field(self, name: str, type_text: str, *attrs: RawNode, line: int = 0, doc: str | None = None) -> RawNode:
        children = [node("doc", doc)] if doc is not None else []
        return node("field", name, *children, *attrs, node("type", type_text), line=line)

    def accounts_struct(self, name: str, *fields: RawNode, line: int = 0, attrs: tuple[RawNode, ...] = ()) -> RawNode:
        return node("struct", name, self.attr("derive", self.flag("Accounts")), *attrs, *fields,
                    line=line, end_line=line + 10)

    def state_struct(self, name: str, *fields: tuple[str, str], line: int = 0, borsh: bool = False) -> RawNode:
        if borsh:
            marker = self.attr("derive", self.flag("BorshSerialize"), self.flag("BorshDeserialize"))
        else:
            marker = self.attr("account")
        return node(
            "struct", name, marker,
            *(node("field", n, node("type", t), line=line + 1 + i) for i, (n, t) in enumerate(fields)),
            line=line, end_line=line + len(fields) + 1,
        )

    def param(self, name: str, type_text: str) -> RawNode:
        return node("param", name, node("type", type_text))

    def fn(self, name: str, params: list[tuple[str, str]], *stmts: RawNode, line: int = 0) -> RawNode:
        return node(
            "fn", name,
            *(self.param(n, t) for n, t in params),
            node("block", "", *stmts),
            line=line, end_line=line + 20,
        )

    def handler(self, name: str, struct: str, *stmts: RawNode, line: int = 0) -> RawNode:
        """``pub fn <name>(ctx: Context<<struct>>) -> Result<()>``"""
        return self.fn(name, [("ctx", f"Context<{struct}>")], *stmts, line=line)

    def program(self, name: str, *fns: RawNode) -> RawNode:
        return node("mod", name, self.attr("program"), *fns)

    def unit(self, path: str, *items: RawNode) -> SourceUnit:
        return SourceUnit(path=path, tree=node("file", "", *items))


@pytest.fixture
def rs() -> RustTrees:
    return RustTrees()


@pytest.fixture
def resolve() -> Callable[..., AnalysisContext]:
    """Build and resolve source units into an ``AnalysisContext``."""

    def _resolve(*units: SourceUnit) -> AnalysisContext:
        return resolve_models([build_program_model(u) for u in units])

    return _resolve


# ── Scenario units ───────────────────────────────────────────────────────────


def _vault_pda_unit(rs: RustTrees, path: str, struct: str, fn_name: str) -> SourceUnit:
    return rs.unit(
        path,
        rs.accounts_struct(
            struct,
            rs.field(
                "vault", "Account<'info, Vault>",
                rs.account(rs.flag("mut"), rs.seeds(rs.lit('b"vault"'), rs.key_seed("authority")), rs.flag("bump")),
                line=5,
            ),
            rs.field("authority", "Signer<'info>", line=8),
            line=3,
        ),
        rs.handler(fn_name, struct, rs.stmt(rs.ok(), line=22), line=20),
    )


@pytest.fixture
def seed_sharing_units(rs: RustTrees) -> list[SourceUnit]:
    """Two instructions in different files deriving PDAs from ["vault", authority]."""
    return [
        _vault_pda_unit(rs, "programs/vault/src/instructions/deposit.rs", "Deposit", "deposit"),
        _vault_pda_unit(rs, "programs/vault/src/instructions/withdraw.rs", "Withdraw", "withdraw"),
    ]


@pytest.fixture
def missing_signer_unit(rs: RustTrees) -> Callable[[bool], SourceUnit]:
    """An instruction whose mutable ``authority`` is a raw AccountInfo.

    Called with ``signer_check=True`` the body starts with
    ``require!(ctx.accounts.authority.is_signer, ErrorCode::Unauthorized)``.
    """

    def _unit(signer_check: bool = False) -> SourceUnit:
        stmts = []
        if signer_check:
            stmts.append(rs.stmt(rs.macro(
                "require",
                rs.fa(rs.acc("authority"), "is_signer"),
                rs.path("ErrorCode::Unauthorized"),
                line=31,
            ), line=31))
        stmts.append(rs.stmt(rs.ok(), line=32))
        return rs.unit(
            "programs/vault/src/lib.rs",
            rs.accounts_struct(
                "Withdraw",
                rs.field("authority", "AccountInfo<'info>", rs.account(rs.flag("mut")),
                         line=5, doc="/// CHECK: validated in the handler"),
                rs.field("vault", "Account<'info, Vault>", rs.account(rs.flag("mut")), line=8),
                line=3,
            ),
            rs.program("vault", rs.handler("withdraw", "Withdraw", *stmts, line=30)),
        )

    return _unit


@pytest.fixture
def unknown_callee_unit(rs: RustTrees) -> Callable[[bool], SourceUnit]:
    """An instruction handing a mutable unchecked account to ``external_program::process``.

    Called with ``owner_check=True`` the call is preceded by
    ``require_keys_eq!(*ctx.accounts.target.owner, crate::ID)``.
    """

    def _unit(owner_check: bool = False) -> SourceUnit:
        stmts = []
        if owner_check:
            stmts.append(rs.stmt(rs.macro(
                "require_keys_eq",
                rs.deref(rs.fa(rs.acc("target"), "owner")),
                rs.path("crate::ID"),
                line=41,
            ), line=41))
        stmts.append(rs.stmt(rs.call(
            "external_program::process",
            rs.mcall(rs.acc("target"), "to_account_info"),
            line=42,
        ), line=42))
        stmts.append(rs.stmt(rs.ok(), line=43))
        return rs.unit(
            "programs/bridge/src/lib.rs",
            rs.accounts_struct(
                "Relay",
                rs.field("target", "UncheckedAccount<'info>", rs.account(rs.flag("mut")),
                         line=5, doc="/// CHECK: forwarded"),
                rs.field("payer", "Signer<'info>", rs.account(rs.flag("mut")), line=7),
                line=3,
            ),
            rs.program("bridge", rs.handler("relay", "Relay", *stmts, line=40)),
        )

    return _unit
