"""Cross-Reference Resolver — all ProgramModels in, one AnalysisContext out.

Runs after every unit has been built (the join barrier of the pipeline):
  - Resolves call edges whose callee is defined in another unit
  - Attaches accounts structs declared in other units to their handlers
  - Builds the project-wide seed-signature index
  - Computes each function's effective checks: declarative checks implied
    by account types and constraints, body checks, and checks inherited
    through resolved helpers (depth-limited, cycle-safe)

The resulting ``AnalysisContext`` is frozen and exposes only read-only
mappings, so rules can be evaluated in parallel against it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from eloizer.core.raw import Span
from eloizer.core.types import Location
from eloizer.model.body import CPI_MODULES
from eloizer.model.program import (
    AccountDefinition,
    AccountKind,
    AccountStruct,
    CallEdge,
    CallKind,
    CallResolution,
    CheckKind,
    CheckOrigin,
    InstructionHandler,
    ProgramModel,
    RuntimeCheck,
    StateStruct,
    unique_by_name,
)
from eloizer.model.seeds import SeedSignature, seed_signature

logger = logging.getLogger(__name__)

DEFAULT_HELPER_DEPTH = 4

_EXTERNAL_PREFIXES = CPI_MODULES + (
    "anchor_lang::", "solana_program::", "borsh::", "spl_associated_token_account::",
    "mpl_token_metadata::", "system_instruction::",
)

_RELATIVE_PREFIXES = ("crate::", "super::", "self::", "Self::")


@dataclass(frozen=True)
class SeedEntry:
    """One PDA account declaration in the seed-signature index."""

    account: AccountDefinition
    handler_ids: tuple[str, ...]


@dataclass(frozen=True)
class AnalysisContext:
    """Merged, read-only view of every ProgramModel in one run."""

    models: tuple[ProgramModel, ...]
    handlers: tuple[InstructionHandler, ...]
    call_edges: tuple[CallEdge, ...]
    resolution_table: Mapping[tuple[str, str], str]
    seed_index: Mapping[SeedSignature, tuple[SeedEntry, ...]]
    account_structs: Mapping[str, AccountStruct]
    state_structs: Mapping[str, StateStruct]
    effective_checks: Mapping[str, tuple[RuntimeCheck, ...]]
    sources: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    _by_id: Mapping[str, InstructionHandler] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_id", MappingProxyType({h.id: h for h in self.handlers}))

    # ── Lookups ──────────────────────────────────────────────────────────

    @property
    def files(self) -> list[str]:
        return [m.file_path for m in self.models]

    @property
    def entrypoints(self) -> list[InstructionHandler]:
        return [h for h in self.handlers if h.is_entrypoint]

    def handler(self, handler_id: str) -> InstructionHandler | None:
        return self._by_id.get(handler_id)

    def handlers_using_struct(self, struct: AccountStruct) -> list[InstructionHandler]:
        """Functions (entry points and helpers) whose accounts struct is ``struct``.

        When several units declare a struct with the same name, only the
        first in path order is visible project-wide; the others are used
        by functions of their own unit only.
        """
        canonical = self.account_structs.get(struct.name) is struct
        return [
            h for h in self.handlers
            if h.context_struct == struct.name and (canonical or h.file == struct.span.file)
        ]

    def state_struct(self, name: str | None) -> StateStruct | None:
        if not name:
            return None
        return self.state_structs.get(name)

    def callees(self, handler: InstructionHandler) -> list[InstructionHandler]:
        found = []
        for edge in handler.calls:
            if edge.callee:
                callee = self.handler(edge.callee)
                if callee is not None:
                    found.append(callee)
        return found

    # ── Checks ───────────────────────────────────────────────────────────

    def checks_for(
        self,
        handler: InstructionHandler,
        kind: CheckKind | None = None,
        account: str | None = None,
    ) -> list[RuntimeCheck]:
        return [
            c for c in self.effective_checks.get(handler.id, handler.checks)
            if (kind is None or c.kind == kind) and (account is None or c.covers(account))
        ]

    def has_check(
        self,
        handler: InstructionHandler,
        kind: CheckKind,
        account: str,
        before: int | None = None,
    ) -> bool:
        """True when a check of ``kind`` covers ``account`` (optionally before an order)."""
        return any(
            before is None or c.order < before
            for c in self.checks_for(handler, kind, account)
        )

    # ── Locations ────────────────────────────────────────────────────────

    def snippet(self, span: Span, max_lines: int = 3) -> str:
        source = self.sources.get(span.file)
        if not source or span.start_line <= 0:
            return ""
        lines = source.split("\n")
        end = min(span.last_line, span.start_line + max_lines - 1)
        return "\n".join(line.rstrip() for line in lines[span.start_line - 1:end]).strip()

    def location(self, span: Span, snippet: str = "") -> Location:
        return Location(
            file_path=span.file,
            start_line=span.start_line,
            end_line=span.last_line,
            start_col=span.start_col or None,
            end_col=span.end_col or None,
            snippet=self.snippet(span) or snippet,
        )


# ── Declarative checks ───────────────────────────────────────────────────────


def declarative_checks(account: AccountDefinition, sibling_names: Iterable[str] = ()) -> list[RuntimeCheck]:
    """Checks Anchor performs before the handler body for one account."""
    cs = account.constraints
    name = account.name
    found: list[tuple[CheckKind, tuple[str, ...], str]] = []

    def add(kind: CheckKind, accounts: tuple[str, ...] = (name,), text: str = "") -> None:
        found.append((kind, accounts, text or account.declared_type))

    if account.is_signer:
        add(CheckKind.SIGNER, text="signer")
    if account.kind.checks_owner:
        add(CheckKind.OWNER)
    if account.kind.checks_discriminator:
        add(CheckKind.DISCRIMINATOR)
    if account.kind.is_program:
        add(CheckKind.PROGRAM_ID)
    if account.kind == AccountKind.SYSVAR:
        add(CheckKind.KEY_EQUALITY)
    if cs.is_init or cs.init_if_needed or cs.is_zero:
        add(CheckKind.OWNER, text="init")
        add(CheckKind.DISCRIMINATOR, text="init")
    if cs.owner:
        add(CheckKind.OWNER, text=f"owner = {cs.owner}")
    if cs.address:
        add(CheckKind.PROGRAM_ID, text=f"address = {cs.address}")
        add(CheckKind.KEY_EQUALITY, text=f"address = {cs.address}")
    if cs.is_pda:
        add(CheckKind.KEY_EQUALITY, text="seeds")
    for target in cs.has_one:
        add(CheckKind.KEY_EQUALITY, (name, target), f"has_one = {target}")
    for key, value in cs.token.items():
        if key.endswith(("::authority", "::mint")):
            targets = tuple(n for n in sibling_names if _mentions(value, n))
            add(CheckKind.KEY_EQUALITY, (name,) + targets, f"{key} = {value}")

    siblings = [n for n in sibling_names if n != name]
    for expr in cs.expressions:
        mentioned = tuple([name] + [n for n in siblings if _mentions(expr, n)])
        if "is_signer" in expr:
            add(CheckKind.SIGNER, tuple(n for n in mentioned if _mentions(expr, n + ".is_signer")) or (name,), expr)
        if ".owner" in expr:
            add(CheckKind.OWNER, mentioned, expr)
        if "key" in expr and any(op in expr for op in ("==", "!=", ".eq(", ".ne(")):
            add(CheckKind.KEY_EQUALITY, mentioned, expr)
        if any(op in expr for op in ("<", ">")):
            add(CheckKind.ARITHMETIC_GUARD, mentioned, expr)

    return [
        RuntimeCheck(kind=kind, accounts=accounts, order=-1, origin=CheckOrigin.DECLARATIVE,
                     text=text, span=account.span)
        for kind, accounts, text in found
    ]


def _mentions(text: str, name: str) -> bool:
    return re.search(rf"(?<![\w.]){re.escape(name)}\b", text) is not None


# ── Resolver ─────────────────────────────────────────────────────────────────


class CrossReferenceResolver:
    """Merge ProgramModels into one ``AnalysisContext``.

    Models are processed in file-path order so resolution, index contents
    and diagnostics do not depend on build completion order.
    """

    def __init__(
        self,
        models: Iterable[ProgramModel],
        sources: Mapping[str, str] | None = None,
        helper_depth: int = DEFAULT_HELPER_DEPTH,
    ) -> None:
        self.models = tuple(sorted(models, key=lambda m: m.file_path))
        self.sources = dict(sources or {})
        self.helper_depth = helper_depth
        self._by_id: dict[str, InstructionHandler] = {}
        self._account_structs: dict[str, AccountStruct] = {}
        self._state_structs: dict[str, StateStruct] = {}

    def resolve(self) -> AnalysisContext:
        for model in self.models:
            for struct in model.account_structs:
                self._account_structs.setdefault(struct.name, struct)
            for state in model.state_structs:
                self._state_structs.setdefault(state.name, state)
            for h in model.handlers:
                self._by_id[h.id] = h

        all_handlers = [h for m in self.models for h in m.handlers]
        table: dict[tuple[str, str], str] = {}
        resolved: list[InstructionHandler] = []
        cross_unit = 0
        for h in all_handlers:
            calls = []
            for edge in h.calls:
                new_edge = self._resolve_edge(edge)
                if new_edge.resolution == CallResolution.CROSS_UNIT and edge.is_unknown:
                    cross_unit += 1
                if new_edge.callee:
                    table[(edge.caller, edge.callee_name)] = new_edge.callee
                calls.append(new_edge)
            resolved.append(h.model_copy(update={
                "calls": tuple(calls),
                "accounts": self._attach_struct_accounts(h),
            }))
        self._by_id = {h.id: h for h in resolved}

        effective = self._effective_checks(resolved)
        seed_index = self._seed_index(resolved)
        edges = tuple(e for h in resolved for e in h.calls)
        unknown = sum(1 for e in edges if e.is_unknown)
        logger.info(
            "Resolved %d units: %d functions, %d call edges (%d cross-unit, %d unknown), %d seed groups",
            len(self.models), len(resolved), len(edges), cross_unit, unknown, len(seed_index),
        )
        return AnalysisContext(
            models=self.models,
            handlers=tuple(resolved),
            call_edges=edges,
            resolution_table=MappingProxyType(table),
            seed_index=MappingProxyType(seed_index),
            account_structs=MappingProxyType(dict(self._account_structs)),
            state_structs=MappingProxyType(dict(self._state_structs)),
            effective_checks=MappingProxyType(effective),
            sources=MappingProxyType(self.sources),
        )

    # ── Call edges ───────────────────────────────────────────────────────

    def _resolve_edge(self, edge: CallEdge) -> CallEdge:
        if not edge.is_unknown or edge.kind == CallKind.CPI:
            return edge
        name = edge.callee_name
        if name.startswith(_EXTERNAL_PREFIXES):
            return edge
        for prefix in _RELATIVE_PREFIXES:
            if name.startswith(prefix):
                name = name[len(prefix):]
        segments = name.split("::")
        last = segments[-1]
        caller = self._by_id.get(edge.caller)

        candidates = [h for h in self._by_id.values() if h.qualified_name == name]
        if not candidates:
            candidates = [h for h in self._by_id.values() if h.name == last and "::" not in h.qualified_name]
            qualifiers = [s for s in segments[:-1] if s not in ("super", "self", "crate")]
            if qualifiers:
                candidates = [
                    h for h in candidates
                    if all(q in h.module_path for q in qualifiers)
                ]
        if caller is not None:
            candidates = [h for h in candidates if h.file != caller.file]
        if len(candidates) != 1:
            if len(candidates) > 1:
                logger.debug("Ambiguous callee %s from %s (%d candidates)", edge.callee_name,
                             edge.caller, len(candidates))
            return edge
        return edge.model_copy(update={
            "callee": candidates[0].id,
            "resolution": CallResolution.CROSS_UNIT,
        })

    def _attach_struct_accounts(self, h: InstructionHandler) -> tuple[AccountDefinition, ...]:
        if not h.context_struct or any(a.scope == h.context_struct for a in h.accounts):
            return h.accounts
        struct = self._account_structs.get(h.context_struct)
        if struct is None:
            return h.accounts
        return unique_by_name(struct.fields + h.accounts)

    # ── Checks ───────────────────────────────────────────────────────────

    def _effective_checks(self, handlers: list[InstructionHandler]) -> dict[str, tuple[RuntimeCheck, ...]]:
        base: dict[str, list[RuntimeCheck]] = {}
        for h in handlers:
            names = [a.name for a in h.accounts]
            checks: list[RuntimeCheck] = []
            for acct in h.accounts:
                checks.extend(declarative_checks(acct, names))
            checks.extend(h.checks)
            base[h.id] = checks

        downward = {h.id: self._downward(h.id, base, self.helper_depth, (h.id,)) for h in handlers}

        # Helpers receiving the caller's context inherit what the caller
        # already verified before the call.
        effective = {hid: list(checks) for hid, checks in downward.items()}
        for h in handlers:
            for edge in h.calls:
                if not edge.callee or edge.callee not in effective:
                    continue
                callee = self._by_id[edge.callee]
                if not (edge.forwards_context or (callee.context_struct and callee.context_struct == h.context_struct)):
                    continue
                for check in downward[h.id]:
                    if check.order < edge.order and check.accounts:
                        effective[edge.callee].append(check.model_copy(update={
                            "order": -1, "origin": CheckOrigin.INHERITED,
                        }))

        return {hid: tuple(_dedup_checks(checks)) for hid, checks in effective.items()}

    def _downward(
        self,
        hid: str,
        base: dict[str, list[RuntimeCheck]],
        depth: int,
        stack: tuple[str, ...],
    ) -> list[RuntimeCheck]:
        h = self._by_id[hid]
        checks = list(base[hid])
        if depth <= 0:
            return checks
        for edge in h.calls:
            if not edge.callee or edge.callee in stack or edge.callee not in self._by_id:
                continue
            callee = self._by_id[edge.callee]
            mapping = _argument_mapping(h, callee, edge)
            if not mapping:
                continue
            for check in self._downward(callee.id, base, depth - 1, stack + (callee.id,)):
                accounts: list[str] = []
                for acct in check.accounts:
                    for mapped in mapping.get(acct, ()):
                        if mapped not in accounts:
                            accounts.append(mapped)
                if accounts:
                    checks.append(check.model_copy(update={
                        "accounts": tuple(accounts),
                        "order": edge.order,
                        "origin": CheckOrigin.INHERITED,
                    }))
        return checks

    # ── Seeds ────────────────────────────────────────────────────────────

    def _seed_index(self, handlers: list[InstructionHandler]) -> dict[SeedSignature, tuple[SeedEntry, ...]]:
        groups: dict[SeedSignature, list[SeedEntry]] = {}
        for model in self.models:
            for struct in model.account_structs:
                canonical = self._account_structs.get(struct.name) is struct
                users = sorted(
                    h.id for h in handlers
                    if h.context_struct == struct.name and h.is_entrypoint
                    and (canonical or h.file == struct.span.file)
                )
                for acct in struct.fields:
                    if not acct.constraints.is_pda:
                        continue
                    signature = seed_signature(acct.constraints.seeds)
                    if not signature:
                        continue
                    groups.setdefault(signature, []).append(SeedEntry(account=acct, handler_ids=tuple(users)))
        return {
            sig: tuple(sorted(entries, key=lambda e: e.account.key))
            for sig, entries in sorted(groups.items())
        }


def _argument_mapping(
    caller: InstructionHandler,
    callee: InstructionHandler,
    edge: CallEdge,
) -> dict[str, list[str]]:
    """Callee account name -> caller accounts bound to it at this call."""
    mapping: dict[str, list[str]] = {}
    if edge.forwards_context or (callee.context_struct and callee.context_struct == caller.context_struct):
        for acct in callee.accounts:
            if caller.account(acct.name) is not None:
                mapping.setdefault(acct.name, []).append(acct.name)
    params = [p for p in callee.params if not p.name.endswith("self")]
    for binding in edge.arguments:
        if binding.position >= len(params):
            continue
        param = params[binding.position]
        if param.is_context:
            continue
        targets = mapping.setdefault(param.name, [])
        if binding.account not in targets:
            targets.append(binding.account)
    return mapping


def _dedup_checks(checks: list[RuntimeCheck]) -> list[RuntimeCheck]:
    seen: set[tuple] = set()
    out = []
    for c in checks:
        key = (c.kind, c.accounts, c.order, c.origin, c.span.file, c.span.start_line, c.text)
        if key in seen:
            continue
        seen.add(key)
        out.append(c)
    return out


def resolve_models(
    models: Iterable[ProgramModel],
    sources: Mapping[str, str] | None = None,
    helper_depth: int = DEFAULT_HELPER_DEPTH,
) -> AnalysisContext:
    """Convenience wrapper around ``CrossReferenceResolver``."""
    return CrossReferenceResolver(models, sources, helper_depth).resolve()
