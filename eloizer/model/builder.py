"""Semantic Model Builder — one raw syntax tree in, one ``ProgramModel`` out.

Walks a unit's tree once and recognizes:
  - ``#[derive(Accounts)]`` structs and their constrained account fields
  - ``#[account]`` / zero-copy / Borsh state structs
  - Instruction entry points: functions inside ``#[program]``, functions
    taking ``Context<T>``, native ``entrypoint!`` targets and functions
    taking ``&[AccountInfo]``
  - Helper functions (free functions and ``impl`` methods)
  - ``declare_id!`` program ids

Call edges to functions defined in the same unit are resolved here; all
others stay ``unknown`` until the Cross-Reference Resolver runs.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath

from eloizer.core.errors import BuildError
from eloizer.core.raw import RawNode, SourceUnit, Span
from eloizer.model.body import BodyScanner
from eloizer.model.constraints import parse_account_constraints
from eloizer.model.expressions import AccountScope, generic_args, literal_value
from eloizer.model.program import (
    AccessKind,
    AccountDefinition,
    AccountKind,
    AccountOrigin,
    AccountStruct,
    ConstraintSet,
    HandlerKind,
    InstructionHandler,
    Parameter,
    ProgramModel,
    StateField,
    StateStruct,
    unique_by_name,
)

logger = logging.getLogger(__name__)

_KIND_BY_BASE = {k.value: k for k in AccountKind if k != AccountKind.UNKNOWN}

_INNER_TYPED = {
    AccountKind.ACCOUNT,
    AccountKind.ACCOUNT_LOADER,
    AccountKind.INTERFACE_ACCOUNT,
    AccountKind.PROGRAM,
    AccountKind.INTERFACE,
    AccountKind.SYSVAR,
}

_REF_PREFIX_RE = re.compile(r"^&\s*('\w+\s+)?(mut\s+)?")

_MUTATING_ACCESS = (AccessKind.WRITE, AccessKind.LAMPORTS_WRITE, AccessKind.DATA_BORROW_MUT)

# Deeper trees would exhaust the recursive expression walk.
MAX_TREE_DEPTH = 200


def classify_account_type(type_text: str) -> tuple[AccountKind, str | None, bool]:
    """Return (kind, inner type, optional) for a declared account type.

    ``Box<Account<'info, Vault>>`` -> (ACCOUNT, "Vault", False);
    ``Option<Signer<'info>>`` -> (SIGNER, None, True).
    """
    text = _REF_PREFIX_RE.sub("", type_text.strip())
    base, args = generic_args(text)
    optional = False
    while base in ("Box", "Option") and args:
        if base == "Option":
            optional = True
        text = _REF_PREFIX_RE.sub("", args[0])
        base, args = generic_args(text)
    kind = _KIND_BY_BASE.get(base, AccountKind.UNKNOWN)
    inner = None
    if kind in _INNER_TYPED and args:
        inner = generic_args(args[-1])[0]
    return kind, inner, optional


def unit_module_path(path: str) -> tuple[str, ...]:
    """``programs/vault/src/instructions/deposit.rs`` -> ("instructions", "deposit")."""
    parts = list(PurePosixPath(path.replace("\\", "/")).parts)
    if "src" in parts:
        parts = parts[len(parts) - parts[::-1].index("src"):]
    else:
        parts = parts[-1:]
    if not parts:
        return ()
    stem = parts[-1]
    for suffix in (".ast.json", ".json", ".rs"):
        if stem.endswith(suffix):
            stem = stem[: -len(suffix)]
    parts[-1] = stem
    if parts[-1] in ("lib", "main", "mod"):
        parts = parts[:-1]
    return tuple(parts)


class SemanticModelBuilder:
    """Build the ``ProgramModel`` of one source unit.

    Raises ``BuildError`` when the tree is structurally inconsistent: a
    missing root, an unnamed item, an account constraint on a field of a
    struct that is not an accounts struct, or a duplicate account name in
    one accounts struct.
    """

    def __init__(self, unit: SourceUnit) -> None:
        self.unit = unit
        self.file = unit.path
        self._structs: list[tuple[RawNode, tuple[str, ...]]] = []
        self._functions: list[tuple[RawNode, tuple[str, ...], str | None, bool]] = []
        self._entrypoint_names: set[str] = set()
        self._program_id: str | None = None
        self._account_structs: dict[str, AccountStruct] = {}
        self._state_structs: dict[str, StateStruct] = {}

    def build(self) -> ProgramModel:
        root = self.unit.tree
        if root is None:
            raise BuildError(self.file, "no syntax tree was produced for this unit")
        if root.kind != "file":
            raise BuildError(self.file, f"expected a 'file' root node, got {root.kind!r}", root.span)
        if root.depth() > MAX_TREE_DEPTH:
            raise BuildError(self.file, f"syntax tree is nested deeper than {MAX_TREE_DEPTH} levels", root.span)

        self._collect(root, (), impl_target=None, in_program=False)

        for struct_node, _ in self._structs:
            self._visit_struct(struct_node)

        local_functions = self._index_functions()
        handlers = [
            self._visit_function(fn, mod_path, impl_target, in_program, local_functions)
            for fn, mod_path, impl_target, in_program in self._functions
        ]

        accounts: list[AccountDefinition] = []
        for struct in self._account_structs.values():
            accounts.extend(struct.fields)
        for handler in handlers:
            accounts.extend(a for a in handler.accounts if a.origin != AccountOrigin.ACCOUNTS_STRUCT)

        model = ProgramModel(
            file_path=self.file,
            program_id=self._program_id,
            module_path=unit_module_path(self.file),
            accounts=tuple(accounts),
            account_structs=tuple(self._account_structs.values()),
            state_structs=tuple(self._state_structs.values()),
            handlers=tuple(handlers),
            call_edges=tuple(e for h in handlers for e in h.calls),
        )
        logger.debug(
            "Built %s: %d handlers, %d account structs, %d state structs, %d call edges",
            self.file, len(model.handlers), len(model.account_structs),
            len(model.state_structs), len(model.call_edges),
        )
        return model

    # ── Item collection ──────────────────────────────────────────────────

    def _collect(
        self,
        n: RawNode,
        mod_path: tuple[str, ...],
        impl_target: str | None,
        in_program: bool,
    ) -> None:
        for item in n.children:
            k = item.kind
            if k == "mod":
                if not item.text:
                    raise BuildError(self.file, "module without a name", self._span(item))
                program = in_program or any(
                    a.kind == "attribute" and a.text == "program" for a in item.children
                )
                self._collect(item, mod_path + (item.text,), None, program)
            elif k == "impl":
                target = generic_args(item.text)[0] if item.text else None
                self._collect(item, mod_path, target, False)
            elif k == "struct":
                if not item.text:
                    raise BuildError(self.file, "struct without a name", self._span(item))
                self._structs.append((item, mod_path))
            elif k == "fn":
                if not item.text:
                    raise BuildError(self.file, "function without a name", self._span(item))
                self._functions.append((item, mod_path, impl_target, in_program))
            elif k == "macro":
                self._visit_item_macro(item)

    def _visit_item_macro(self, n: RawNode) -> None:
        name = n.text.rstrip("!")
        if name == "declare_id" and n.children:
            self._program_id = literal_value(n.children[0])
        elif name == "entrypoint" and n.children:
            self._entrypoint_names.add(n.children[0].text.rsplit("::", 1)[-1])

    # ── Structs ──────────────────────────────────────────────────────────

    def _visit_struct(self, n: RawNode) -> None:
        attrs = n.children_of("attribute")
        derives = {m.text.rsplit("::", 1)[-1] for a in attrs if a.text == "derive" for m in a.children}
        state_attr = next((a for a in attrs if a.text == "account"), None)
        zero_copy = any(a.text == "zero_copy" for a in attrs) or (
            state_attr is not None and any(m.text == "zero_copy" for m in state_attr.children)
        )
        fields = n.children_of("field")

        if "Accounts" in derives:
            if state_attr is not None:
                raise BuildError(
                    self.file,
                    f"struct {n.text} is both an accounts struct and an account data struct",
                    self._span(n),
                )
            self._account_structs[n.text] = self._visit_accounts_struct(n, attrs, fields)
            return

        for f in fields:
            if any(a.text == "account" for a in f.children_of("attribute")):
                raise BuildError(
                    self.file,
                    f"account constraint on field {f.text or '?'} of non-accounts struct {n.text}",
                    self._span(f),
                )

        borsh = bool(derives & {"BorshSerialize", "BorshDeserialize", "AnchorSerialize", "AnchorDeserialize"})
        if state_attr is None and not zero_copy and not borsh:
            return
        state_fields = []
        for f in fields:
            if not f.text:
                raise BuildError(self.file, f"unnamed field in struct {n.text}", self._span(f))
            type_node = f.child("type")
            state_fields.append(StateField(
                name=f.text,
                declared_type=type_node.text if type_node is not None else "",
                span=self._span(f),
            ))
        self._state_structs[n.text] = StateStruct(
            name=n.text,
            fields=tuple(state_fields),
            zero_copy=zero_copy,
            anchor=state_attr is not None or zero_copy,
            span=self._span(n),
        )

    def _visit_accounts_struct(
        self, n: RawNode, attrs: list[RawNode], fields: list[RawNode],
    ) -> AccountStruct:
        instruction_args: list[str] = []
        for a in attrs:
            if a.text != "instruction":
                continue
            for arg in a.children:
                name = arg.text.split(":", 1)[0].strip()
                if name:
                    instruction_args.append(name)

        names: set[str] = set()
        for f in fields:
            if not f.text:
                raise BuildError(self.file, f"unnamed field in accounts struct {n.text}", self._span(f))
            if f.text in names:
                raise BuildError(
                    self.file, f"duplicate account {f.text} in accounts struct {n.text}", self._span(f),
                )
            names.add(f.text)

        scope = AccountScope(context_param=None, accounts=names, self_is_accounts=True)
        definitions = []
        for f in fields:
            type_node = f.child("type")
            if type_node is None or not type_node.text:
                raise BuildError(self.file, f"account {f.text} has no declared type", self._span(f))
            kind, inner, optional = classify_account_type(type_node.text)
            constraints = parse_account_constraints(
                [a for a in f.children_of("attribute") if a.text == "account"],
                scope,
                set(instruction_args),
            )
            docs = [d.text.strip().lstrip("/").strip() for d in f.children_of("doc")]
            definitions.append(AccountDefinition(
                name=f.text,
                declared_type=type_node.text,
                kind=kind,
                inner_type=inner,
                constraints=constraints,
                scope=n.text,
                origin=AccountOrigin.ACCOUNTS_STRUCT,
                has_check_doc=any(d.upper().startswith("CHECK") for d in docs),
                is_optional=optional,
                span=self._span(f),
            ))
        return AccountStruct(
            name=n.text,
            fields=tuple(definitions),
            instruction_args=tuple(instruction_args),
            span=self._span(n),
        )

    # ── Functions ────────────────────────────────────────────────────────

    def _qualified(self, fn: RawNode, impl_target: str | None) -> str:
        return f"{impl_target}::{fn.text}" if impl_target else fn.text

    def _function_id(self, fn: RawNode, mod_path: tuple[str, ...], impl_target: str | None) -> str:
        return "::".join((self.file,) + mod_path + (self._qualified(fn, impl_target),))

    def _index_functions(self) -> dict[str, str]:
        """Name -> id for every function of the unit; bare names only if unique."""
        index: dict[str, str] = {}
        bare: dict[str, list[str]] = {}
        for fn, mod_path, impl_target, _ in self._functions:
            fid = self._function_id(fn, mod_path, impl_target)
            index.setdefault(self._qualified(fn, impl_target), fid)
            if impl_target is None:
                bare.setdefault(fn.text, []).append(fid)
        for name, ids in bare.items():
            if len(ids) == 1:
                index[name] = ids[0]
        return index

    def _visit_function(
        self,
        fn: RawNode,
        mod_path: tuple[str, ...],
        impl_target: str | None,
        in_program: bool,
        local_functions: dict[str, str],
    ) -> InstructionHandler:
        fid = self._function_id(fn, mod_path, impl_target)
        qualified = self._qualified(fn, impl_target)

        params: list[Parameter] = []
        param_accounts: list[AccountDefinition] = []
        context_param: str | None = None
        context_struct: str | None = None
        native = False
        for p in fn.children_of("param"):
            type_text = p.child("type").text if p.child("type") is not None else ""
            name = p.text.replace("mut ", "").strip()
            base, args = generic_args(type_text)
            is_context = base == "Context" and bool(args)
            if is_context:
                context_param = name
                context_struct = generic_args(args[-1])[0]
            if "[AccountInfo" in type_text.replace(" ", ""):
                native = True
            kind, inner, optional = classify_account_type(type_text) if type_text else (AccountKind.UNKNOWN, None, False)
            is_account = kind != AccountKind.UNKNOWN and not is_context
            if is_account:
                param_accounts.append(AccountDefinition(
                    name=name,
                    declared_type=type_text,
                    kind=kind,
                    inner_type=inner,
                    constraints=ConstraintSet(is_mut="mut" in type_text.split("<", 1)[0]),
                    scope=qualified,
                    origin=AccountOrigin.PARAMETER,
                    is_optional=optional,
                    span=self._span(p),
                ))
            params.append(Parameter(name=name, type_text=type_text, is_context=is_context, is_account=is_account))

        self_is_accounts = False
        if impl_target is not None and impl_target in self._account_structs and any(
            p.name in ("self", "&self", "&mut self") or p.name.endswith("self") for p in params
        ):
            self_is_accounts = True
            context_struct = context_struct or impl_target

        if context_param is not None or in_program:
            handler_kind = HandlerKind.ANCHOR
        elif native or fn.text in self._entrypoint_names:
            handler_kind = HandlerKind.NATIVE
        else:
            handler_kind = HandlerKind.HELPER

        struct_accounts = self._account_structs.get(context_struct) if context_struct else None
        scope = AccountScope(
            context_param=context_param,
            accounts={a.name for a in param_accounts}
            | ({a.name for a in struct_accounts.fields} if self_is_accounts and struct_accounts else set()),
            self_is_accounts=self_is_accounts,
        )
        scanner = BodyScanner(self.file, fid, scope, local_functions, context_struct)
        facts = scanner.scan(fn.child("block"))

        def mutated(name: str) -> bool:
            return name in facts.writable_checked or any(
                a.account == name and a.kind in _MUTATING_ACCESS for a in facts.accesses
            )

        param_accounts = [
            a.model_copy(update={"constraints": a.constraints.model_copy(update={"is_mut": True})})
            if not a.is_mut and mutated(a.name) else a
            for a in param_accounts
        ]
        native_accounts = []
        for name, span in facts.native_accounts:
            native_accounts.append(AccountDefinition(
                name=name,
                declared_type="AccountInfo",
                kind=AccountKind.ACCOUNT_INFO,
                constraints=ConstraintSet(is_mut=mutated(name)),
                scope=qualified,
                origin=AccountOrigin.NATIVE_BINDING,
                span=span,
            ))

        accounts = list(struct_accounts.fields) if struct_accounts else []
        accounts.extend(param_accounts)
        accounts.extend(native_accounts)

        return InstructionHandler(
            id=fid,
            name=fn.text,
            qualified_name=qualified,
            kind=handler_kind,
            file=self.file,
            module_path=unit_module_path(self.file) + mod_path,
            context_struct=context_struct,
            context_param=context_param,
            params=tuple(params),
            accounts=unique_by_name(accounts),
            statements=tuple(facts.statements),
            calls=tuple(facts.calls),
            checks=tuple(facts.checks),
            arithmetic=tuple(facts.arithmetic),
            accesses=tuple(facts.accesses),
            sites=tuple(facts.sites),
            span=self._span(fn),
        )

    def _span(self, n: RawNode) -> Span:
        return n.span.with_file(self.file)


def build_program_model(unit: SourceUnit) -> ProgramModel:
    """Convenience wrapper around ``SemanticModelBuilder``."""
    return SemanticModelBuilder(unit).build()
