"""Expression helpers over raw syntax nodes.

Rendering back to Rust-like text, literal classification and resolution
of expressions to the accounts they refer to (``ctx.accounts.vault``,
local aliases such as ``let vault = &mut ctx.accounts.vault``, native
``next_account_info`` bindings and account-typed parameters).
"""

from __future__ import annotations

import re

from eloizer.core.raw import RawNode

_TRANSPARENT = ("ref", "deref", "paren", "try", "unary", "cast")

# Methods that return the account itself or a view of it.
_PASSTHROUGH_METHODS = {
    "to_account_info", "as_ref", "clone", "key", "as_mut", "deref",
    "deref_mut", "borrow", "borrow_mut", "unwrap", "to_owned", "into",
}

_ID_LIKE_RE = re.compile(r"(^|::)(ID|id\(\)|program_id|PROGRAM_ID)$|_program::|::ID\b|check_id")


def render(n: RawNode | None) -> str:
    """Render a node back to compact Rust-like text."""
    if n is None:
        return ""
    k = n.kind
    c = n.children
    if k in ("path", "lit", "type"):
        return n.text
    if k == "call":
        return f"{render(c[0]) if c else n.text}({', '.join(render(a) for a in c[1:])})"
    if k == "method_call":
        recv = render(c[0]) if c else ""
        return f"{recv}.{n.text}({', '.join(render(a) for a in c[1:])})"
    if k == "field_access":
        return f"{render(c[0]) if c else ''}.{n.text}"
    if k in ("binary", "assign"):
        op = n.text or "="
        return f"{render(c[0]) if c else ''} {op} {render(c[1]) if len(c) > 1 else ''}"
    if k == "unary":
        return f"{n.text}{render(c[0]) if c else ''}"
    if k == "deref":
        return f"*{render(c[0]) if c else ''}"
    if k == "ref":
        prefix = "&mut " if n.prop("mutable") else "&"
        return f"{prefix}{render(c[0]) if c else ''}"
    if k == "array":
        return f"[{', '.join(render(a) for a in c)}]"
    if k == "tuple":
        return f"({', '.join(render(a) for a in c)})"
    if k == "macro":
        return f"{n.text}!({', '.join(render(a) for a in c)})"
    if k == "try":
        return f"{render(c[0]) if c else ''}?"
    if k == "paren":
        return f"({render(c[0]) if c else ''})"
    if k == "cast":
        return f"{render(c[0]) if c else ''} as {n.text}"
    if k == "index":
        return f"{render(c[0]) if c else ''}[{render(c[1]) if len(c) > 1 else ''}]"
    if k == "struct_lit":
        return f"{n.text} {{ {', '.join(render(a) for a in c)} }}"
    if k == "field_value":
        return f"{n.text}: {render(c[0]) if c else ''}"
    if k == "let":
        return f"let {n.text} = {render(c[0]) if c else ''}"
    if k == "expr_stmt":
        return render(c[0]) if c else ""
    if k == "return":
        return f"return {render(c[0])}" if c else "return"
    if k == "if":
        return f"if {render(c[0]) if c else ''} {{ .. }}"
    if k == "closure":
        return "|..| { .. }"
    if k == "block":
        return "{ .. }"
    return n.text or k


def unwrap(n: RawNode) -> RawNode:
    """Strip references, derefs, parentheses, `?` and unary operators."""
    while n.kind in _TRANSPARENT and n.children:
        n = n.children[0]
    return n


def is_literal(n: RawNode) -> bool:
    n = unwrap(n)
    if n.kind == "lit":
        return True
    if n.kind == "path":
        return is_constant_name(n.text)
    if n.kind == "method_call" and n.text in ("as_bytes", "as_ref", "to_le_bytes", "to_be_bytes") and n.children:
        return is_literal(n.children[0])
    if n.kind in ("binary", "paren") and n.children:
        return all(is_literal(ch) for ch in n.children)
    return False


def is_constant_name(text: str) -> bool:
    last = text.rsplit("::", 1)[-1]
    return bool(last) and last.upper() == last and any(ch.isalpha() for ch in last)


def literal_value(n: RawNode) -> str:
    """Normalized literal text: `b"vault"`, `"vault".as_bytes()` -> `vault`."""
    n = unwrap(n)
    if n.kind == "method_call" and n.children:
        return literal_value(n.children[0])
    text = n.text
    if text.startswith(("b\"", "b'")):
        text = text[1:]
    return text.strip("\"'")


def is_id_like(text: str) -> bool:
    """Looks like a program id constant or a `program_id` value."""
    return bool(_ID_LIKE_RE.search(text.replace(" ", "")))


def path_segments(n: RawNode) -> list[str]:
    return [s for s in n.text.split("::") if s]


def generic_args(type_text: str) -> tuple[str, list[str]]:
    """Split ``Account<'info, Vault>`` into (``Account``, [``Vault``]).

    Lifetimes are dropped; nested generics are kept as text.
    """
    text = type_text.strip().lstrip("&").strip()
    if text.startswith("mut "):
        text = text[4:].strip()
    if "<" not in text:
        return text.rsplit("::", 1)[-1], []
    base, _, rest = text.partition("<")
    rest = rest[: rest.rfind(">")] if ">" in rest else rest
    args: list[str] = []
    depth = 0
    current = ""
    for ch in rest:
        if ch == "<":
            depth += 1
        elif ch == ">":
            depth -= 1
        if ch == "," and depth == 0:
            args.append(current.strip())
            current = ""
            continue
        current += ch
    if current.strip():
        args.append(current.strip())
    args = [a for a in args if not a.startswith("'")]
    return base.strip().rsplit("::", 1)[-1], args


class AccountScope:
    """Names that resolve to accounts inside one function body."""

    def __init__(
        self,
        context_param: str | None,
        accounts: set[str] | None = None,
        self_is_accounts: bool = False,
    ) -> None:
        self.context_param = context_param
        self.accounts: set[str] = set(accounts or ())
        self.self_is_accounts = self_is_accounts
        self.aliases: dict[str, tuple[str, ...]] = {}
        self.locals: dict[str, RawNode] = {}

    def bind(self, name: str, init: RawNode | None) -> None:
        """Record a `let` binding and the accounts its initializer refers to."""
        if init is None:
            return
        self.locals[name] = init
        refs = self.references(init)
        if refs:
            self.aliases[name] = tuple(refs)
        elif name in self.aliases:
            del self.aliases[name]

    def is_context_accounts(self, n: RawNode) -> bool:
        """`ctx.accounts` (or `self` inside an accounts impl)."""
        n = unwrap(n)
        if n.kind == "field_access" and n.text == "accounts" and n.children:
            base = unwrap(n.children[0])
            return base.kind == "path" and (self.context_param is None or base.text == self.context_param)
        return False

    def account_of(self, n: RawNode) -> str | None:
        """The single account an expression is rooted at, if any."""
        n = unwrap(n)
        while True:
            if n.kind == "field_access" and n.children:
                base = unwrap(n.children[0])
                if self.is_context_accounts(base):
                    return n.text
                if base.kind == "path" and base.text == "self" and (
                    self.self_is_accounts or n.text in self.accounts
                ):
                    return n.text
                n = base
                continue
            if n.kind == "method_call" and n.children:
                n = unwrap(n.children[0])
                continue
            if n.kind == "index" and n.children:
                n = unwrap(n.children[0])
                continue
            break
        if n.kind == "path" and "::" not in n.text:
            if n.text == self.context_param:
                return None
            if n.text in self.accounts:
                return n.text
            aliased = self.aliases.get(n.text)
            if aliased and len(aliased) == 1:
                return aliased[0]
        return None

    def references(self, n: RawNode) -> list[str]:
        """Every account an expression mentions, in first-seen order."""
        found: list[str] = []
        self._collect(n, found)
        return found

    def _collect(self, n: RawNode, found: list[str]) -> None:
        direct = self.account_of(n) if n.kind in ("field_access", "method_call", "path") else None
        if direct is not None:
            if direct not in found:
                found.append(direct)
            if n.kind == "path":
                return
        if n.kind == "path" and "::" not in n.text:
            for acct in self.aliases.get(n.text, ()):
                if acct not in found:
                    found.append(acct)
            return
        for ch in n.children:
            self._collect(ch, found)

    def mentions_key(self, n: RawNode) -> bool:
        """`x.key()`, `x.key`, `*x.key` or `x.key().as_ref()` shapes."""
        for sub in n.walk():
            if sub.kind in ("method_call", "field_access") and sub.text in ("key", "pubkey"):
                return True
        return False
