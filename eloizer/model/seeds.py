"""PDA seed normalization.

A seed signature is the ordered tuple of seed-component shapes: literal
values are ignored, structural composition is kept. ``[b"vault",
authority.key().as_ref()]`` and ``[b"pool", user.key().as_ref()]`` share
the signature ``("literal", "account_key")``.
"""

from __future__ import annotations

from eloizer.core.raw import RawNode
from eloizer.model.expressions import AccountScope, is_literal, literal_value, render, unwrap
from eloizer.model.program import SeedComponent

SeedSignature = tuple[str, ...]

_BYTE_METHODS = ("as_ref", "as_bytes", "to_le_bytes", "to_be_bytes", "to_bytes", "as_slice")


def classify_seed(
    n: RawNode,
    scope: AccountScope,
    instruction_args: set[str],
) -> SeedComponent:
    """Classify one seed expression into a ``SeedComponent``."""
    text = render(n)
    if is_literal(n):
        return SeedComponent(shape="literal", text=text, literal=literal_value(n))

    core = unwrap(n)
    while core.kind == "method_call" and core.text in _BYTE_METHODS and core.children:
        core = unwrap(core.children[0])

    if core.kind == "array" and len(core.children) == 1:
        inner = unwrap(core.children[0])
        if inner.kind == "path" and "bump" in inner.text:
            return SeedComponent(shape="bump", text=text)
    if core.kind == "path" and core.text == "bump":
        return SeedComponent(shape="bump", text=text)

    account = scope.account_of(core)
    if account is not None:
        is_key = core.kind in ("method_call", "field_access") and core.text in ("key", "pubkey")
        if is_key or (core.kind == "path" and core.text == account):
            return SeedComponent(shape="account_key", text=text, account=account)
        return SeedComponent(shape="account_data", text=text, account=account)

    if core.kind == "path" and core.text in instruction_args:
        return SeedComponent(shape="instruction_arg", text=text)
    if core.kind == "field_access" and core.children:
        base = unwrap(core.children[0])
        if base.kind == "path" and base.text in instruction_args:
            return SeedComponent(shape="instruction_arg", text=text)

    return SeedComponent(shape="expression", text=text)


def seed_signature(seeds: tuple[SeedComponent, ...]) -> SeedSignature:
    return tuple(s.shape for s in seeds if s.shape != "bump")


def literal_fingerprint(seeds: tuple[SeedComponent, ...]) -> tuple[str, ...]:
    """Literal values in order; distinct fingerprints are domain-separated."""
    return tuple(s.literal or "" for s in seeds if s.shape == "literal")
