"""Anchor ``#[account(...)]`` constraint extraction.

Recognized constraints are normalized into a ``ConstraintSet``.
Anything unrecognized is kept verbatim in ``ConstraintSet.unknown`` so
rules can still see that the builder did not understand it.
"""

from __future__ import annotations

from typing import Any

from eloizer.core.raw import RawNode
from eloizer.model.expressions import AccountScope, render, unwrap
from eloizer.model.program import BumpSource, ConstraintSet
from eloizer.model.seeds import classify_seed

_FLAGS = {
    "mut": "is_mut",
    "signer": "is_signer",
    "init": "is_init",
    "init_if_needed": "init_if_needed",
    "zero": "is_zero",
}

_VALUE_KEYS = {"payer", "space", "owner", "address", "close", "realloc"}

_TOKEN_PREFIXES = ("token::", "mint::", "associated_token::", "token_interface::")

# Recognized but carrying nothing the rules consume.
_IGNORED = {"executable", "rent_exempt", "realloc::payer", "dup"}


def _strip_custom_error(n: RawNode) -> RawNode:
    """`has_one = authority @ ErrorCode::Unauthorized` -> `authority`."""
    if n.kind == "binary" and n.text == "@" and n.children:
        return n.children[0]
    return n


def parse_account_constraints(
    attributes: list[RawNode],
    scope: AccountScope,
    instruction_args: set[str],
) -> ConstraintSet:
    """Merge every ``#[account(...)]`` attribute of a field into one set."""
    values: dict[str, Any] = {}
    has_one: list[str] = []
    expressions: list[str] = []
    unknown: list[str] = []
    token: dict[str, str] = {}
    seeds: list = []
    saw_bump = False
    saw_seeds = False

    for attr in attributes:
        for meta in attr.children:
            key = meta.text.replace(" ", "")
            if meta.kind == "meta_path":
                if key in _FLAGS:
                    values[_FLAGS[key]] = True
                elif key == "bump":
                    saw_bump = True
                    values["bump"] = BumpSource.CANONICAL
                elif key in _IGNORED:
                    continue
                else:
                    unknown.append(key)
                continue

            if meta.kind != "meta_name_value" or not meta.children:
                unknown.append(render(meta) or meta.kind)
                continue

            value = _strip_custom_error(meta.children[0])
            rendered = render(value)

            if key == "seeds":
                saw_seeds = True
                elements = unwrap(value)
                if elements.kind == "array":
                    seeds.extend(classify_seed(e, scope, instruction_args) for e in elements.children)
                else:
                    seeds.append(classify_seed(value, scope, instruction_args))
            elif key == "bump":
                saw_bump = True
                values["bump"], values["bump_expression"] = _bump_source(value, scope, instruction_args)
            elif key == "seeds::program":
                values["seeds_program"] = rendered
            elif key == "has_one":
                has_one.append(rendered)
            elif key == "constraint":
                expressions.append(rendered)
            elif key == "realloc::zero":
                values["realloc_zero"] = rendered.strip().lower() == "true"
            elif key in _VALUE_KEYS:
                values[key] = rendered
            elif key.startswith(_TOKEN_PREFIXES):
                token[key] = rendered
            elif key in _IGNORED:
                continue
            else:
                unknown.append(f"{key} = {rendered}")

    if saw_seeds:
        values["is_pda"] = True
        if not saw_bump:
            values.setdefault("bump", BumpSource.NONE)

    return ConstraintSet(
        seeds=tuple(seeds),
        has_one=tuple(has_one),
        expressions=tuple(expressions),
        unknown=tuple(unknown),
        token=token,
        **values,
    )


def _bump_source(
    value: RawNode, scope: AccountScope, instruction_args: set[str],
) -> tuple[BumpSource, str]:
    text = render(value)
    core = unwrap(value)
    if core.kind == "path" and core.text in instruction_args:
        return BumpSource.INSTRUCTION_ARG, text
    if core.kind == "field_access" and core.children:
        base = unwrap(core.children[0])
        if base.kind == "path" and base.text in instruction_args:
            return BumpSource.INSTRUCTION_ARG, text
        if scope.account_of(core) is not None or "bumps" in text:
            return BumpSource.STORED, text
    return BumpSource.EXPRESSION, text
