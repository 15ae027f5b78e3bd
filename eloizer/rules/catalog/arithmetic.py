"""Arithmetic rules: overflow, precision loss and truncating casts."""

from __future__ import annotations

from typing import Iterator

from eloizer.core.types import RuleCategory, Severity
from eloizer.model.program import ArithmeticOp, CheckKind, InstructionHandler, SiteKind
from eloizer.model.resolver import AnalysisContext
from eloizer.rules.base import Match, rule

_ALWAYS_NARROW = {"u8", "u16", "u32", "i8", "i16", "i32"}
_WORD = {"u64", "i64", "usize", "isize"}
_OPERATORS = (" + ", " - ", " * ", " << ")


def _guarded(context: AnalysisContext, h: InstructionHandler, op: ArithmeticOp) -> bool:
    """A preceding comparison bounds one of the subtraction's operands."""
    if op.op != "-":
        return False
    for check in context.checks_for(h, CheckKind.ARITHMETIC_GUARD):
        if check.order >= op.order:
            continue
        operands = check.operands or (check.text,)
        if any(op.left in o or op.right in o for o in operands if o):
            return True
    return False


@rule(
    id="unchecked-arithmetic-cwe-190",
    title="Unchecked arithmetic on account or amount values",
    severity=Severity.MEDIUM,
    categories=(RuleCategory.GENERAL, RuleCategory.SOLANA),
    description=(
        "Plain `+`, `-` or `*` on values that come from accounts, or compound assignments "
        "on balances, can overflow or underflow; release builds wrap silently."
    ),
    recommendation="Use `checked_add` / `checked_sub` / `checked_mul` and return an error on `None`.",
    cwe="CWE-190",
)
def unchecked_arithmetic(context: AnalysisContext) -> Iterator[Match]:
    for h in context.handlers:
        for op in h.arithmetic:
            if not (op.accounts or op.compound):
                continue
            if _guarded(context, h, op):
                continue
            yield Match(
                span=op.span,
                message=f"Unchecked `{op.op}` in `{h.qualified_name}`: `{op.text}`",
                snippet=op.text,
            )


@rule(
    id="division-before-multiplication",
    title="Division before multiplication",
    severity=Severity.LOW,
    categories=(RuleCategory.GENERAL,),
    description="Integer division truncates; multiplying its result loses precision.",
    recommendation="Multiply first and divide last, using a wider integer type for the intermediate value.",
)
def division_before_multiplication(context: AnalysisContext) -> Iterator[Match]:
    for h in context.handlers:
        for site in h.sites_of(SiteKind.DIVISION_BEFORE_MULTIPLICATION):
            yield Match(
                span=site.span,
                message=f"`{site.text}` in `{h.qualified_name}` divides before multiplying",
                snippet=site.text,
            )


@rule(
    id="lossy-cast",
    title="Truncating integer cast",
    severity=Severity.LOW,
    categories=(RuleCategory.GENERAL,),
    description="`as` casts to a narrower integer silently truncate out-of-range values.",
    recommendation="Use `try_from` / `try_into` and handle the conversion error.",
)
def lossy_cast(context: AnalysisContext) -> Iterator[Match]:
    for h in context.handlers:
        for site in h.sites_of(SiteKind.CAST):
            operand = site.text.rsplit(" as ", 1)[0]
            widened = "128" in operand or "(" in operand or any(o in operand for o in _OPERATORS)
            if not (site.name in _ALWAYS_NARROW or (site.name in _WORD and widened)):
                continue
            yield Match(
                span=site.span,
                message=f"`{site.text}` in `{h.qualified_name}` may truncate to {site.name}",
                snippet=site.text,
            )
