"""Custom rule templates — declarative rules loaded from YAML files.

A template file holds either one rule mapping or a ``rules:`` list of them::

    rules:
      - id: no-msg-in-hot-path
        title: msg! in instruction handler
        severity: low
        categories: [general]
        recommendation: Remove debug logging before deployment.
        message: "`{where}` logs with `{name}!`"
        match:
          macro: msg

Selectors (``match`` keys, ``fnmatch`` patterns, several keys allowed):
    call               callee name of any call edge (full path or last segment)
    method_call        method name at a method-call site
    macro              macro name
    account_type       declared account type, wrapper kind or inner type
    constraint_unknown unrecognized constraint tag

The resulting ``Rule`` records are indistinguishable from built-ins once
loaded; only ``origin`` names the file they came from.
"""

from __future__ import annotations

import fnmatch
import logging
import string
from pathlib import Path
from typing import Any, Callable, Iterator

import yaml

from eloizer.core.errors import ConfigurationError
from eloizer.model.program import SiteKind
from eloizer.model.resolver import AnalysisContext
from eloizer.rules.base import Match, Rule
from eloizer.rules.queries import account_uses

logger = logging.getLogger(__name__)

SELECTORS = ("call", "method_call", "macro", "account_type", "constraint_unknown")
MESSAGE_FIELDS = {"name", "where", "text"}
_DEFAULT_MESSAGE = "`{where}` matches `{name}`"


# ── Selectors ────────────────────────────────────────────────────────────────


def _hits(pattern: str, *candidates: str | None) -> bool:
    return any(c and fnmatch.fnmatchcase(c, pattern) for c in candidates)


def _select_call(context: AnalysisContext, pattern: str) -> Iterator[tuple[Any, str, str, str]]:
    for h in context.handlers:
        for edge in h.calls:
            if _hits(pattern, edge.callee_name, edge.last_segment):
                yield edge.span, edge.callee_name, h.qualified_name, edge.callee_name


def _select_site(kind: SiteKind) -> Callable[[AnalysisContext, str], Iterator[tuple[Any, str, str, str]]]:
    def select(context: AnalysisContext, pattern: str) -> Iterator[tuple[Any, str, str, str]]:
        for h in context.handlers:
            for site in h.sites_of(kind):
                if _hits(pattern, site.name):
                    yield site.span, site.name, h.qualified_name, site.text

    return select


def _select_account_type(context: AnalysisContext, pattern: str) -> Iterator[tuple[Any, str, str, str]]:
    for use in account_uses(context):
        acct = use.account
        if _hits(pattern, acct.declared_type, acct.kind.value, acct.inner_type):
            yield acct.span, acct.name, use.where, acct.declared_type


def _select_constraint_unknown(context: AnalysisContext, pattern: str) -> Iterator[tuple[Any, str, str, str]]:
    for use in account_uses(context):
        for tag in use.account.constraints.unknown:
            if _hits(pattern, tag):
                yield use.account.span, use.account.name, use.where, tag


_SELECTOR_FUNCS = {
    "call": _select_call,
    "method_call": _select_site(SiteKind.METHOD_CALL),
    "macro": _select_site(SiteKind.MACRO),
    "account_type": _select_account_type,
    "constraint_unknown": _select_constraint_unknown,
}


def _make_matcher(selectors: dict[str, list[str]], message: str):
    def matcher(context: AnalysisContext) -> Iterator[Match]:
        for key in SELECTORS:
            for pattern in selectors.get(key, ()):
                for span, name, where, text in _SELECTOR_FUNCS[key](context, pattern):
                    yield Match(
                        span=span,
                        message=message.format(name=name, where=where, text=text),
                        snippet=text,
                        metadata={"selector": key, "pattern": pattern},
                    )

    return matcher


# ── Parsing ──────────────────────────────────────────────────────────────────


def _parse_selectors(raw: Any, where: str) -> dict[str, list[str]]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigurationError(f"{where}: 'match' must be a non-empty mapping")
    selectors: dict[str, list[str]] = {}
    for key, value in raw.items():
        if key not in _SELECTOR_FUNCS:
            raise ConfigurationError(
                f"{where}: unknown selector {key!r} (expected one of {', '.join(SELECTORS)})"
            )
        patterns = value if isinstance(value, list) else [value]
        if not patterns or not all(isinstance(p, str) and p for p in patterns):
            raise ConfigurationError(f"{where}: selector {key!r} needs string pattern(s)")
        selectors[key] = patterns
    return selectors


def _check_message(message: str, where: str) -> None:
    try:
        fields = {name for _, name, _, _ in string.Formatter().parse(message) if name is not None}
    except ValueError as exc:
        raise ConfigurationError(f"{where}: malformed message template: {exc}") from exc
    unknown = fields - MESSAGE_FIELDS
    if unknown:
        raise ConfigurationError(
            f"{where}: message uses unknown field(s) {', '.join(sorted(unknown))}"
        )


def parse_template(data: Any, origin: str) -> Rule:
    """Build one ``Rule`` from a template mapping."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{origin}: rule template must be a mapping")
    rule_id = data.get("id")
    where = f"{origin} ({rule_id})" if rule_id else origin
    for required in ("id", "title", "severity", "categories", "match"):
        if not data.get(required):
            raise ConfigurationError(f"{where}: missing required field {required!r}")

    categories = data["categories"]
    if isinstance(categories, str):
        categories = [categories]
    message = str(data.get("message") or _DEFAULT_MESSAGE)
    _check_message(message, where)
    selectors = _parse_selectors(data["match"], where)

    try:
        return Rule(
            id=str(rule_id),
            title=str(data["title"]),
            severity=data["severity"],
            categories=frozenset(categories),
            matcher=_make_matcher(selectors, message),
            description=str(data.get("description", "")),
            recommendation=str(data.get("recommendation", "")),
            cwe=str(data.get("cwe", "")),
            origin=origin,
        )
    except ConfigurationError as exc:
        raise ConfigurationError(f"{origin}: {exc}") from exc


def load_template_file(path: str | Path) -> list[Rule]:
    """Parse one YAML file into its rules."""
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"{path}: cannot read rule template: {exc}") from exc

    if isinstance(data, dict) and "rules" in data:
        entries = data["rules"]
        if not isinstance(entries, list):
            raise ConfigurationError(f"{path}: 'rules' must be a list")
    else:
        entries = [data]
    return [parse_template(entry, str(path)) for entry in entries]


def load_rule_templates(directory: str | Path) -> list[Rule]:
    """Load every ``*.yaml`` / ``*.yml`` template in ``directory``, sorted by file name.

    Raises:
        ConfigurationError: missing directory, invalid file or duplicate id.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(f"Rule template directory not found: {directory}")

    files = sorted(p for p in directory.iterdir() if p.suffix in (".yaml", ".yml") and p.is_file())
    rules: list[Rule] = []
    seen: dict[str, str] = {}
    for path in files:
        for r in load_template_file(path):
            if r.id in seen:
                raise ConfigurationError(f"{path}: rule id {r.id!r} already defined in {seen[r.id]}")
            seen[r.id] = str(path)
            rules.append(r)

    logger.info("Loaded %d template rule(s) from %s", len(rules), directory)
    return rules
